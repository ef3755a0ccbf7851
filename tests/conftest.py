"""Shared test fixtures."""

import pytest

from meshstream.aggregator import Aggregator
from meshstream.models import Packet


def build_packet(
    from_node: int | None = 0x1,
    packet_id: int | None = 5,
    channel_id: str | None = "LongFast",
    gateway_id: str | None = "!00000002",
    text: str | None = None,
    rx_time: int | None = 1000,
    **payload,
) -> Packet:
    """Build a packet the way the server serializes it (camelCase keys)."""
    data = {"portNum": "TEXT_MESSAGE_APP" if text else "POSITION_APP"}
    if from_node is not None:
        data["from"] = from_node
    if packet_id is not None:
        data["id"] = packet_id
    if channel_id is not None:
        data["channelId"] = channel_id
    if gateway_id is not None:
        data["gatewayId"] = gateway_id
    if text is not None:
        data["textMessage"] = text
    if rx_time is not None:
        data["rxTime"] = rx_time
    data.update(payload)

    return Packet.model_validate(
        {
            "info": {
                "fullTopic": f"msh/US/2/e/{channel_id}/{gateway_id}",
                "channel": channel_id,
                "userId": gateway_id,
            },
            "data": data,
        }
    )


@pytest.fixture
def make_packet():
    """Factory for wire-format packets."""
    return build_packet


@pytest.fixture
def text_packet():
    """The text message used throughout the redelivery scenario."""
    return build_packet(text="hi")


@pytest.fixture
def aggregator():
    """Aggregator with a fixed clock."""
    return Aggregator.create(clock=lambda: 5000.0)

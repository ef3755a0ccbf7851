"""Aggregation of stream packets into node, gateway, channel and message tables."""

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from meshstream.dedup import PacketDedupIndex, packet_identity
from meshstream.models import (
    ChannelRecord,
    GatewayRecord,
    MapReport,
    MessageEvent,
    NodeRecord,
    Packet,
    PacketData,
    Position,
    TextMessage,
    User,
    hex_node_id,
    parse_node_id,
)

logger = logging.getLogger(__name__)

# Maximum number of messages kept per channel
MAX_MESSAGES_PER_CHANNEL = 100


class AggregatorState(BaseModel):
    """Immutable snapshot of everything derived from the stream.

    States are never mutated in place; ``fold`` builds a new state that
    shares unchanged records with its predecessor.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    nodes: dict[int, NodeRecord] = Field(default_factory=dict)
    gateways: dict[str, GatewayRecord] = Field(default_factory=dict)
    channels: dict[str, ChannelRecord] = Field(default_factory=dict)
    messages: dict[str, tuple[TextMessage, ...]] = Field(default_factory=dict)
    seen: PacketDedupIndex = Field(default_factory=PacketDedupIndex)

    def messages_for(self, channel_id: str) -> tuple[TextMessage, ...]:
        """Text messages for a channel, newest first."""
        return self.messages.get(channel_id, ())

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready rendering of the derived tables."""
        return {
            "nodes": {
                hex_node_id(node_id): node.model_dump(mode="json", exclude_none=True)
                for node_id, node in self.nodes.items()
            },
            "gateways": {
                gateway_id: gateway.model_dump(mode="json")
                for gateway_id, gateway in self.gateways.items()
            },
            "channels": {
                channel_id: channel.model_dump(mode="json", exclude_none=True)
                for channel_id, channel in self.channels.items()
            },
            "messages": {
                channel_id: [message.model_dump(mode="json") for message in messages]
                for channel_id, messages in self.messages.items()
            },
            "seen_packets": len(self.seen),
        }


def _is_self_report(gateway_id: str, from_node: int) -> bool:
    """Check whether a gateway id names the node that sent the packet."""
    gateway_node = parse_node_id(gateway_id)
    if gateway_node is not None:
        return gateway_node == from_node
    return gateway_id == hex_node_id(from_node)


def _with(table: Mapping, key, value) -> dict:
    updated = dict(table)
    updated[key] = value
    return updated


def _update_gateway(
    gateway: GatewayRecord | None,
    gateway_id: str,
    data: PacketData,
    timestamp: int,
) -> GatewayRecord:
    if gateway is None:
        gateway = GatewayRecord(gateway_id=gateway_id, last_heard=timestamp)

    channel_ids = gateway.channel_ids
    if data.channel_id:
        channel_ids = channel_ids.add(data.channel_id)

    return gateway.model_copy(
        update={
            "last_heard": max(gateway.last_heard, timestamp),
            "message_count": gateway.message_count + 1,
            "text_message_count": gateway.text_message_count + (1 if data.text_message else 0),
            "channel_ids": channel_ids,
            "observed_nodes": gateway.observed_nodes.add(data.from_node),
        }
    )


def _update_channel(
    channel: ChannelRecord | None,
    channel_id: str,
    data: PacketData,
    timestamp: int,
) -> ChannelRecord:
    if channel is None:
        channel = ChannelRecord(channel_id=channel_id)

    gateways = channel.gateways
    if data.gateway_id:
        gateways = gateways.add(data.gateway_id)

    last_message = timestamp
    if channel.last_message is not None:
        last_message = max(channel.last_message, timestamp)

    return channel.model_copy(
        update={
            "message_count": channel.message_count + 1,
            "text_message_count": channel.text_message_count + (1 if data.text_message else 0),
            "last_message": last_message,
            "gateways": gateways,
            "nodes": channel.nodes.add(data.from_node),
        }
    )


def _node_info_fields(user: User) -> dict[str, Any]:
    """Fields of a NODEINFO payload that are present (sparse merge)."""
    fields: dict[str, Any] = {}
    if user.short_name:
        fields["short_name"] = user.short_name
    if user.long_name:
        fields["long_name"] = user.long_name
    if user.macaddr:
        fields["mac_addr"] = user.macaddr
    if user.hw_model:
        fields["hw_model"] = str(user.hw_model)
    if user.battery_level is not None:
        fields["battery_level"] = user.battery_level
    if user.snr is not None:
        fields["snr"] = user.snr
    if user.is_licensed is not None:
        fields["is_licensed"] = user.is_licensed
    if user.role:
        fields["role"] = str(user.role)
    if user.public_key:
        fields["public_key"] = user.public_key
    return fields


def _map_report_position(report: MapReport, timestamp: int) -> Position | None:
    if report.latitude_i is None or report.longitude_i is None:
        return None
    return Position(
        latitude_i=report.latitude_i,
        longitude_i=report.longitude_i,
        altitude=report.altitude,
        time=timestamp,
        precision_bits=report.position_precision,
    )


def _map_report_fields(
    node: NodeRecord, report: MapReport, timestamp: int, overwrite: bool
) -> dict[str, Any]:
    """Node fields taken from a map report.

    Gateways reporting about themselves are authoritative (``overwrite``);
    otherwise the report only fills fields the node does not have yet.
    """
    fields: dict[str, Any] = {"map_report": report}
    if report.long_name and (overwrite or not node.long_name):
        fields["long_name"] = report.long_name
    if report.short_name and (overwrite or not node.short_name):
        fields["short_name"] = report.short_name
    if report.hw_model is not None and (overwrite or not node.hw_model):
        fields["hw_model"] = str(report.hw_model)

    position = _map_report_position(report, timestamp)
    if position is not None and (overwrite or node.position is None):
        fields["position"] = position
    return fields


def _update_node(
    node: NodeRecord | None,
    data: PacketData,
    timestamp: int,
    self_report: bool,
) -> NodeRecord:
    if node is None:
        node = NodeRecord(node_id=data.from_node, last_heard=timestamp)

    fields: dict[str, Any] = {
        "last_heard": max(node.last_heard, timestamp),
        "message_count": node.message_count + 1,
        "text_message_count": node.text_message_count + (1 if data.text_message else 0),
    }
    if data.channel_id:
        fields["channel_id"] = data.channel_id
    if data.gateway_id:
        fields["gateway_id"] = data.gateway_id

    if data.node_info is not None:
        fields.update(_node_info_fields(data.node_info))

    if data.position is not None:
        fields["position"] = data.position

    telemetry = data.telemetry
    if telemetry is not None:
        if telemetry.device_metrics is not None:
            fields["device_metrics"] = telemetry.device_metrics
            if telemetry.device_metrics.battery_level is not None:
                fields["battery_level"] = telemetry.device_metrics.battery_level
        if telemetry.environment_metrics is not None:
            fields["environment_metrics"] = telemetry.environment_metrics

    if data.map_report is not None:
        merged = node.model_copy(update=fields)
        fields.update(_map_report_fields(merged, data.map_report, timestamp, overwrite=self_report))
        if self_report:
            fields["is_gateway"] = True

    return node.model_copy(update=fields)


def _append_message(
    messages: tuple[TextMessage, ...], message: TextMessage
) -> tuple[TextMessage, ...]:
    # sorted() is stable, so equal timestamps keep arrival order
    ordered = sorted(messages + (message,), key=lambda m: m.timestamp, reverse=True)
    return tuple(ordered[:MAX_MESSAGES_PER_CHANNEL])


def fold(state: AggregatorState, packet: Packet, now: int | None = None) -> AggregatorState:
    """Fold one packet into the aggregated state.

    Gateway statistics count every delivery of a packet, while the
    channel, node and message tables only count a packet identity once.
    Packets without ``from`` or ``id`` are returned unchanged.

    Args:
        state: Current state (not modified)
        packet: Decoded packet
        now: Timestamp to use when the packet has no ``rxTime``; defaults
            to the current time in seconds

    Returns:
        The new state
    """
    data = packet.data
    from_node = data.from_node
    if from_node is None or data.id is None:
        return state

    if data.rx_time:
        timestamp = data.rx_time
    else:
        timestamp = int(time.time()) if now is None else now

    identity = packet_identity(from_node, data.id)
    is_new_packet = not state.seen.has(identity)
    updates: dict[str, Any] = {"seen": state.seen.add(identity)}

    self_report = bool(data.gateway_id) and _is_self_report(data.gateway_id, from_node)

    if data.gateway_id and not self_report:
        gateway = _update_gateway(state.gateways.get(data.gateway_id), data.gateway_id, data, timestamp)
        updates["gateways"] = _with(state.gateways, data.gateway_id, gateway)

    if not is_new_packet:
        # Content tables already counted this packet
        return state.model_copy(update=updates)

    if data.channel_id:
        channel = _update_channel(state.channels.get(data.channel_id), data.channel_id, data, timestamp)
        updates["channels"] = _with(state.channels, data.channel_id, channel)

    node = _update_node(state.nodes.get(from_node), data, timestamp, self_report)
    updates["nodes"] = _with(state.nodes, from_node, node)

    if data.text_message and data.channel_id:
        message = TextMessage(
            id=data.id,
            from_node=from_node,
            from_name=node.short_name or node.long_name,
            text=data.text_message,
            timestamp=timestamp,
            channel_id=data.channel_id,
            gateway_id=data.gateway_id or "",
        )
        channel_messages = _append_message(state.messages.get(data.channel_id, ()), message)
        updates["messages"] = _with(state.messages, data.channel_id, channel_messages)

    return state.model_copy(update=updates)


class Aggregator:
    """Session-scoped owner of the aggregated state.

    One aggregator is created per session by the caller and fed from the
    stream; ``reset`` clears every table and the dedup index at once.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """Initialize an empty aggregator.

        Args:
            clock: Wall clock used for packets without ``rxTime``
        """
        self._clock = clock
        self._state = AggregatorState()
        self._disposed = False

    @classmethod
    def create(cls, clock: Callable[[], float] = time.time) -> "Aggregator":
        return cls(clock=clock)

    @property
    def state(self) -> AggregatorState:
        return self._state

    def process(self, packet: Packet | dict[str, Any]) -> AggregatorState:
        """Fold a packet into the current state and return the new state.

        Args:
            packet: Packet model or the raw decoded JSON object

        Raises:
            RuntimeError: If the aggregator has been disposed
        """
        if self._disposed:
            raise RuntimeError("Aggregator has been disposed")

        if not isinstance(packet, Packet):
            packet = Packet.model_validate(packet)

        if packet.data.from_node is None or packet.data.id is None:
            logger.debug("Dropping packet without from/id: %s", packet.info.full_topic)
            return self._state

        self._state = fold(self._state, packet, now=int(self._clock()))
        return self._state

    def handle_event(self, event: Any) -> None:
        """Stream subscriber hook; only message events are folded."""
        if isinstance(event, MessageEvent):
            self.process(event.data)

    def reset(self) -> None:
        """Clear all tables and the dedup index."""
        self._state = AggregatorState()

    def dispose(self) -> None:
        self._state = AggregatorState()
        self._disposed = True

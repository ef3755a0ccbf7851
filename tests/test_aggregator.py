"""Tests for packet aggregation."""

import random

import pytest

from meshstream.aggregator import MAX_MESSAGES_PER_CHANNEL, Aggregator, AggregatorState, fold
from meshstream.models import InfoEvent, MessageEvent


def fold_all(packets, state=None):
    state = state or AggregatorState()
    for packet in packets:
        state = fold(state, packet, now=5000)
    return state


class TestRedelivery:
    """A packet redelivered with a later rxTime."""

    def test_scenario(self, make_packet):
        first = make_packet(text="hi", rx_time=1000)
        again = make_packet(text="hi", rx_time=1001)

        state = fold_all([first, again])

        node = state.nodes[0x1]
        assert node.message_count == 1
        assert node.text_message_count == 1
        assert node.last_heard == 1000

        gateway = state.gateways["!00000002"]
        assert gateway.message_count == 2
        assert gateway.text_message_count == 2
        assert gateway.last_heard == 1001

        messages = state.messages_for("LongFast")
        assert len(messages) == 1
        assert messages[0].text == "hi"

    def test_content_tables_idempotent(self, text_packet):
        once = fold_all([text_packet])
        twice = fold_all([text_packet, text_packet])

        assert twice.nodes == once.nodes
        assert twice.channels == once.channels
        assert twice.messages == once.messages
        assert twice.seen == once.seen
        assert twice.gateways["!00000002"].message_count == 2
        assert once.gateways["!00000002"].message_count == 1

    def test_redelivery_via_other_gateway(self, make_packet):
        state = fold_all(
            [
                make_packet(gateway_id="!00000002"),
                make_packet(gateway_id="!00000003", rx_time=1002),
            ]
        )

        assert set(state.gateways) == {"!00000002", "!00000003"}
        assert state.gateways["!00000003"].observed_nodes == [0x1]
        # Channel only learns about the first gateway
        assert state.channels["LongFast"].gateways == ["!00000002"]
        assert state.channels["LongFast"].message_count == 1


def test_same_id_from_different_nodes_is_not_a_duplicate(make_packet):
    state = fold_all([make_packet(from_node=0x1, packet_id=7), make_packet(from_node=0x3, packet_id=7)])

    assert set(state.nodes) == {0x1, 0x3}
    assert state.channels["LongFast"].message_count == 2


def test_deterministic_replay(make_packet):
    rng = random.Random(42)
    packets = [
        make_packet(
            from_node=rng.randint(1, 5),
            packet_id=rng.randint(1, 20),
            channel_id=rng.choice(["LongFast", "MediumFast"]),
            gateway_id=rng.choice(["!00000001", "!00000009", "!0000000a", None]),
            text=rng.choice([None, "ping", "pong"]),
            rx_time=rng.randint(1000, 2000),
        )
        for _ in range(200)
    ]

    assert fold_all(packets) == fold_all(packets)


class TestRejection:
    """Packets without identity are ignored."""

    @pytest.mark.parametrize("field", ["from_node", "packet_id"])
    def test_missing_identity_is_noop(self, make_packet, field):
        state = AggregatorState()
        packet = make_packet(text="lost", **{field: None})

        assert fold(state, packet) is state

    def test_aggregator_drops_without_error(self, aggregator):
        assert aggregator.process({"data": {"textMessage": "orphan"}}) == AggregatorState()


class TestGateways:
    """Gateway bookkeeping."""

    def test_self_report_never_creates_gateway(self, make_packet):
        state = fold_all([make_packet(from_node=0x2, gateway_id="!00000002")])

        assert state.gateways == {}
        assert 0x2 in state.nodes

    def test_self_report_unpadded_id(self, make_packet):
        state = fold_all([make_packet(from_node=0x2, gateway_id="!2")])
        assert state.gateways == {}

    def test_self_report_does_not_update_existing_gateway(self, make_packet):
        state = fold_all([make_packet(from_node=0x1, gateway_id="!00000002")])
        before = state.gateways["!00000002"]

        state = fold_all([make_packet(from_node=0x2, packet_id=9, gateway_id="!00000002", rx_time=3000)], state)

        assert state.gateways["!00000002"] == before

    def test_channels_and_observed_nodes_unique_in_order(self, make_packet):
        state = fold_all(
            [
                make_packet(from_node=0x5, packet_id=1, channel_id="MediumFast"),
                make_packet(from_node=0x4, packet_id=2, channel_id="LongFast"),
                make_packet(from_node=0x5, packet_id=3, channel_id="MediumFast"),
            ]
        )

        gateway = state.gateways["!00000002"]
        assert list(gateway.channel_ids) == ["MediumFast", "LongFast"]
        assert list(gateway.observed_nodes) == [0x5, 0x4]
        assert gateway.message_count == 3

    def test_last_heard_never_decreases(self, make_packet):
        state = fold_all([make_packet(packet_id=1, rx_time=2000), make_packet(packet_id=2, rx_time=1500)])

        assert state.gateways["!00000002"].last_heard == 2000
        assert state.nodes[0x1].last_heard == 2000

    def test_empty_gateway_id_is_absent(self, make_packet):
        state = fold_all([make_packet(gateway_id="")])

        assert state.gateways == {}
        assert state.nodes[0x1].gateway_id is None


class TestChannels:
    """Channel table updates."""

    def test_counts_and_membership(self, make_packet):
        state = fold_all(
            [
                make_packet(from_node=0x1, packet_id=1, text="hello"),
                make_packet(from_node=0x3, packet_id=2, gateway_id="!00000004"),
                make_packet(from_node=0x1, packet_id=3),
            ]
        )

        channel = state.channels["LongFast"]
        assert channel.message_count == 3
        assert channel.text_message_count == 1
        assert list(channel.nodes) == [0x1, 0x3]
        assert list(channel.gateways) == ["!00000002", "!00000004"]
        assert channel.last_message == 1000

    def test_last_message_is_monotonic(self, make_packet):
        state = fold_all([make_packet(packet_id=1, rx_time=2000), make_packet(packet_id=2, rx_time=1000)])
        assert state.channels["LongFast"].last_message == 2000

    def test_no_channel_id(self, make_packet):
        state = fold_all([make_packet(channel_id=None, text="hi")])

        assert state.channels == {}
        assert state.messages == {}
        assert state.nodes[0x1].text_message_count == 1


class TestNodes:
    """Node table updates."""

    def test_sparse_merge_keeps_known_values(self, make_packet):
        state = fold_all(
            [
                make_packet(
                    packet_id=1,
                    nodeInfo={"longName": "Base Camp", "shortName": "BC", "hwModel": "TBEAM", "macaddr": "aa:bb"},
                ),
                make_packet(packet_id=2, nodeInfo={"longName": "Base Camp 2", "shortName": ""}),
            ]
        )

        node = state.nodes[0x1]
        assert node.long_name == "Base Camp 2"
        assert node.short_name == "BC"
        assert node.hw_model == "TBEAM"
        assert node.mac_addr == "aa:bb"

    def test_user_fields(self, make_packet):
        state = fold_all(
            [make_packet(nodeInfo={"role": "ROUTER", "isLicensed": True, "publicKey": "abc=", "hwModel": 43})]
        )

        node = state.nodes[0x1]
        assert node.role == "ROUTER"
        assert node.is_licensed is True
        assert node.public_key == "abc="
        assert node.hw_model == "43"

    def test_position_replaced_wholesale(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, position={"latitudeI": 1, "longitudeI": 2, "altitude": 30}),
                make_packet(packet_id=2, position={"latitudeI": 5, "longitudeI": 6}),
            ]
        )

        position = state.nodes[0x1].position
        assert position.latitude_i == 5
        assert position.altitude is None

    def test_telemetry_and_battery(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, nodeInfo={"batteryLevel": 50}),
                make_packet(packet_id=2, telemetry={"deviceMetrics": {"batteryLevel": 91, "voltage": 4.2}}),
                make_packet(packet_id=3, telemetry={"environmentMetrics": {"temperature": 21.5}}),
            ]
        )

        node = state.nodes[0x1]
        assert node.battery_level == 91
        assert node.device_metrics.voltage == 4.2
        assert node.environment_metrics.temperature == 21.5

    def test_remembers_last_channel_and_gateway(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, channel_id="LongFast", gateway_id="!00000002"),
                make_packet(packet_id=2, channel_id="MediumFast", gateway_id="!00000009"),
            ]
        )

        node = state.nodes[0x1]
        assert node.channel_id == "MediumFast"
        assert node.gateway_id == "!00000009"
        assert node.message_count == 2

    def test_missing_rx_time_uses_clock(self, make_packet):
        state = fold(AggregatorState(), make_packet(rx_time=None), now=4242)
        assert state.nodes[0x1].last_heard == 4242


class TestMapReport:
    """Map reports fill node details."""

    REPORT = {
        "longName": "Gateway Hill",
        "shortName": "GWH",
        "hwModel": 9,
        "latitudeI": 100,
        "longitudeI": 200,
        "altitude": 12,
        "positionPrecision": 13,
    }

    def test_fills_missing_fields_only(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, nodeInfo={"longName": "Known Name"}),
                make_packet(packet_id=2, mapReport=self.REPORT, rx_time=1500),
            ]
        )

        node = state.nodes[0x1]
        assert node.long_name == "Known Name"
        assert node.short_name == "GWH"
        assert node.hw_model == "9"
        assert node.position.latitude_i == 100
        assert node.position.precision_bits == 13
        assert node.position.time == 1500
        assert node.map_report.long_name == "Gateway Hill"
        assert node.is_gateway is False

    def test_self_report_marks_gateway_node(self, make_packet):
        state = fold_all(
            [
                make_packet(from_node=0x2, packet_id=1, gateway_id="!00000002", nodeInfo={"longName": "Old"}),
                make_packet(from_node=0x2, packet_id=2, gateway_id="!00000002", mapReport=self.REPORT),
            ]
        )

        node = state.nodes[0x2]
        assert node.is_gateway is True
        assert node.long_name == "Gateway Hill"
        assert state.gateways == {}


class TestMessageLog:
    """Per-channel text message log."""

    def test_message_fields(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, nodeInfo={"shortName": "BC"}),
                make_packet(packet_id=2, text="hello mesh", rx_time=1100),
            ]
        )

        message = state.messages_for("LongFast")[0]
        assert message.id == 2
        assert message.from_node == 0x1
        assert message.from_name == "BC"
        assert message.timestamp == 1100
        assert message.channel_id == "LongFast"
        assert message.gateway_id == "!00000002"

    def test_missing_gateway_recorded_as_empty(self, make_packet):
        state = fold_all([make_packet(gateway_id=None, text="hi")])
        assert state.messages_for("LongFast")[0].gateway_id == ""

    def test_empty_text_not_logged(self, make_packet):
        state = fold_all([make_packet(text="")])
        assert state.messages_for("LongFast") == ()

    def test_bounded_to_most_recent(self, make_packet):
        timestamps = list(range(1, 1001))
        random.Random(7).shuffle(timestamps)
        packets = [make_packet(packet_id=i, text=f"msg {ts}", rx_time=ts) for i, ts in enumerate(timestamps)]

        messages = fold_all(packets).messages_for("LongFast")

        assert len(messages) == MAX_MESSAGES_PER_CHANNEL
        assert [m.timestamp for m in messages] == list(range(1000, 900, -1))

    def test_equal_timestamps_keep_arrival_order(self, make_packet):
        state = fold_all([make_packet(packet_id=i, text=str(i), rx_time=1000) for i in (1, 2, 3)])
        assert [m.id for m in state.messages_for("LongFast")] == [1, 2, 3]

    def test_newest_first(self, make_packet):
        state = fold_all(
            [
                make_packet(packet_id=1, text="b", rx_time=2000),
                make_packet(packet_id=2, text="a", rx_time=1000),
                make_packet(packet_id=3, text="c", rx_time=3000),
            ]
        )
        assert [m.text for m in state.messages_for("LongFast")] == ["c", "b", "a"]


def test_fold_does_not_mutate_input(text_packet, make_packet):
    empty = AggregatorState()
    first = fold(empty, text_packet)
    second = fold(first, make_packet(packet_id=6, text="again", rx_time=1200))

    assert empty == AggregatorState()
    assert len(first.seen) == 1
    assert first.nodes[0x1].message_count == 1
    assert len(first.messages_for("LongFast")) == 1
    assert second.nodes[0x1].message_count == 2


class TestAggregator:
    """Tests for the Aggregator session object."""

    def test_process_accepts_raw_json(self, aggregator):
        state = aggregator.process({"data": {"id": 1, "from": 7, "channelId": "LongFast"}})

        assert state is aggregator.state
        assert state.nodes[7].last_heard == 5000

    def test_handle_event_only_folds_messages(self, aggregator, text_packet):
        aggregator.handle_event(InfoEvent(data="Heartbeat"))
        assert aggregator.state == AggregatorState()

        aggregator.handle_event(MessageEvent(data=text_packet))
        assert 0x1 in aggregator.state.nodes

    def test_reset_clears_everything(self, aggregator, text_packet):
        aggregator.process(text_packet)
        aggregator.reset()

        assert aggregator.state == AggregatorState()
        # The identity is forgotten as well
        aggregator.process(text_packet)
        assert aggregator.state.nodes[0x1].message_count == 1

    def test_dispose(self, text_packet):
        aggregator = Aggregator.create()
        aggregator.process(text_packet)
        aggregator.dispose()

        assert aggregator.state.nodes == {}
        with pytest.raises(RuntimeError, match="disposed"):
            aggregator.process(text_packet)

    def test_to_dict(self, aggregator, text_packet):
        data = aggregator.process(text_packet).to_dict()

        assert data["nodes"]["!00000001"]["message_count"] == 1
        assert data["gateways"]["!00000002"]["observed_nodes"] == [1]
        assert data["channels"]["LongFast"]["nodes"] == [1]
        assert data["messages"]["LongFast"][0]["text"] == "hi"
        assert data["seen_packets"] == 1

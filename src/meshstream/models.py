"""Data models for meshstream."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from meshstream.ordered import OrderedSet


class WireModel(BaseModel):
    """Base for payloads decoded from the server's protobuf JSON."""

    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Position(WireModel):
    """Reported GPS position (integer coordinates are degrees * 1e7)."""

    latitude_i: int | None = None
    longitude_i: int | None = None
    altitude: int | None = None
    time: int | None = None
    precision_bits: int | None = None


class User(WireModel):
    """Node identity as broadcast in NODEINFO packets."""

    id: str | None = None
    long_name: str | None = None
    short_name: str | None = None
    macaddr: str | None = None
    hw_model: str | int | None = None
    is_licensed: bool | None = None
    role: str | int | None = None
    public_key: str | None = None
    battery_level: int | None = None
    snr: float | None = None


class DeviceMetrics(WireModel):
    """Device health telemetry."""

    battery_level: int | None = None
    voltage: float | None = None
    channel_utilization: float | None = None
    air_util_tx: float | None = None
    uptime_seconds: int | None = None


class EnvironmentMetrics(WireModel):
    """Environment sensor telemetry."""

    temperature: float | None = None
    relative_humidity: float | None = None
    barometric_pressure: float | None = None
    gas_resistance: float | None = None
    iaq: int | None = None


class Telemetry(WireModel):
    """Telemetry payload; only one of the metric groups is usually set."""

    time: int | None = None
    device_metrics: DeviceMetrics | None = None
    environment_metrics: EnvironmentMetrics | None = None


class MapReport(WireModel):
    """Periodic summary a gateway publishes about itself."""

    long_name: str | None = None
    short_name: str | None = None
    hw_model: str | int | None = None
    role: str | int | None = None
    firmware_version: str | None = None
    region: str | int | None = None
    modem_preset: str | int | None = None
    latitude_i: int | None = None
    longitude_i: int | None = None
    altitude: int | None = None
    position_precision: int | None = None
    num_online_local_nodes: int | None = None


class PacketInfo(WireModel):
    """Information parsed from the MQTT topic the packet arrived on."""

    full_topic: str | None = None
    region_path: str | None = None
    version: str | None = None
    format: str | None = None
    channel: str | None = None
    user_id: str | None = None


class PacketData(WireModel):
    """Flattened, decoded mesh packet."""

    id: int | None = None
    from_node: int | None = Field(None, alias="from")
    to: int | None = None
    port_num: str | int | None = None
    channel_id: str | None = None
    gateway_id: str | None = None
    rx_time: int | None = None
    rx_snr: float | None = None
    rx_rssi: int | None = None
    hop_limit: int | None = None
    hop_start: int | None = None
    text_message: str | None = None
    position: Position | None = None
    node_info: User | None = None
    telemetry: Telemetry | None = None
    map_report: MapReport | None = None
    decode_error: str | None = None


class Packet(WireModel):
    """A complete decoded packet as delivered on the stream."""

    info: PacketInfo = Field(default_factory=PacketInfo)
    data: PacketData = Field(default_factory=PacketData)


class ConnectionInfo(WireModel):
    """Transport metadata sent by the server when a stream opens."""

    mqtt_server: str | None = None
    mqtt_topic: str | None = None
    connected: bool = False
    server_time: int | None = None
    message: str | None = None


class NodeRecord(BaseModel):
    """Aggregated view of a single mesh node."""

    model_config = ConfigDict(frozen=True)

    node_id: int = Field(..., description="Numeric Meshtastic node number")
    last_heard: int = Field(..., description="Newest packet timestamp seen (seconds)")
    message_count: int = Field(0, description="Unique packets from this node")
    text_message_count: int = Field(0, description="Unique text packets from this node")
    short_name: str | None = None
    long_name: str | None = None
    mac_addr: str | None = None
    hw_model: str | None = None
    battery_level: int | None = None
    snr: float | None = None
    is_licensed: bool | None = None
    role: str | None = None
    public_key: str | None = None
    position: Position | None = None
    device_metrics: DeviceMetrics | None = None
    environment_metrics: EnvironmentMetrics | None = None
    map_report: MapReport | None = None
    channel_id: str | None = Field(None, description="Channel of the last packet")
    gateway_id: str | None = Field(None, description="Gateway of the last packet")
    is_gateway: bool = Field(False, description="Node has reported itself as a gateway")

    @property
    def display_name(self) -> str:
        return self.short_name or self.long_name or f"!{self.node_id:08x}"


class GatewayRecord(BaseModel):
    """Aggregated view of a gateway relaying packets into MQTT."""

    model_config = ConfigDict(frozen=True)

    gateway_id: str = Field(..., description="Gateway id (e.g., !abcd1234)")
    last_heard: int
    message_count: int = 0
    text_message_count: int = 0
    channel_ids: OrderedSet = Field(default_factory=OrderedSet)
    observed_nodes: OrderedSet = Field(default_factory=OrderedSet)


class ChannelRecord(BaseModel):
    """Aggregated view of a channel."""

    model_config = ConfigDict(frozen=True)

    channel_id: str
    message_count: int = 0
    text_message_count: int = 0
    last_message: int | None = None
    gateways: OrderedSet = Field(default_factory=OrderedSet)
    nodes: OrderedSet = Field(default_factory=OrderedSet)


class TextMessage(BaseModel):
    """A text message posted to a channel."""

    model_config = ConfigDict(frozen=True)

    id: int
    from_node: int
    from_name: str | None = None
    text: str
    timestamp: int
    channel_id: str
    gateway_id: str = ""


class InfoEvent(BaseModel):
    """Human-readable status line from the server."""

    model_config = ConfigDict(frozen=True)

    type: Literal["info"] = "info"
    data: str


class ConnectionInfoEvent(BaseModel):
    """Transport metadata for the current stream."""

    model_config = ConfigDict(frozen=True)

    type: Literal["connection_info"] = "connection_info"
    data: ConnectionInfo


class MessageEvent(BaseModel):
    """A decoded packet."""

    model_config = ConfigDict(frozen=True)

    type: Literal["message"] = "message"
    data: Packet


class BadDataEvent(BaseModel):
    """A payload that could not be decoded, kept for observability."""

    model_config = ConfigDict(frozen=True)

    type: Literal["bad_data"] = "bad_data"
    data: str
    error: str | None = None


StreamEvent = Annotated[
    InfoEvent | ConnectionInfoEvent | MessageEvent | BadDataEvent,
    Field(discriminator="type"),
]


def hex_node_id(node_id: int) -> str:
    """Render a node number the way Meshtastic prints it (e.g., !0000abcd)."""
    return f"!{node_id:08x}"


def parse_node_id(value: Any) -> int | None:
    """Parse a ``!hex`` node id into its number, or None if it is not one."""
    if not isinstance(value, str) or not value.startswith("!"):
        return None
    try:
        return int(value[1:], 16)
    except ValueError:
        return None

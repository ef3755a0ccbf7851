"""Capped live packet feed with pause/resume buffering."""

from pydantic import BaseModel, ConfigDict, Field

from meshstream.models import Packet

DEFAULT_LOG_SIZE = 100


class PacketLog(BaseModel):
    """Newest-first packet feed.

    While ``paused`` the visible ``items`` stay frozen and new packets
    collect in ``buffered``; both lists are capped at ``capacity``.
    """

    model_config = ConfigDict(frozen=True)

    items: tuple[Packet, ...] = ()
    paused: bool = False
    buffered: tuple[Packet, ...] = ()
    capacity: int = Field(DEFAULT_LOG_SIZE, ge=1)


def push_to_log(log: PacketLog, packet: Packet) -> PacketLog:
    """Add a packet to the front of the feed, or of the buffer when paused."""
    if log.paused:
        return log.model_copy(update={"buffered": ((packet,) + log.buffered)[: log.capacity]})
    return log.model_copy(update={"items": ((packet,) + log.items)[: log.capacity]})


def toggle_pause(log: PacketLog) -> PacketLog:
    """Flip the paused flag, merging buffered packets ahead of the feed on resume."""
    if not log.paused:
        return log.model_copy(update={"paused": True})
    return log.model_copy(
        update={
            "paused": False,
            "items": (log.buffered + log.items)[: log.capacity],
            "buffered": (),
        }
    )


def clear_log(log: PacketLog) -> PacketLog:
    return log.model_copy(update={"items": (), "buffered": ()})

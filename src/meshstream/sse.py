"""Incremental decoder for the text/event-stream format."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ServerSentEvent:
    """One dispatched server-sent event."""

    event: str
    data: str
    id: str | None = None


class SSEDecoder:
    """Turns stream lines into ``ServerSentEvent`` objects.

    Feed one line at a time (with or without its line terminator); an
    event is returned when the blank line ending it arrives. ``retry``
    fields are ignored since reconnect timing comes from ``ReconnectPolicy``.
    """

    def __init__(self):
        self._event = ""
        self._data: list[str] = []
        self._last_id: str | None = None

    def feed(self, line: str | bytes) -> ServerSentEvent | None:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\0" not in value:
                self._last_id = value
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        event_name = self._event or "message"
        data = self._data
        self._event = ""
        self._data = []

        if not data:
            return None

        return ServerSentEvent(
            event=event_name,
            data="\n".join(data),
            id=self._last_id,
        )

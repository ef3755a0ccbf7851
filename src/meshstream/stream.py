"""Server-sent events client with automatic reconnection."""

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import asynccontextmanager
from enum import Enum

import aiohttp
from pydantic import ValidationError

from meshstream.config import DEFAULT_STREAM_URL, ReconnectPolicy, StreamConfig
from meshstream.models import (
    BadDataEvent,
    ConnectionInfo,
    ConnectionInfoEvent,
    InfoEvent,
    MessageEvent,
    Packet,
    StreamEvent,
)
from meshstream.sse import ServerSentEvent, SSEDecoder

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], None]
ErrorHandler = Callable[["StreamError"], None]
StateHandler = Callable[["StreamState"], None]


class StreamError(Exception):
    """Base class for stream failures reported to ``on_error``."""


class TransportError(StreamError):
    """The connection could not be opened or was lost."""


class ReconnectExhaustedError(StreamError):
    """Automatic reconnection gave up after too many consecutive failures."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up after {attempts} failed connection attempts")
        self.attempts = attempts


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    EXHAUSTED = "exhausted"
    CLOSED = "closed"


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors(include_url=False)
    return errors[0]["msg"] if errors else str(exc)


def decode_message(raw: str) -> MessageEvent | BadDataEvent:
    """Parse the payload of a ``message`` event.

    Args:
        raw: JSON text of a packet

    Returns:
        MessageEvent, or BadDataEvent carrying the raw text if it is not a packet
    """
    try:
        packet = Packet.model_validate_json(raw)
    except ValidationError as e:
        message = _validation_message(e)
        logger.warning("Failed to parse message as packet JSON: %s (raw: %.80s)", message, raw)
        return BadDataEvent(data=raw, error=message)
    return MessageEvent(data=packet)


def decode_event(sse: ServerSentEvent) -> StreamEvent | None:
    """Map a named server-sent event onto the typed event union.

    Returns:
        The typed event, or None for event names this client does not handle
    """
    if sse.event == "info":
        return InfoEvent(data=sse.data)

    if sse.event == "connection_info":
        try:
            info = ConnectionInfo.model_validate_json(sse.data)
        except ValidationError as e:
            message = _validation_message(e)
            logger.warning("Failed to parse connection info: %s", message)
            return BadDataEvent(data=sse.data, error=message)
        return ConnectionInfoEvent(data=info)

    if sse.event == "message":
        return decode_message(sse.data)

    return None


class StreamClient:
    """Keeps one server-sent events connection alive and delivers typed events.

    The client runs on the asyncio loop that calls ``start``. A failed or
    dropped connection is retried with exponential backoff until the
    policy's attempt budget is used up; the attempt counter resets as
    soon as the server reports that the stream is connected.
    """

    def __init__(
        self,
        url: str = DEFAULT_STREAM_URL,
        policy: ReconnectPolicy | None = None,
        read_timeout: float | None = 90.0,
        connect_timeout: float | None = 30.0,
    ):
        """Initialize stream client.

        Args:
            url: Server-sent events endpoint
            policy: Reconnection policy (defaults to 1s doubling up to 30s, 30 attempts)
            read_timeout: Seconds without any data before the connection is dropped
            connect_timeout: Seconds allowed for opening the connection
        """
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.read_timeout = read_timeout
        self.connect_timeout = connect_timeout

        self._state = StreamState.IDLE
        self._attempt = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._on_event: EventHandler | None = None
        self._on_error: ErrorHandler | None = None
        self._on_state: StateHandler | None = None
        self._last_event_id: str | None = None

    @classmethod
    def from_config(cls, config: StreamConfig) -> "StreamClient":
        return cls(
            url=config.url,
            policy=config.policy,
            read_timeout=config.read_timeout,
            connect_timeout=config.connect_timeout,
        )

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def attempt(self) -> int:
        """Consecutive failures since the last confirmed connection."""
        return self._attempt

    def start(
        self,
        on_event: EventHandler,
        on_error: ErrorHandler | None = None,
        on_state: StateHandler | None = None,
    ) -> Callable[[], None]:
        """Begin connecting and return a function that stops the stream.

        Must be called from a running event loop. Allowed for a new client
        and after reconnection was exhausted.

        Args:
            on_event: Called with every typed event, in delivery order
            on_error: Called once per transport failure
            on_state: Called with the new state on every transition before ``stop``

        Returns:
            Disposer; after it returns no further callbacks are made

        Raises:
            RuntimeError: If the client is already running or was stopped
        """
        if self._state is StreamState.CLOSED:
            raise RuntimeError("Stream client has been stopped")
        if self._state not in (StreamState.IDLE, StreamState.EXHAUSTED):
            raise RuntimeError("Stream client is already running")

        self._loop = asyncio.get_running_loop()
        self._on_event = on_event
        self._on_error = on_error
        self._on_state = on_state
        self._attempt = 0
        self._connect()
        return self.stop

    def stop(self) -> None:
        """Stop permanently: cancel any pending reconnect and tear down the transport."""
        if self._state is StreamState.CLOSED:
            return

        self._state = StreamState.CLOSED
        self._on_event = None
        self._on_error = None
        self._on_state = None

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if self._task is not None and not self._task.done():
            self._task.cancel()

        logger.info("Stream to %s stopped", self.url)

    async def wait_closed(self) -> None:
        """Wait until the transport task has finished tearing down."""
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await asyncio.wait([task])

    def _connect(self) -> None:
        self._timer = None
        if self._state is StreamState.CLOSED:
            return

        self._set_state(StreamState.CONNECTING)
        # The state handler may have stopped the client
        if self._state is StreamState.CLOSED:
            return
        logger.info("Connecting to %s", self.url)
        self._task = self._loop.create_task(self._run())

    def _request_headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self._last_event_id:
            # Lets the server resume after the last event we saw
            headers["Last-Event-ID"] = self._last_event_id
        return headers

    @asynccontextmanager
    async def _open_stream(self) -> AsyncIterator[AsyncIterable[bytes]]:
        """Open the HTTP stream and yield its body as an iterable of lines."""
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )
        headers = self._request_headers()

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url, headers=headers) as response:
                if response.status != 200:
                    raise TransportError(f"Unexpected HTTP status {response.status} from {self.url}")
                yield response.content

    async def _run(self) -> None:
        try:
            async with self._open_stream() as lines:
                if self._state is StreamState.CLOSED:
                    return
                self._set_state(StreamState.OPEN)
                logger.info("Stream opened: %s", self.url)

                decoder = SSEDecoder()
                async for line in lines:
                    sse = decoder.feed(line)
                    if sse is not None:
                        self._dispatch(sse)
                    if self._state is StreamState.CLOSED:
                        return

            raise TransportError("Server closed the stream")

        except TransportError as e:
            self._handle_error(e)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = TransportError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            self._handle_error(error)

    def _dispatch(self, sse: ServerSentEvent) -> None:
        if sse.id is not None:
            self._last_event_id = sse.id

        event = decode_event(sse)
        if event is None:
            logger.debug("Ignoring '%s' event", sse.event)
            return

        if isinstance(event, InfoEvent) and "Connected" in event.data:
            self._attempt = 0
        elif isinstance(event, ConnectionInfoEvent) and event.data.connected:
            self._attempt = 0

        self._deliver(event)

    def _set_state(self, state: StreamState) -> None:
        self._state = state
        handler = self._on_state
        if handler is None:
            return
        try:
            handler(state)
        except Exception:
            logger.exception("Stream state handler failed on %s", state.value)

    def _deliver(self, event: StreamEvent) -> None:
        handler = self._on_event
        if handler is None or self._state is StreamState.CLOSED:
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Stream event handler failed on %s event", event.type)

    def _notify_error(self, error: StreamError) -> None:
        handler = self._on_error
        if handler is None:
            return
        try:
            handler(error)
        except Exception:
            logger.exception("Stream error handler failed")

    def _handle_error(self, error: StreamError) -> None:
        if self._state is StreamState.CLOSED:
            return

        self._attempt += 1
        if self._attempt >= self.policy.max_attempts:
            self._set_state(StreamState.EXHAUSTED)
            logger.warning("Giving up on %s after %d failed attempts: %s", self.url, self._attempt, error)
            exhausted = ReconnectExhaustedError(self._attempt)
            exhausted.__cause__ = error
            self._notify_error(exhausted)
            return

        delay_ms = self.policy.delay_for(self._attempt - 1)
        self._set_state(StreamState.RECONNECTING)
        logger.warning(
            "Stream error: %s; reconnecting in %.1fs (attempt %d/%d)",
            error,
            delay_ms / 1000,
            self._attempt,
            self.policy.max_attempts,
        )
        self._notify_error(error)

        # The error handler may have stopped the client
        if self._state is StreamState.RECONNECTING:
            self._timer = self._loop.call_later(delay_ms / 1000, self._connect)

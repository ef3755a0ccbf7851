"""Tracking of transport metadata and connection status."""

import logging

from meshstream.models import ConnectionInfo, ConnectionInfoEvent, InfoEvent
from meshstream.stream import ReconnectExhaustedError, StreamState

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "Connecting..."
STATUS_RECONNECTING = "Connection error. Reconnecting..."


class ConnectionTracker:
    """Holds the latest ``connection_info`` payload and a status line."""

    def __init__(self):
        self.info: ConnectionInfo | None = None
        self.status: str = STATUS_CONNECTING

    def update_info(self, info: ConnectionInfo) -> None:
        self.info = info

    def set_connected(self, connected: bool) -> None:
        # No-op until the server has sent connection info
        if self.info is not None:
            self.info = self.info.model_copy(update={"connected": connected})

    def handle_state(self, state: StreamState) -> None:
        """Stream state hook; a new connection attempt shows as connecting."""
        if state is StreamState.CONNECTING:
            self.set_connected(False)
            self.status = STATUS_CONNECTING
            logger.debug("Connection status: %s", self.status)

    def handle_event(self, event) -> None:
        """Stream subscriber hook for info and connection_info events."""
        if isinstance(event, InfoEvent):
            self.status = event.data
        elif isinstance(event, ConnectionInfoEvent):
            self.update_info(event.data)
            if event.data.message:
                self.status = event.data.message

    def handle_error(self, error: Exception) -> None:
        """Stream error hook."""
        self.set_connected(False)
        if isinstance(error, ReconnectExhaustedError):
            self.status = f"Connection failed after {error.attempts} attempts"
        else:
            self.status = STATUS_RECONNECTING
        logger.debug("Connection status: %s", self.status)

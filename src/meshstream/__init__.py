"""Meshstream - live aggregation of a Meshtastic packet stream."""

__version__ = "0.1.0"

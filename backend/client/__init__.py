"""Python client for the realtime chat gateway."""

from client.realtime import ConnectionStatus, RealtimeClient, backoff_delay

__all__ = ["ConnectionStatus", "RealtimeClient", "backoff_delay"]

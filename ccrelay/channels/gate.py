from __future__ import annotations

from ccrelay.core.metrics import ACTIVE_CONNECTIONS


class ConnectionGate:
    """Counts open client links against a fixed ceiling.

    ``acquire`` and ``release`` contain no await points, so each is a single
    atomic step on the event loop. Callers pair them per link with
    ``try``/``finally``.
    """

    def __init__(self, max_connections: int) -> None:
        if max_connections <= 0:
            raise ValueError("max_connections must be greater than zero")
        self._max_connections = max_connections
        self._active = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def max_connections(self) -> int:
        return self._max_connections

    def acquire(self) -> bool:
        if self._active >= self._max_connections:
            return False
        self._active += 1
        ACTIVE_CONNECTIONS.inc()
        return True

    def release(self) -> None:
        if self._active <= 0:
            raise RuntimeError("connection gate released more times than acquired")
        self._active -= 1
        ACTIVE_CONNECTIONS.dec()


__all__ = ["ConnectionGate"]

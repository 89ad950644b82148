import asyncio
import enum
import logging
from helpdesk.core.base import utcnow

log = logging.getLogger("connector.session")

class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AWAITING_MANUAL_AUTH = "awaiting_manual_auth"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"

S = SessionState

QR_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.DISCONNECTED: frozenset({S.AWAITING_MANUAL_AUTH, S.AUTHENTICATING}),
    # self-loop: the bridge rotates the QR code while nobody scans it
    S.AWAITING_MANUAL_AUTH: frozenset({S.AWAITING_MANUAL_AUTH, S.AUTHENTICATING, S.DISCONNECTED}),
    S.AUTHENTICATING: frozenset({S.CONNECTED, S.AWAITING_MANUAL_AUTH, S.DISCONNECTED}),
    S.CONNECTED: frozenset({S.DISCONNECTED}),
}

class StateBroadcaster:
    """Fan-out of session snapshots to live observers.

    A subscriber first receives the current snapshot, then every change.
    Slow subscribers lose their oldest undelivered snapshot, never the newest.
    """

    def __init__(self, maxsize: int = 16):
        self.maxsize = maxsize
        self._current: dict | None = None
        self._subscribers: set[asyncio.Queue] = set()

    @property
    def current(self) -> dict | None:
        return self._current

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        if self._current is not None:
            q.put_nowait(self._current)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    def publish(self, snapshot: dict) -> None:
        self._current = snapshot
        for q in list(self._subscribers):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(snapshot)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

class QrSession:
    """Connectivity state machine of a QR-linked messaging session.

    The connector instance is its only writer. The scan artifact exists only
    while the state is ``awaiting_manual_auth``.
    """

    def __init__(self, broadcaster: StateBroadcaster | None = None):
        self.broadcaster = broadcaster or StateBroadcaster()
        self.state = S.DISCONNECTED
        self.qr: str | None = None
        self.identity: dict | None = None
        self.last_error: str | None = None
        self.updated_at = utcnow()
        self.broadcaster.publish(self.snapshot())

    def can_move(self, target: SessionState) -> bool:
        return target in QR_TRANSITIONS[self.state]

    def transition(self, target: SessionState, *, qr: str | None = None, identity: dict | None = None, error: str | None = None) -> bool:
        if not self.can_move(target):
            log.warning(f"Ignoring session transition {self.state.value} -> {target.value}")
            return False
        if target == S.AWAITING_MANUAL_AUTH and not qr:
            raise ValueError("awaiting_manual_auth requires a scan artifact")

        previous = self.state
        self.state = target
        self.qr = qr if target == S.AWAITING_MANUAL_AUTH else None
        if target == S.CONNECTED:
            self.identity = identity or self.identity
            self.last_error = None
        elif target == S.DISCONNECTED:
            self.identity = None
        if error is not None:
            self.last_error = error
        self.updated_at = utcnow()
        log.info(f"Session {previous.value} -> {target.value}")
        self.broadcaster.publish(self.snapshot())
        return True

    def reset(self, error: str | None = None) -> None:
        """Force ``disconnected`` from any state (stop, crash, logout)."""
        if self.state == S.DISCONNECTED:
            if error:
                self.last_error = error
                self.broadcaster.publish(self.snapshot())
            return
        self.transition(S.DISCONNECTED, error=error)

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "qr": self.qr,
            "identity": self.identity,
            "error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }

from helpdesk.core.base import utcnow
from helpdesk.core.errors import InvalidStatusTransitionError

NEW = "new"
DRAFT_PENDING = "draft_pending"
IN_PROGRESS = "in_progress"
WAITING_USER = "waiting_user"
ESCALATED = "escalated"
RESOLVED = "resolved"
CLOSED = "closed"

ALL_STATUSES = (NEW, DRAFT_PENDING, IN_PROGRESS, WAITING_USER, ESCALATED, RESOLVED, CLOSED)

# Routing lookups never match these
TERMINAL_STATUSES = (RESOLVED, CLOSED)
# What a user sees when asking for their tickets
ACTIVE_STATUSES = (NEW, DRAFT_PENDING, IN_PROGRESS, WAITING_USER, ESCALATED)

TRANSITIONS: dict[str, frozenset[str]] = {
    NEW: frozenset({DRAFT_PENDING, IN_PROGRESS, ESCALATED, RESOLVED, CLOSED}),
    DRAFT_PENDING: frozenset({WAITING_USER, IN_PROGRESS, ESCALATED, RESOLVED, CLOSED}),
    IN_PROGRESS: frozenset({WAITING_USER, DRAFT_PENDING, ESCALATED, RESOLVED, CLOSED}),
    WAITING_USER: frozenset({IN_PROGRESS, DRAFT_PENDING, ESCALATED, RESOLVED, CLOSED}),
    ESCALATED: frozenset({IN_PROGRESS, WAITING_USER, RESOLVED, CLOSED}),
    RESOLVED: frozenset({CLOSED, IN_PROGRESS}),
    CLOSED: frozenset({IN_PROGRESS}),
}

# The processing worker may always fall back to these
SYSTEM_FORCED = frozenset({IN_PROGRESS, ESCALATED})

def can_transition(current: str, target: str) -> bool:
    return current == target or target in TRANSITIONS.get(current, frozenset())

def apply_status(ticket, target: str, *, force: bool = False) -> bool:
    """Move ``ticket`` to ``target``. Returns False when it already was there."""
    current = ticket.status
    if current == target:
        return False
    if not (force and target in SYSTEM_FORCED) and not can_transition(current, target):
        raise InvalidStatusTransitionError(current, target)
    ticket.status = target
    if target == RESOLVED:
        ticket.resolved_at = utcnow()
    elif current in TERMINAL_STATUSES:
        # reopened
        ticket.resolved_at = None
        ticket.resolved_by = None
    return True

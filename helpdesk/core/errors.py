import logging
from typing import Awaitable, TypeVar

log = logging.getLogger("helpdesk.errors")

T = TypeVar("T")

class HelpdeskError(Exception):
    pass

# ---- Channel errors ----

class ConnectorError(HelpdeskError):
    def __init__(self, connector: str, message: str):
        super().__init__(f"[{connector}] {message}")
        self.connector = connector

class ConnectorNotConnectedError(ConnectorError):
    def __init__(self, connector: str, state: str):
        super().__init__(connector, f"session is not connected (state={state})")
        self.state = state

class ConnectorNotConfiguredError(ConnectorError):
    pass

class ChannelSendError(ConnectorError):
    pass

class ConnectorNotFoundError(HelpdeskError):
    def __init__(self, source: str):
        super().__init__(f"No connector registered for source '{source}'")
        self.source = source

# ---- Data errors ----

class TicketNotFoundError(HelpdeskError):
    def __init__(self, ticket_id):
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id

class InvalidStatusTransitionError(HelpdeskError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move ticket from '{current}' to '{target}'")
        self.current = current
        self.target = target

class DraftMissingError(HelpdeskError):
    def __init__(self, ticket_id):
        super().__init__(f"Ticket {ticket_id} has no drafted response to approve")
        self.ticket_id = ticket_id

# ---- Queue / pipeline ----

class QueueGroupMissingError(HelpdeskError):
    def __init__(self, stream: str, group: str):
        super().__init__(f"Consumer group '{group}' missing on stream '{stream}'")
        self.stream = stream
        self.group = group

class PipelineStageError(HelpdeskError):
    def __init__(self, stage: str, cause: Exception | str):
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage

async def best_effort(aw: Awaitable[T], what: str, logger: logging.Logger | None = None) -> T | None:
    """Await a non-critical side effect; failures are logged, never raised."""
    try:
        return await aw
    except Exception as e:
        (logger or log).warning(f"Non-critical side effect failed ({what}): {e}")
        return None

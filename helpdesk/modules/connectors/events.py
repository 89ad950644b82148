"""Typed events connectors put on the router's inbound channel."""

import uuid
from dataclasses import dataclass
from helpdesk.modules.tickets.schemas import InboundMessage, ChannelUserIn

@dataclass
class InboundEvent:
    message: InboundMessage

@dataclass
class FeedbackEvent:
    source: str
    source_id: str
    rating: int
    ticket_id: uuid.UUID | None = None
    user_id: str | None = None

@dataclass
class ConfirmationEvent:
    source: str
    source_id: str
    confirmed: bool
    ticket_id: uuid.UUID | None = None
    user_id: str | None = None

@dataclass
class StatusRequestEvent:
    source: str
    source_id: str
    user: ChannelUserIn

ConnectorEvent = InboundEvent | FeedbackEvent | ConfirmationEvent | StatusRequestEvent

def parse_ticket_id(value: str | None) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None

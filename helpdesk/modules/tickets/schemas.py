import uuid
from datetime import datetime
from typing import Any
from pydantic import BaseModel, ConfigDict, Field
from helpdesk.core.base import utcnow

# ---- Canonical inbound shape (produced by every connector) ----

class Attachment(BaseModel):
    type: str  # photo, document, voice, video, audio, location, contact, file
    url: str | None = None
    data: str | None = None  # base64 payload when the channel has no URL
    mime_type: str | None = None
    file_name: str | None = None

class ChannelUserIn(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    username: str | None = None
    language_code: str | None = None

class InboundMessage(BaseModel):
    source: str
    source_id: str  # channel-native conversation id (chat id, phone, thread key)
    user: ChannelUserIn
    subject: str = ""
    body: str
    attachments: list[Attachment] = Field(default_factory=list)
    raw: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    # transport address for replies when it differs from source_id (mail threads)
    reply_to: str | None = None
    # channel bits later replies need (e.g. mail Message-ID for In-Reply-To)
    meta: dict = Field(default_factory=dict)

# ---- Queue payloads (camelCase on the wire) ----

class _QueuePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class TicketProcessingJob(_QueuePayload):
    ticket_id: uuid.UUID = Field(alias="ticketId")
    is_new: bool = Field(default=False, alias="isNew")
    source: str
    timestamp: datetime = Field(default_factory=utcnow)

class OutboundOptions(_QueuePayload):
    is_auto_response: bool = Field(default=False, alias="isAutoResponse")
    operator_name: str | None = Field(default=None, alias="operatorName")
    kb_refs: list[dict] | None = Field(default=None, alias="kbRefs")

class OutboundMessageJob(_QueuePayload):
    ticket_id: uuid.UUID = Field(alias="ticketId")
    source: str
    source_id: str = Field(alias="sourceId")
    message: str
    options: OutboundOptions = Field(default_factory=OutboundOptions)

class ResolutionNotificationJob(_QueuePayload):
    ticket_id: uuid.UUID = Field(alias="ticketId")
    resolution: str | None = None

# ---- API ----

class TicketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID | None
    source: str
    source_conversation_id: str
    subject: str
    body: str
    language: str | None
    category: str | None
    category_confidence: float | None
    priority: str
    priority_confidence: float | None
    triage_verdict: str | None
    triage_confidence: float | None
    status: str
    assigned_to: str | None
    suggested_response: str | None
    summary: str | None
    resolution_text: str | None
    resolved_by: str | None
    resolved_at: datetime | None
    created_at: datetime
    updated_at: datetime | None

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    ticket_id: uuid.UUID
    sender_type: str
    sender_id: str | None
    sender_name: str | None
    content: str
    attachments: list | None
    is_internal: bool
    created_at: datetime

class NlpResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: uuid.UUID
    language: str | None
    category: str | None
    category_confidence: float | None
    categories: list | None
    priority: str | None
    priority_confidence: float | None
    escalation_required: bool
    triage_verdict: str | None
    triage_confidence: float | None
    kb_refs: list | None
    summary: str | None
    suggested_response: str | None
    decision: str | None
    processing_ms: int | None

class TicketDetailOut(TicketOut):
    nlp: NlpResultOut | None = None

class TicketAction(BaseModel):
    text: str | None = None  # edited draft, note, resolution text
    reason: str | None = None
    assignee: str | None = None
    notify_user: bool = True

class OperatorMessageIn(BaseModel):
    text: str = Field(..., min_length=1)
    send_to_user: bool = True

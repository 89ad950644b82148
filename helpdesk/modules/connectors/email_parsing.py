"""Normalization of raw RFC 822 mail into inbound messages."""

import base64
import re
from datetime import timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime
from helpdesk.core.base import utcnow
from helpdesk.modules.tickets.schemas import Attachment, ChannelUserIn, InboundMessage

AUTO_REPLY_SUBJECTS = (
    "automatic reply",
    "auto-reply",
    "autoreply",
    "out of office",
    "отсутствую",
    "автоматический ответ",
    "автоответ",
)

SUBJECT_PREFIX_RE = re.compile(r"^\s*((re|fwd?|fw|отв|пересл)\s*(\[\d+\])?\s*:\s*)+", re.IGNORECASE)
QUOTE_HEADER_RE = re.compile(
    r"^(On .+ wrote:|.+ (wrote|писал\(а\)|написал\(а\)?|жазды):\s*$|\d{1,2}[./]\d{1,2}[./]\d{2,4}.*(wrote|писал))",
    re.IGNORECASE,
)
SEPARATOR_RE = re.compile(r"^\s*(-{3,}|_{3,})")

_parser = BytesParser(policy=policy.default)

def parse_email(raw: bytes) -> EmailMessage:
    return _parser.parsebytes(raw)

def sender_of(msg: EmailMessage) -> tuple[str, str]:
    """(address, display name); the name falls back to the mailbox local part."""
    addresses = getaddresses([str(msg.get("From", ""))])
    name, address = addresses[0] if addresses else ("", "")
    address = address.strip().lower() or "unknown@unknown.com"
    return address, name.strip() or address.split("@")[0]

def is_auto_reply(msg: EmailMessage) -> bool:
    auto_submitted = str(msg.get("Auto-Submitted", "")).strip().lower()
    if auto_submitted and auto_submitted != "no":
        return True
    if msg.get("X-Auto-Response-Suppress"):
        return True
    if str(msg.get("Precedence", "")).strip().lower() in ("auto_reply", "bulk", "junk"):
        return True
    subject = str(msg.get("Subject", "")).lower()
    return any(p in subject for p in AUTO_REPLY_SUBJECTS)

def strip_quotes(text: str) -> str:
    """Drop quoted history: everything from the first quote marker on."""
    kept = []
    for line in text.splitlines():
        stripped = line.strip()
        if (
            stripped.startswith(">")
            or QUOTE_HEADER_RE.match(stripped)
            or SEPARATOR_RE.match(stripped)
            or "Original Message" in stripped
            or "Исходное сообщение" in stripped
        ):
            break
        kept.append(line)
    return "\n".join(kept).strip()

def strip_html(html: str) -> str:
    html = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.IGNORECASE | re.DOTALL)
    html = re.sub(r"<br\s*/?>|</p>", "\n", html, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", html)
    text = (text.replace("&nbsp;", " ").replace("&lt;", "<").replace("&gt;", ">")
            .replace("&quot;", '"').replace("&amp;", "&"))
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()

def extract_body(msg: EmailMessage) -> str:
    part = msg.get_body(preferencelist=("plain",))
    if part is not None:
        return strip_quotes(part.get_content())
    part = msg.get_body(preferencelist=("html",))
    if part is not None:
        return strip_quotes(strip_html(part.get_content()))
    return ""

def clean_subject(subject: str) -> str:
    return SUBJECT_PREFIX_RE.sub("", subject or "").strip()

def message_ids(value) -> list[str]:
    return re.findall(r"<[^<>\s]+>", str(value or ""))

def thread_key(msg: EmailMessage, sender: str) -> str:
    refs = message_ids(msg.get("References"))
    if refs:
        return refs[0]
    in_reply_to = message_ids(msg.get("In-Reply-To"))
    if in_reply_to:
        return in_reply_to[0]
    own = message_ids(msg.get("Message-ID"))
    return own[0] if own else sender

def extract_attachments(msg: EmailMessage) -> list[Attachment]:
    out = []
    for part in msg.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        out.append(Attachment(
            type="document",
            data=base64.b64encode(payload).decode("ascii"),
            mime_type=part.get_content_type(),
            file_name=part.get_filename(),
        ))
    return out

def to_inbound(raw: bytes, uid: int | None = None, own_address: str | None = None, source: str = "email") -> InboundMessage | None:
    """Normalize one raw message; None for auto-replies and our own mail."""
    msg = parse_email(raw)
    address, name = sender_of(msg)
    if is_auto_reply(msg):
        return None
    if own_address and address == own_address.strip().lower():
        return None

    subject = clean_subject(str(msg.get("Subject", ""))) or "Без темы"
    try:
        timestamp = parsedate_to_datetime(str(msg["Date"])) if msg["Date"] else utcnow()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        timestamp = utcnow()

    own_id = next(iter(message_ids(msg.get("Message-ID"))), None)
    references = message_ids(msg.get("References"))
    return InboundMessage(
        source=source,
        source_id=thread_key(msg, address),
        user=ChannelUserIn(id=address, name=name, email=address),
        subject=subject,
        body=extract_body(msg),
        attachments=extract_attachments(msg),
        raw={
            "uid": uid,
            "messageId": own_id,
            "inReplyTo": next(iter(message_ids(msg.get("In-Reply-To"))), None),
            "references": references,
        },
        timestamp=timestamp,
        reply_to=address,
        meta={"message_id": own_id, "references": references},
    )

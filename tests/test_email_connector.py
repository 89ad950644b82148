"""Mailbox channel: normalization, the high-water mark and reply threading."""
import asyncio
from email.message import EmailMessage
import imaplib
from types import SimpleNamespace
import uuid

import pytest

from helpdesk.core.errors import ConnectorNotConnectedError
from helpdesk.modules.connectors.email import EmailConnector, LAST_SEEN_KEY
from helpdesk.modules.connectors.email_parsing import clean_subject, strip_html, strip_quotes, to_inbound
from helpdesk.modules.connectors.events import InboundEvent
from helpdesk.modules.connectors.session import SessionState

from fakes import FakeCache

IMAP = {"host": "imap.corp.example", "port": 993, "user": "support@corp.example", "password": "x", "mailbox": "INBOX"}
SMTP = {"host": "smtp.corp.example", "port": 587, "user": "support@corp.example", "password": "x", "from": "support@corp.example"}


def _raw(subject="VPN не подключается", body="Добрый день! VPN не подключается с утра.", sender="Иван Петров <ivan@corp.example>",
         message_id="<a1@corp.example>", headers=None, subtype="plain"):
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "support@corp.example"
    msg["Subject"] = subject
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 02 Sep 2024 09:15:00 +0500"
    for key, value in (headers or {}).items():
        msg[key] = value
    msg.set_content(body, subtype=subtype)
    return msg.as_bytes()


# ---- parsing ----

def test_to_inbound_normalizes_plain_mail():
    msg = to_inbound(_raw(), uid=5)
    assert msg.source == "email"
    assert msg.source_id == "<a1@corp.example>"
    assert msg.reply_to == "ivan@corp.example"
    assert (msg.user.id, msg.user.name) == ("ivan@corp.example", "Иван Петров")
    assert msg.subject == "VPN не подключается"
    assert msg.body == "Добрый день! VPN не подключается с утра."
    assert msg.meta == {"message_id": "<a1@corp.example>", "references": []}
    assert msg.raw["uid"] == 5


def test_reply_threads_on_first_reference():
    raw = _raw(
        subject="Re: [Ticket #1a2b3c4d] VPN не подключается",
        body="Не помогло.\n\nOn Mon, 2 Sep 2024 Support wrote:\n> Сбросьте пароль",
        message_id="<a3@corp.example>",
        headers={"In-Reply-To": "<reply@helpdesk.local>", "References": "<a1@corp.example> <reply@helpdesk.local>"},
    )
    msg = to_inbound(raw)
    assert msg.source_id == "<a1@corp.example>"
    assert msg.body == "Не помогло."
    assert msg.subject == "[Ticket #1a2b3c4d] VPN не подключается"


@pytest.mark.parametrize("headers,subject", [
    ({"Auto-Submitted": "auto-replied"}, "Отпуск"),
    ({"X-Auto-Response-Suppress": "All"}, "Отпуск"),
    ({"Precedence": "bulk"}, "Рассылка"),
    (None, "Автоматический ответ: VPN"),
    (None, "Out of Office: back Monday"),
])
def test_auto_replies_are_skipped(headers, subject):
    assert to_inbound(_raw(subject=subject, headers=headers)) is None


def test_own_mail_is_skipped():
    assert to_inbound(_raw(sender="Support <Support@corp.example>"), own_address="support@corp.example") is None


def test_subject_and_body_cleanup():
    assert clean_subject("RE: Fwd: Отв: Принтер") == "Принтер"
    assert clean_subject("") == ""
    assert strip_html("<p>Привет</p><style>p{}</style><br>мир&nbsp;&amp; всё") == "Привет\n\nмир & всё"
    assert strip_quotes("Ответ\n-----Original Message-----\nстарое") == "Ответ"


def test_html_only_mail_is_stripped():
    raw = _raw(body="<html><body><p>Не работает <b>Wi-Fi</b></p></body></html>", subtype="html")
    assert to_inbound(raw).body == "Не работает Wi-Fi"


# ---- polling ----

def _connector(cache=None, batch=()):
    conn = EmailConnector(cache=cache, poll_interval=60, imap_settings=dict(IMAP), smtp_settings=dict(SMTP))
    conn.bind(asyncio.Queue())
    conn.fetched_since = []
    conn.marked = []

    def fetch(last_uid):
        conn.fetched_since.append(last_uid)
        return [(uid, raw) for uid, raw in batch if uid > last_uid]

    conn._fetch_since = fetch
    conn._mark_seen = conn.marked.append
    return conn


async def test_poll_emits_and_advances_mark():
    cache = FakeCache()
    conn = _connector(cache, [(11, _raw(message_id="<m11@x>")), (12, _raw(message_id="<m12@x>"))])

    assert await conn.poll_once() == 2
    assert conn.last_seen_uid == 12
    assert cache.data[LAST_SEEN_KEY] == 12
    assert cache.ttls[LAST_SEEN_KEY] == 30 * 24 * 3600
    assert conn.marked == [[11, 12]]
    events = [conn.events.get_nowait() for _ in range(2)]
    assert all(isinstance(e, InboundEvent) for e in events)

    # nothing at or below the mark is ingested again
    assert await conn.poll_once() == 0
    assert conn.fetched_since == [0, 12]


async def test_mark_survives_restart():
    cache = FakeCache()
    cache.data[LAST_SEEN_KEY] = 40
    conn = _connector(cache)
    assert await conn._load_mark() == 40


async def test_skipped_mail_still_advances_mark():
    conn = _connector(batch=[(3, _raw(headers={"Auto-Submitted": "auto-replied"}))])
    assert await conn.poll_once() == 0
    assert conn.last_seen_uid == 3
    assert conn.events.empty()


async def test_mark_stops_at_first_failure(monkeypatch):
    conn = _connector(batch=[(1, _raw(message_id="<m1@x>")), (2, b"broken"), (3, _raw(message_id="<m3@x>"))])

    import helpdesk.modules.connectors.email as email_module
    real = email_module.to_inbound

    def flaky(raw, **kwargs):
        if raw == b"broken":
            raise ValueError("unparseable")
        return real(raw, **kwargs)

    monkeypatch.setattr(email_module, "to_inbound", flaky)
    assert await conn.poll_once() == 1
    assert conn.last_seen_uid == 1
    assert conn.marked == [[1]]


async def test_start_requires_imap_unless_send_only():
    conn = EmailConnector(imap_settings={"host": None, "user": None}, smtp_settings=dict(SMTP))
    await conn.start()
    assert conn.running is False
    assert "IMAP_HOST" in conn.last_error

    await conn.start(send_only=True)
    assert conn.running is True
    assert conn.state == SessionState.CONNECTED
    await conn.stop()


async def test_failed_mailbox_probe_degrades_health():
    conn = _connector()
    conn.running, conn.state = True, SessionState.CONNECTED
    conn._probe_smtp = lambda: None

    def refused():
        raise imaplib.IMAP4.error("AUTHENTICATIONFAILED")

    conn._check_imap = refused
    health = await conn.health_check()
    assert health["status"] == "degraded"
    assert health["imap"].startswith("unhealthy")

    conn._check_imap = lambda: None
    assert (await conn.health_check())["status"] == "running"


# ---- outbound ----

def _ticket(**meta):
    return SimpleNamespace(
        id=uuid.UUID("1a2b3c4d-0000-4000-8000-000000000000"),
        subject="VPN не подключается",
        source_conversation_id="<a1@corp.example>",
        reply_to="ivan@corp.example",
        channel_meta=meta or None,
    )


def test_reply_headers_continue_the_thread():
    conn = EmailConnector(imap_settings=dict(IMAP), smtp_settings=dict(SMTP))
    ticket = _ticket(message_id="<a3@corp.example>", references=["<a1@corp.example>"])
    msg = conn._build_message("ivan@corp.example", "Текст", "Re: VPN не подключается", ticket)

    assert msg["Subject"] == "[Ticket #1a2b3c4d] Re: VPN не подключается"
    assert msg["In-Reply-To"] == "<a3@corp.example>"
    assert msg["References"] == "<a1@corp.example> <a3@corp.example>"
    assert msg["To"] == "ivan@corp.example"


async def test_resolution_mail_goes_to_sender_address():
    conn = EmailConnector(imap_settings=dict(IMAP), smtp_settings=dict(SMTP))
    conn.state = SessionState.CONNECTED
    delivered = []
    conn._deliver = delivered.append

    result = await conn.send_ticket_resolved(_ticket(), "Пароль сброшен")
    [msg] = delivered
    assert msg["To"] == "ivan@corp.example"
    assert msg["Subject"] == "[Ticket #1a2b3c4d] [Решено] Re: VPN не подключается"
    assert "Пароль сброшен" in msg.get_content()
    assert result["message_id"] == msg["Message-ID"]


async def test_send_requires_connected_session():
    conn = EmailConnector(imap_settings=dict(IMAP), smtp_settings=dict(SMTP))
    with pytest.raises(ConnectorNotConnectedError):
        await conn.send_plain("ivan@corp.example", "привет")

import asyncio
import imaplib
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from helpdesk.core.config import settings
from helpdesk.core.errors import best_effort, ChannelSendError, ConnectorNotConfiguredError
from helpdesk.modules.connectors.base import BaseConnector, short_id
from helpdesk.modules.connectors.email_parsing import to_inbound
from helpdesk.modules.connectors.session import SessionState

LAST_SEEN_KEY = "email:lastSeenUid"
LAST_SEEN_TTL = 30 * 24 * 3600
SIGNATURE = "С уважением,\nСлужба технической поддержки"
DEFAULT_SUBJECT = "Ответ от службы поддержки"

_FETCH_UID_RE = re.compile(rb"UID (\d+)")

class EmailConnector(BaseConnector):
    """Mailbox channel: IMAP polling in, SMTP out.

    The IMAP/SMTP client libraries are blocking, so every session runs in a
    worker thread; the poll loop itself is a single task, one poll at a time.
    """

    name = "email"

    def __init__(self, cache=None, poll_interval: float | None = None, imap_settings: dict | None = None, smtp_settings: dict | None = None):
        super().__init__()
        self.cache = cache
        self.poll_interval = poll_interval or settings.EMAIL_POLL_INTERVAL_SECONDS
        self.imap = imap_settings or {
            "host": settings.IMAP_HOST,
            "port": settings.IMAP_PORT,
            "user": settings.IMAP_USER,
            "password": settings.IMAP_PASSWORD,
            "mailbox": settings.IMAP_MAILBOX,
        }
        self.smtp = smtp_settings or {
            "host": settings.SMTP_HOST,
            "port": settings.SMTP_PORT,
            "user": settings.SMTP_USER,
            "password": settings.SMTP_PASSWORD,
            "from": settings.SMTP_FROM or settings.SMTP_USER,
        }
        self.last_seen_uid = 0
        self.send_only = False
        self._poller: asyncio.Task | None = None

    @property
    def own_address(self) -> str | None:
        return self.imap.get("user")

    # ---- lifecycle ----
    async def _start(self, send_only: bool = False, **_) -> None:
        self.send_only = send_only
        if not self.smtp.get("host"):
            self.log.warning("SMTP not configured, sending disabled")
        if not send_only:
            if not self.imap.get("host") or not self.imap.get("user"):
                raise ConnectorNotConfiguredError(self.name, "IMAP_HOST and IMAP_USER are required")
            self.last_seen_uid = await self._load_mark()
            await asyncio.to_thread(self._check_imap)
            self._poller = asyncio.create_task(self._poll_loop(), name="email-poll")
            self.log.info(f"Email polling started (every {self.poll_interval:.0f}s, last uid {self.last_seen_uid})")
        self.state = SessionState.CONNECTED

    async def _stop(self) -> None:
        if self._poller:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                self.log.error(f"Error polling mailbox: {e}")
            await asyncio.sleep(self.poll_interval)

    # ---- high-water mark ----
    async def _load_mark(self) -> int:
        if self.cache is None:
            return self.last_seen_uid
        value = await best_effort(self.cache.get_json(LAST_SEEN_KEY), "load mailbox mark", self.log)
        return int(value or 0)

    async def _save_mark(self, uid: int) -> None:
        self.last_seen_uid = uid
        if self.cache is not None:
            await self.cache.set_json(LAST_SEEN_KEY, uid, ttl_seconds=LAST_SEEN_TTL)

    # ---- inbound ----
    async def poll_once(self) -> int:
        """Fetch, normalize and emit mail above the mark; returns how many were emitted.

        Stops at the first message that fails so the mark never passes it.
        """
        batch = await asyncio.to_thread(self._fetch_since, self.last_seen_uid)
        if not batch:
            self.log.debug("No new emails")
            return 0
        self.log.info(f"Found {len(batch)} new emails")

        emitted = 0
        done: list[int] = []
        for uid, raw in batch:
            try:
                message = to_inbound(raw, uid=uid, own_address=self.own_address, source=self.name)
                if message is None:
                    self.log.debug(f"Skipping auto-reply or own email (uid {uid})")
                elif await self.emit_message(message):
                    emitted += 1
            except Exception as e:
                self.log.error(f"Error processing email uid {uid}: {e}")
                break
            done.append(uid)
            await self._save_mark(uid)

        if done:
            await best_effort(asyncio.to_thread(self._mark_seen, done), "flag processed mail as seen", self.log)
        return emitted

    def _connect_imap(self) -> imaplib.IMAP4:
        imap = imaplib.IMAP4_SSL(self.imap["host"], int(self.imap["port"]), timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
        imap.login(self.imap["user"], self.imap["password"] or "")
        return imap

    def _check_imap(self) -> None:
        imap = self._connect_imap()
        try:
            imap.select(self.imap["mailbox"], readonly=True)
        finally:
            imap.logout()

    def _fetch_since(self, last_uid: int) -> list[tuple[int, bytes]]:
        imap = self._connect_imap()
        try:
            imap.select(self.imap["mailbox"])
            _, data = imap.uid("SEARCH", "UID", f"{last_uid + 1}:*", "UNSEEN")
            # "N:*" always matches the newest message, even when its uid is below N
            uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > last_uid)
            batch = []
            for uid in uids:
                _, parts = imap.uid("FETCH", str(uid), "(UID BODY.PEEK[])")
                for part in parts:
                    if isinstance(part, tuple) and _FETCH_UID_RE.search(part[0]):
                        batch.append((uid, part[1]))
                        break
            return batch
        finally:
            imap.logout()

    def _mark_seen(self, uids: list[int]) -> None:
        imap = self._connect_imap()
        try:
            imap.select(self.imap["mailbox"])
            imap.uid("STORE", ",".join(str(u) for u in uids), "+FLAGS", "(\\Seen)")
        finally:
            imap.logout()

    # ---- outbound ----
    def _build_message(self, recipient: str, text: str, subject: str, ticket=None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr(("Служба технической поддержки", self.smtp["from"]))
        msg["To"] = recipient
        msg["Subject"] = f"[Ticket #{short_id(ticket)}] {subject}" if ticket is not None else subject
        msg["Message-ID"] = make_msgid(domain=(self.smtp["from"] or "helpdesk.local").split("@")[-1])
        meta = (getattr(ticket, "channel_meta", None) or {}) if ticket is not None else {}
        if meta.get("message_id"):
            msg["In-Reply-To"] = meta["message_id"]
            msg["References"] = " ".join([*meta.get("references", []), meta["message_id"]])
        msg.set_content(text)
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        host, port = self.smtp["host"], int(self.smtp["port"])
        timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        smtp = smtplib.SMTP_SSL(host, port, timeout=timeout) if port == 465 else smtplib.SMTP(host, port, timeout=timeout)
        with smtp:
            if port != 465:
                smtp.starttls()
            if self.smtp.get("user"):
                smtp.login(self.smtp["user"], self.smtp["password"] or "")
            smtp.send_message(msg)

    async def _send(self, recipient_id: str, text: str, subject: str = DEFAULT_SUBJECT, ticket=None, **_):
        if not self.smtp.get("host"):
            raise ConnectorNotConfiguredError(self.name, "SMTP transport not configured")
        msg = self._build_message(recipient_id, text, subject, ticket)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ChannelSendError(self.name, f"send to {recipient_id} failed: {e}") from e
        self.log.debug(f"Email sent to {recipient_id}: {msg['Subject']}")
        return {"message_id": msg["Message-ID"]}

    async def _reply(self, ticket, text: str, subject_prefix: str = "Re: "):
        return await self.send_message(self.recipient_for(ticket), text, subject=f"{subject_prefix}{ticket.subject}", ticket=ticket)

    async def send_ticket_created(self, ticket):
        text = (
            f"Здравствуйте!\n\nВаше обращение получено и зарегистрировано.\n\n"
            f"📋 Номер заявки: {short_id(ticket)}\n📝 Тема: {ticket.subject}\n\n"
            f"Мы обработаем ваш запрос в ближайшее время.\n\n---\n"
            f"Это автоматическое уведомление. Пожалуйста, отвечайте на это письмо для продолжения диалога.\n\n{SIGNATURE}"
        )
        return await self._reply(ticket, text)

    async def send_auto_response(self, ticket, text: str, kb_refs: list | None = None):
        body = (
            f"Здравствуйте!\n\n{text}\n\n---\n"
            f"Если это решило вашу проблему, ответьте \"Да\" на это письмо.\n"
            f"Если вам нужна дополнительная помощь, опишите, что именно не работает.\n\n"
            f"📋 Номер заявки: {short_id(ticket)}\n\n{SIGNATURE}"
        )
        return await self._reply(ticket, body)

    async def send_operator_response(self, ticket, text: str, operator_name: str | None = None):
        body = (
            f"Здравствуйте!\n\n{text}\n\n---\n"
            f"Ответ от: {operator_name or 'Оператор'}\n📋 Номер заявки: {short_id(ticket)}\n\n"
            f"Отвечайте на это письмо для продолжения диалога.\n\n{SIGNATURE}"
        )
        return await self._reply(ticket, body)

    async def send_ticket_resolved(self, ticket, resolution: str | None = None):
        body = (
            f"Здравствуйте!\n\nВаша заявка решена.\n\n📋 Номер заявки: {short_id(ticket)}\n\n"
            f"Решение:\n{resolution or 'Ваша заявка решена.'}\n\n---\n"
            f"Если у вас остались вопросы, просто ответьте на это письмо.\n\n"
            f"Оцените качество поддержки, ответив одним числом от 1 до 5.\n\n{SIGNATURE}"
        )
        return await self._reply(ticket, body, subject_prefix="[Решено] Re: ")

    # ---- health ----
    def _probe_smtp(self) -> None:
        host, port = self.smtp["host"], int(self.smtp["port"])
        timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        smtp = smtplib.SMTP_SSL(host, port, timeout=timeout) if port == 465 else smtplib.SMTP(host, port, timeout=timeout)
        with smtp:
            smtp.noop()

    async def _health(self) -> dict:
        out = {"last_seen_uid": self.last_seen_uid, "poll_interval_seconds": self.poll_interval}
        if self.send_only or not self.imap.get("host"):
            out["imap"] = "not configured" if not self.imap.get("host") else "not polling"
        else:
            try:
                await asyncio.to_thread(self._check_imap)
                out["imap"] = "healthy"
            except (imaplib.IMAP4.error, OSError) as e:
                out["imap"] = f"unhealthy: {e}"
        if not self.smtp.get("host"):
            out["smtp"] = "not configured"
        else:
            try:
                await asyncio.to_thread(self._probe_smtp)
                out["smtp"] = "healthy"
            except (smtplib.SMTPException, OSError) as e:
                out["smtp"] = f"unhealthy: {e}"
        if self.running and any(str(out.get(k, "")).startswith("unhealthy") for k in ("imap", "smtp")):
            out["status"] = "degraded"
        return out

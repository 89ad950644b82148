import asyncio
import re
from datetime import datetime, timezone
import httpx
from helpdesk.core.config import settings
from helpdesk.core.errors import best_effort, ChannelSendError, ConnectorNotConfiguredError
from helpdesk.modules.connectors.base import BaseConnector, short_id
from helpdesk.modules.connectors.events import ConfirmationEvent, FeedbackEvent, parse_ticket_id
from helpdesk.modules.connectors.session import QrSession, SessionState, StateBroadcaster
from helpdesk.modules.tickets.schemas import Attachment, ChannelUserIn, InboundMessage

S = SessionState

MEDIA_TYPES = {
    "image": "image",
    "video": "video",
    "audio": "audio",
    "ptt": "voice",
    "document": "document",
    "sticker": "sticker",
}

YES_WORDS = {"да", "ага", "конечно", "yes", "y", "ok", "иә", "ия", "иа"}
NO_WORDS = {"нет", "не", "no", "n", "жоқ", "жок"}

QR_KEY = "whatsapp:qr"
IDENTITY_KEY = "whatsapp:identity"
AWAITING_KEY = "whatsapp:awaiting:{chat}"
AWAITING_TTL = 7 * 24 * 3600
IDENTITY_TTL = 24 * 3600

def chat_id_for(recipient: str) -> str:
    return recipient if "@" in recipient else f"{recipient}@c.us"

def _normalize_reply(text: str) -> str:
    return re.sub(r"[\s!.,)(]+", " ", text.lower()).strip()

class WhatsAppConnector(BaseConnector):
    """QR-linked WhatsApp Web session driven through an HTTP bridge sidecar.

    The bridge owns the browser session; this connector owns the session state.
    Bridge API (all under ``/sessions/{session_id}``):

    - ``POST /start``, ``POST /stop``, ``POST /logout``, ``GET /status``
    - ``GET /events?cursor=&timeout=`` long-poll, returns ``{cursor, events}``
    - ``POST /messages`` with ``{chatId, text}``
    - ``GET /messages/{message_id}/media`` returns ``{mimetype, filename, data}``
    """

    name = "whatsapp"

    def __init__(self, bridge_url: str | None = None, token: str | None = None, session_id: str | None = None,
                 cache=None, http: httpx.AsyncClient | None = None, poll_timeout: int = 25,
                 qr_ttl_seconds: int | None = None):
        self.session = QrSession(StateBroadcaster())
        super().__init__()
        self.bridge_url = bridge_url or settings.WHATSAPP_BRIDGE_URL
        self.token = token or settings.WHATSAPP_BRIDGE_TOKEN
        self.session_id = session_id or settings.WHATSAPP_SESSION_ID
        self.cache = cache
        self.http = http
        self._owns_http = http is None
        self.poll_timeout = poll_timeout
        self.qr_ttl_seconds = qr_ttl_seconds or settings.WHATSAPP_QR_TTL_SECONDS
        self.send_only = False
        self._cursor: str | None = None
        self._poller: asyncio.Task | None = None
        self._awaiting: dict[str, dict] = {}  # used when no cache is configured

    # SessionState lives on the QR session; BaseConnector reads/writes it as ``state``
    @property
    def state(self) -> SessionState:
        return self.session.state

    @state.setter
    def state(self, value: SessionState) -> None:
        if value == S.DISCONNECTED:
            self.session.reset()
        elif value != self.session.state:
            self.session.transition(value)

    @property
    def broadcaster(self) -> StateBroadcaster:
        return self.session.broadcaster

    def _path(self, suffix: str = "") -> str:
        return f"/sessions/{self.session_id}{suffix}"

    # ---- lifecycle ----
    async def _start(self, send_only: bool = False, **_) -> None:
        if not self.bridge_url and self.http is None:
            raise ConnectorNotConfiguredError(self.name, "WHATSAPP_BRIDGE_URL not set")
        if self.http is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self.http = httpx.AsyncClient(
                base_url=self.bridge_url,
                headers=headers,
                timeout=httpx.Timeout(settings.EXTERNAL_CALL_TIMEOUT_SECONDS, read=self.poll_timeout + 10),
            )
        self.send_only = send_only
        if send_only:
            # another process owns the session; just mirror whether it is linked
            resp = await self.http.get(self._path("/status"))
        else:
            resp = await self.http.post(self._path("/start"))
        resp.raise_for_status()
        await self._sync_status(resp.json())
        if not send_only:
            self._cursor = None
            self._poller = asyncio.create_task(self._poll_events(), name="whatsapp-events")

    async def _stop(self) -> None:
        if self._poller:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        if self.http is not None:
            if not self.send_only:
                await best_effort(self.http.post(self._path("/stop")), "stop bridge session", self.log)
            if self._owns_http:
                await self.http.aclose()
                self.http = None
        await self._forget_session()

    async def connect(self) -> dict:
        """Start (or restart) linking; the QR code arrives through the event feed."""
        if self.running and self.state != S.DISCONNECTED:
            return self.session.snapshot()
        if self.running:
            await self.stop()
        await self.start()
        return self.session.snapshot()

    async def disconnect(self, logout: bool = False) -> dict:
        if logout:
            await self.logout()
        else:
            await self.stop()
        return self.session.snapshot()

    async def logout(self) -> None:
        """Unlink the device so the next connect needs a fresh QR scan."""
        if self.http is not None and self.state == S.CONNECTED:
            resp = await best_effort(self.http.post(self._path("/logout")), "bridge logout", self.log)
            if resp is not None:
                self.log.info("WhatsApp logged out")
        await self.stop()

    # ---- session state ----
    async def _sync_status(self, data: dict) -> None:
        state = data.get("state")
        if state == "qr" and data.get("qr"):
            await self._enter_qr(data["qr"])
        elif state == "authenticating":
            await self._move(S.AUTHENTICATING)
        elif state == "connected":
            await self._enter_connected(data.get("info"))
        else:
            self.session.reset()

    async def _move(self, target: SessionState, **kwargs) -> bool:
        moved = self.session.transition(target, **kwargs)
        if moved:
            await self._persist_session()
        return moved

    async def _enter_qr(self, qr: str) -> None:
        self.log.info("QR code received, waiting for scan")
        await self._move(S.AWAITING_MANUAL_AUTH, qr=qr)

    async def _enter_connected(self, info: dict | None) -> None:
        if self.state == S.CONNECTED:
            return
        if self.state != S.AUTHENTICATING:
            # restored sessions report ready without passing through a scan
            await self._move(S.AUTHENTICATING)
        identity = None
        if info:
            identity = {
                "phone": (info.get("wid") or {}).get("user"),
                "platform": info.get("platform"),
                "pushname": info.get("pushname"),
            }
        await self._move(S.CONNECTED, identity=identity)
        self.log.info(f"WhatsApp connected as {(identity or {}).get('phone')}")

    async def _persist_session(self) -> None:
        if self.cache is None:
            return
        if self.session.qr:
            await best_effort(self.cache.set_json(QR_KEY, self.session.qr, ttl_seconds=self.qr_ttl_seconds), "cache qr", self.log)
        else:
            await best_effort(self.cache.delete(QR_KEY), "clear cached qr", self.log)
        if self.state == S.CONNECTED:
            await best_effort(self.cache.set_json(IDENTITY_KEY, self.session.identity, ttl_seconds=IDENTITY_TTL), "cache identity", self.log)

    async def _forget_session(self, error: str | None = None) -> None:
        self.session.reset(error)
        if self.cache is not None:
            await best_effort(self.cache.delete(QR_KEY), "clear cached qr", self.log)
            await best_effort(self.cache.delete(IDENTITY_KEY), "clear cached identity", self.log)

    # ---- event feed ----
    async def _poll_events(self) -> None:
        backoff = 1.0
        while True:
            try:
                resp = await self.http.get(
                    self._path("/events"),
                    params={"cursor": self._cursor or "", "timeout": self.poll_timeout},
                )
                resp.raise_for_status()
                batch = resp.json()
            except httpx.HTTPError as e:
                self.log.warning(f"Bridge event poll failed: {e}; retrying in {backoff:.0f}s")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)
                continue
            backoff = 1.0
            for event in batch.get("events", []):
                await self.handle_event(event)
            self._cursor = batch.get("cursor", self._cursor)

    async def handle_event(self, event: dict) -> None:
        kind = event.get("type")
        try:
            if kind == "qr":
                await self._enter_qr(event["qr"])
            elif kind == "authenticated":
                self.log.info("WhatsApp authenticated")
                await self._move(S.AUTHENTICATING)
            elif kind == "auth_failure":
                self.log.error(f"WhatsApp authentication failed: {event.get('message')}")
                await self._forget_session(error=event.get("message") or "auth_failure")
            elif kind == "ready":
                await self._enter_connected(event.get("info"))
            elif kind == "disconnected":
                self.log.warning(f"WhatsApp disconnected: {event.get('reason')}")
                await self._forget_session(error=event.get("reason"))
            elif kind == "message":
                await self.handle_message(event.get("message") or {})
            else:
                self.log.debug(f"Ignoring bridge event {kind!r}")
        except Exception as e:
            self.log.error(f"Error handling WhatsApp {kind} event: {e}", exc_info=True)

    # ---- inbound ----
    async def handle_message(self, msg: dict) -> None:
        if msg.get("isStatus") or msg.get("broadcast"):
            return
        chat_id = msg.get("from") or ""
        if "@g.us" in chat_id:
            self.log.debug("Skipping group message")
            return
        if msg.get("fromMe"):
            return

        number = chat_id.replace("@c.us", "")
        body = (msg.get("body") or "").strip()
        if body and await self._handle_pending_reply(chat_id, number, body):
            return

        mtype = msg.get("type")
        attachments = []
        if msg.get("hasMedia"):
            try:
                media = await self._download_media(msg.get("id"))
            except httpx.HTTPError as e:
                self.log.error(f"Error downloading media: {e}")
                body = body or "[Вложение не удалось загрузить]"
            else:
                attachments.append(Attachment(
                    type=MEDIA_TYPES.get(mtype, "file"),
                    data=media.get("data"),
                    mime_type=media.get("mimetype"),
                    file_name=media.get("filename") or f"{mtype}_{msg.get('timestamp')}",
                ))
                body = body or self._media_placeholder(mtype, media)

        if mtype == "location" and msg.get("location"):
            loc = msg["location"]
            body = f"[Локация: {loc.get('latitude')}, {loc.get('longitude')}]"
        elif mtype == "vcard":
            body = "[Контакт]"

        contact = msg.get("contact") or {}
        ts = msg.get("timestamp")
        inbound = InboundMessage(
            source=self.name,
            source_id=chat_id,
            user=ChannelUserIn(id=number, name=contact.get("pushname") or contact.get("name") or number, phone=number),
            subject=body[:100],
            body=body,
            attachments=attachments,
            raw={"messageId": msg.get("id"), "timestamp": ts, "type": mtype, "isForwarded": msg.get("isForwarded")},
            timestamp=datetime.fromtimestamp(ts, tz=timezone.utc) if ts else datetime.now(timezone.utc),
            meta={"message_id": msg.get("id")},
        )
        if await self.emit_message(inbound):
            self.log.debug(f"WhatsApp message from {number} ({mtype}): {body[:50]}")

    async def _download_media(self, message_id: str) -> dict:
        resp = await self.http.get(self._path(f"/messages/{message_id}/media"))
        resp.raise_for_status()
        return resp.json()

    @staticmethod
    def _media_placeholder(mtype: str | None, media: dict) -> str:
        if mtype == "image":
            return "[Изображение]"
        if mtype == "document":
            return f"[Документ: {media.get('filename') or 'файл'}]"
        if mtype in ("audio", "ptt"):
            return "[Голосовое сообщение]"
        if mtype == "video":
            return "[Видео]"
        return ""

    async def _handle_pending_reply(self, chat_id: str, number: str, body: str) -> bool:
        """Turn a bare "да"/"нет" or 1-5 into the signal the chat is waiting for."""
        pending = await self._get_awaiting(chat_id)
        if not pending:
            return False
        answer = _normalize_reply(body)
        ticket_id = parse_ticket_id(pending.get("ticket_id"))

        if pending.get("kind") == "confirmation" and answer in YES_WORDS | NO_WORDS:
            confirmed = answer in YES_WORDS
            await self._clear_awaiting(chat_id)
            await self.emit(ConfirmationEvent(source=self.name, source_id=chat_id, confirmed=confirmed, ticket_id=ticket_id, user_id=number))
            ack = "✅ Отлично! Рады, что смогли помочь." if confirmed else "📝 Понял. Ваш запрос передан оператору."
            await best_effort(self.send_message(chat_id, ack), "confirmation ack", self.log)
            return True

        if pending.get("kind") == "rating" and answer in {"1", "2", "3", "4", "5"}:
            await self._clear_awaiting(chat_id)
            await self.emit(FeedbackEvent(source=self.name, source_id=chat_id, rating=int(answer), ticket_id=ticket_id, user_id=number))
            await best_effort(self.send_message(chat_id, f"Спасибо за оценку! Вы поставили {answer} ⭐"), "rating ack", self.log)
            return True

        # anything else is a new message; stop waiting
        await self._clear_awaiting(chat_id)
        return False

    async def _set_awaiting(self, chat_id: str, kind: str, ticket) -> None:
        value = {"kind": kind, "ticket_id": str(ticket.id)}
        if self.cache is None:
            self._awaiting[chat_id] = value
        else:
            await best_effort(self.cache.set_json(AWAITING_KEY.format(chat=chat_id), value, ttl_seconds=AWAITING_TTL), "remember pending reply", self.log)

    async def _get_awaiting(self, chat_id: str) -> dict | None:
        if self.cache is None:
            return self._awaiting.get(chat_id)
        return await best_effort(self.cache.get_json(AWAITING_KEY.format(chat=chat_id)), "read pending reply", self.log)

    async def _clear_awaiting(self, chat_id: str) -> None:
        if self.cache is None:
            self._awaiting.pop(chat_id, None)
        else:
            await best_effort(self.cache.delete(AWAITING_KEY.format(chat=chat_id)), "clear pending reply", self.log)

    # ---- outbound ----
    async def _send(self, recipient_id: str, text: str, **_):
        chat_id = chat_id_for(recipient_id)
        try:
            resp = await self.http.post(self._path("/messages"), json={"chatId": chat_id, "text": text})
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ChannelSendError(self.name, f"send to {chat_id} failed: {e}") from e
        message_id = (resp.json() or {}).get("id")
        self.log.debug(f"WhatsApp message sent to {chat_id} ({message_id})")
        return {"message_id": message_id}

    async def send_ticket_created(self, ticket):
        text = (
            f"✅ *Заявка создана*\n\n"
            f"📋 Номер: `{short_id(ticket)}`\n"
            f"📝 {ticket.subject}\n\n"
            f"Мы обрабатываем ваш запрос. Пожалуйста, подождите..."
        )
        return await self.send_message(self.recipient_for(ticket), text)

    async def send_auto_response(self, ticket, text: str, kb_refs: list | None = None):
        body = f"💡 *Возможное решение:*\n\n{text}"
        if kb_refs:
            body += "\n\n📚 _Источник: База знаний_"
        body += '\n\n*Это помогло решить вашу проблему?*\nОтветьте "Да" или "Нет"'
        result = await self.send_message(self.recipient_for(ticket), body)
        await self._set_awaiting(chat_id_for(self.recipient_for(ticket)), "confirmation", ticket)
        return result

    async def send_operator_response(self, ticket, text: str, operator_name: str | None = None):
        return await self.send_message(self.recipient_for(ticket), f"👨‍💻 *{operator_name or 'Оператор'}:*\n\n{text}")

    async def send_ticket_resolved(self, ticket, resolution: str | None = None):
        body = f"✅ *Заявка решена*\n\n{resolution or 'Ваша заявка решена.'}"
        body += "\n\nОцените качество поддержки от 1 до 5, отправив число.\n\nСпасибо за обращение! 🙏"
        result = await self.send_message(self.recipient_for(ticket), body)
        await self._set_awaiting(chat_id_for(self.recipient_for(ticket)), "rating", ticket)
        return result

    # ---- health ----
    async def _health(self) -> dict:
        snap = self.session.snapshot()
        out = {
            "connection_state": snap["state"],
            "is_connected": self.state == S.CONNECTED,
            "has_qr": bool(snap["qr"]),
            "identity": snap["identity"],
            "subscribers": self.broadcaster.subscriber_count,
        }
        if snap["error"]:
            out["error"] = snap["error"]
        if self.http is not None:
            resp = await best_effort(self.http.get(self._path("/status")), "bridge status", self.log)
            out["bridge"] = "reachable" if resp is not None and resp.is_success else "unreachable"
            if self.running and out["bridge"] == "unreachable":
                out["status"] = "degraded"
        return out

import asyncio
import logging
from html import escape
from helpdesk.core.errors import ConnectorNotConnectedError, best_effort
from helpdesk.modules.connectors.events import ConnectorEvent, InboundEvent
from helpdesk.modules.connectors.session import SessionState
from helpdesk.modules.tickets.schemas import InboundMessage

STATUS_EMOJI = {
    "new": "🆕",
    "draft_pending": "📝",
    "in_progress": "🔄",
    "waiting_user": "⏳",
    "resolved": "✅",
    "closed": "✔️",
    "escalated": "🔴",
}

ATTACHMENT_PLACEHOLDERS = {
    "photo": "[Изображение]",
    "image": "[Изображение]",
    "document": "[Документ]",
    "voice": "[Голосовое сообщение]",
    "audio": "[Аудио]",
    "video": "[Видео]",
}

def short_id(ticket) -> str:
    return str(ticket.id)[:8]

class BaseConnector:
    """One external channel: session lifecycle, inbound normalization, outbound formatting.

    Inbound traffic is published as typed events on the queue handed over by
    ``bind`` (the router owns the consuming side). Subclasses implement
    ``_start``/``_stop``/``_send``/``_health`` and override the ``send_*``
    formatters where the channel supports richer markup than plain text.
    """

    name = "base"

    def __init__(self):
        self.events: asyncio.Queue | None = None
        self.state = SessionState.DISCONNECTED
        self.running = False
        self.last_error: str | None = None
        self.log = logging.getLogger(f"connector.{self.name}")

    # ---- lifecycle ----
    def bind(self, events: asyncio.Queue) -> None:
        self.events = events

    async def start(self, **options) -> None:
        if self.running:
            self.log.info(f"{self.name} connector already running")
            return
        self.last_error = None
        try:
            await self._start(**options)
        except Exception as e:
            # auth / config failures surface through health_check, never crash the process
            self.last_error = str(e)
            self.state = SessionState.DISCONNECTED
            self.log.error(f"{self.name} connector failed to start: {e}")
            await best_effort(self._stop(), f"{self.name} cleanup after failed start", self.log)
            return
        self.running = True
        self.log.info(f"{self.name} connector started")

    async def stop(self) -> None:
        try:
            await self._stop()
        finally:
            self.running = False
            self.state = SessionState.DISCONNECTED
        self.log.info(f"{self.name} connector stopped")

    async def _start(self, **options) -> None:
        raise NotImplementedError

    async def _stop(self) -> None:
        return None

    # ---- outbound ----
    async def send_message(self, recipient_id: str, text: str, **options):
        if self.state != SessionState.CONNECTED:
            raise ConnectorNotConnectedError(self.name, self.state.value)
        return await self._send(recipient_id, text, **options)

    async def _send(self, recipient_id: str, text: str, **options):
        raise NotImplementedError

    def recipient_for(self, ticket) -> str:
        return ticket.reply_to or ticket.source_conversation_id

    async def send_ticket_created(self, ticket):
        text = (
            f"✅ Заявка создана\n\n"
            f"📋 Номер: {short_id(ticket)}\n"
            f"📝 {ticket.subject}\n\n"
            f"Мы обрабатываем ваш запрос. Пожалуйста, подождите..."
        )
        return await self.send_message(self.recipient_for(ticket), text)

    async def send_auto_response(self, ticket, text: str, kb_refs: list | None = None):
        body = f"💡 Возможное решение:\n\n{text}"
        if kb_refs:
            body += "\n\n📚 Источник: База знаний"
        body += "\n\nЭто помогло решить вашу проблему? Ответьте «Да» или «Нет»."
        return await self.send_message(self.recipient_for(ticket), body)

    async def send_operator_response(self, ticket, text: str, operator_name: str | None = None):
        return await self.send_message(self.recipient_for(ticket), f"👨‍💻 {operator_name or 'Оператор'}:\n\n{text}")

    async def send_ticket_resolved(self, ticket, resolution: str | None = None):
        body = f"✅ Заявка решена\n\n{resolution or 'Ваша заявка решена.'}"
        body += "\n\nОцените качество поддержки от 1 до 5, отправив число.\n\nСпасибо за обращение! 🙏"
        return await self.send_message(self.recipient_for(ticket), body)

    async def send_ticket_status(self, recipient_id: str, tickets: list):
        return await self.send_message(recipient_id, self.format_status_list(tickets))

    async def send_plain(self, recipient_id: str, text: str):
        return await self.send_message(recipient_id, text)

    def format_status_list(self, tickets: list, *, html: bool = False) -> str:
        if not tickets:
            return "📋 У вас нет активных заявок."
        b = (lambda s: f"<b>{s}</b>") if html else (lambda s: s)
        text = escape if html else (lambda s: s)
        code = (lambda s: f"<code>{s}</code>") if html else (lambda s: s)
        lines = [f"📋 {b('Ваши заявки:')}", ""]
        for t in tickets[:5]:
            lines.append(f"{STATUS_EMOJI.get(t.status, '📌')} {code(short_id(t))}")
            lines.append(f"   {text((t.subject or 'Без темы')[:40])}")
            lines.append(f"   Статус: {t.status}")
            lines.append("")
        if len(tickets) > 5:
            lines.append(f"...и ещё {len(tickets) - 5} заявок")
        return "\n".join(lines).rstrip()

    # ---- inbound ----
    async def emit(self, event: ConnectorEvent) -> None:
        if self.events is None:
            raise RuntimeError(f"{self.name} connector is not bound to a router")
        await self.events.put(event)

    async def emit_message(self, message: InboundMessage) -> bool:
        """Publish a normalized inbound message; returns False when it was filtered out."""
        body = (message.body or "").strip()
        if not body and not message.attachments:
            self.log.debug(f"Dropping empty message from {message.source_id}")
            return False
        if not body:
            kinds = {a.type for a in message.attachments}
            message.body = " ".join(ATTACHMENT_PLACEHOLDERS.get(k, "[Вложение]") for k in sorted(kinds))
        await self.emit(InboundEvent(message))
        return True

    # ---- health ----
    async def health_check(self) -> dict:
        base = {
            "name": self.name,
            "status": "running" if self.running else ("unhealthy" if self.last_error else "stopped"),
            "state": self.state.value,
        }
        if self.last_error:
            base["error"] = self.last_error
        try:
            extra = await self._health()
        except Exception as e:
            self.log.warning(f"Health check failed: {e}")
            return {**base, "status": "unhealthy", "error": str(e)}
        report = {**base, **(extra or {})}
        if self.running and self.state != SessionState.CONNECTED:
            # running, but the channel session cannot send
            report["status"] = "degraded"
        return report

    async def _health(self) -> dict:
        return {}

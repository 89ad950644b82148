import asyncio
import logging
import uuid
from helpdesk.core.config import settings
from helpdesk.core.errors import best_effort, ConnectorNotFoundError, TicketNotFoundError
from helpdesk.core.logging import bind_log_context
from helpdesk.modules.audit.service import AuditService
from helpdesk.modules.connectors.base import BaseConnector
from helpdesk.modules.connectors.events import ConfirmationEvent, ConnectorEvent, FeedbackEvent, InboundEvent, StatusRequestEvent
from helpdesk.modules.tickets import status as st
from helpdesk.modules.tickets.repository import ChannelUserRepository, TicketMessageRepository, TicketRepository
from helpdesk.modules.tickets.schemas import InboundMessage, TicketProcessingJob
from helpdesk.platform import streams
from helpdesk.platform.ports.stream_bus import StreamBusPort

log = logging.getLogger("connector.router")

NO_TICKET_REPLY = "❓ Не нашли активную заявку. Если у вас есть вопрос, просто напишите его."
AUTOMATION_REJECTED_NOTE = "Пользователь указал, что автоматический ответ не помог. Требуется помощь оператора."
AUTO_CONFIRMED_TEXT = "Пользователь подтвердил решение"

class ConnectorRouter:
    """Routes traffic between channel connectors and the ticket store.

    Connectors publish typed events on one shared queue; a single dispatcher
    task turns them into tickets, messages and queue jobs. Outbound sends go
    back through the connector recorded as the ticket's ``source``.
    """

    def __init__(self, session_factory, bus: StreamBusPort, queue_size: int = 1000):
        self.session_factory = session_factory
        self.bus = bus
        self.connectors: dict[str, BaseConnector] = {}
        self.events: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._dispatcher: asyncio.Task | None = None

    # ---- registry ----
    def register(self, name: str, connector: BaseConnector) -> None:
        if self.connectors.get(name) is connector:
            return
        connector.bind(self.events)
        self.connectors[name] = connector
        log.info(f"Connector registered: {name}")

    def get(self, name: str) -> BaseConnector | None:
        return self.connectors.get(name)

    def require(self, source: str) -> BaseConnector:
        connector = self.connectors.get(source)
        if connector is None:
            raise ConnectorNotFoundError(source)
        return connector

    # ---- lifecycle ----
    async def start_all(self, *, enabled: dict[str, bool] | None = None, send_only: bool = False) -> None:
        """Start registered connectors; ``enabled`` maps name -> start now (default True)."""
        enabled = enabled or {}
        if not send_only:
            self.start_dispatcher()
        for name, connector in self.connectors.items():
            if not enabled.get(name, True):
                log.info(f"Connector {name} registered but not started")
                continue
            try:
                await connector.start(send_only=send_only)
            except Exception as e:
                log.error(f"Failed to start {name} connector: {e}")
        log.info(f"Connector router started (active: {[n for n, c in self.connectors.items() if c.running]})")

    async def stop_all(self, drain_timeout: float = 5.0) -> None:
        log.info("Stopping all connectors...")
        for name, connector in self.connectors.items():
            try:
                await connector.stop()
            except Exception as e:
                log.error(f"Error stopping {name} connector: {e}")
        if self._dispatcher:
            try:
                await asyncio.wait_for(self.events.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                log.warning(f"{self.events.qsize()} connector events left undispatched at shutdown")
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        log.info("All connectors stopped")

    def start_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="connector-dispatch")

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.dispatch(event)
            except Exception as e:
                log.error(f"Unhandled error dispatching {type(event).__name__}: {e}", exc_info=True)
            finally:
                self.events.task_done()

    async def dispatch(self, event: ConnectorEvent) -> None:
        if isinstance(event, InboundEvent):
            await self.handle_incoming_message(event.message)
        elif isinstance(event, FeedbackEvent):
            await self.handle_feedback(event)
        elif isinstance(event, ConfirmationEvent):
            await self.handle_confirmation(event)
        elif isinstance(event, StatusRequestEvent):
            await self.handle_status_request(event)
        else:
            log.warning(f"Unknown connector event {event!r}")

    # ---- inbound ----
    async def handle_incoming_message(self, message: InboundMessage) -> uuid.UUID | None:
        """Create or continue the conversation's ticket and queue it for processing.

        Never raises: a failure here cannot be retried by the channel.
        """
        source, source_id = message.source, message.source_id
        with bind_log_context(f"{source}:{source_id}"):
            log.info(f"Incoming message: {message.body[:50]!r}")
            try:
                ticket, is_new = await self._store_inbound(message)
            except Exception as e:
                log.error(f"Error handling incoming message: {e}", exc_info=True)
                return None

            try:
                job = TicketProcessingJob(ticket_id=ticket.id, is_new=is_new, source=source)
                await self.bus.append(streams.TICKET_PROCESSING, job.to_payload())
            except Exception as e:
                log.error(f"Failed to queue ticket {ticket.id} for processing: {e}")

            if is_new:
                connector = self.get(source)
                if connector is not None:
                    await best_effort(connector.send_ticket_created(ticket), f"ticket created ack for {ticket.id}", log)
            return ticket.id

    async def _store_inbound(self, message: InboundMessage):
        attachments = [a.model_dump(exclude_none=True) for a in message.attachments] or None
        async with self.session_factory() as session:
            users = ChannelUserRepository(session)
            tickets = TicketRepository(session)
            messages = TicketMessageRepository(session)

            u = message.user
            user = await users.get_or_create(
                message.source, u.id,
                name=u.name, email=u.email, phone=u.phone, username=u.username, language_code=u.language_code,
            )
            ticket = await tickets.find_open(message.source, message.source_id)
            is_new = ticket is None
            if is_new:
                ticket = await tickets.create(
                    user_id=user.id,
                    source=message.source,
                    source_conversation_id=message.source_id,
                    reply_to=message.reply_to,
                    channel_meta=message.meta or None,
                    subject=(message.subject or message.body[:100])[:500],
                    body=message.body,
                    status=st.NEW,
                )
                log.info(f"New ticket created: {ticket.id}")
            else:
                if ticket.status == st.WAITING_USER:
                    st.apply_status(ticket, st.IN_PROGRESS)
                if message.meta:
                    # later replies thread onto the newest message
                    ticket.channel_meta = {**(ticket.channel_meta or {}), **message.meta}
                if message.reply_to:
                    ticket.reply_to = message.reply_to
                log.info(f"Message added to existing ticket {ticket.id} (status {ticket.status})")

            await messages.append(
                ticket.id, "user", message.body,
                sender_id=u.id,
                sender_name=u.name,
                attachments=attachments,
                channel_message_id=str(message.meta["message_id"]) if message.meta.get("message_id") else None,
            )
            await session.commit()
        return ticket, is_new

    # ---- outbound ----
    async def send_response(self, ticket_id: uuid.UUID, text: str, *, is_auto_response: bool = False,
                            operator_name: str | None = None, kb_refs: list | None = None) -> dict:
        """Deliver a reply through the ticket's channel, then record it in the history.

        Raises when the ticket or its connector is unknown or the send fails.
        """
        async with self.session_factory() as session:
            ticket = await TicketRepository(session).get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            connector = self.require(ticket.source)
            if is_auto_response:
                result = await connector.send_auto_response(ticket, text, kb_refs)
            else:
                result = await connector.send_operator_response(ticket, text, operator_name)
            await TicketMessageRepository(session).append(
                ticket.id,
                "bot" if is_auto_response else "operator",
                text,
                sender_id="system" if is_auto_response else operator_name,
                sender_name=None if is_auto_response else operator_name,
                channel_message_id=(result or {}).get("message_id"),
            )
            await session.commit()
        log.info(f"Response sent for ticket {ticket_id} via {ticket.source} (auto={is_auto_response})")
        return result or {}

    async def send_resolution_notification(self, ticket_id: uuid.UUID, resolution: str | None = None) -> dict:
        async with self.session_factory() as session:
            ticket = await TicketRepository(session).get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            connector = self.require(ticket.source)
            result = await connector.send_ticket_resolved(ticket, resolution or ticket.resolution_text)
        log.info(f"Resolution notification sent for ticket {ticket_id} via {ticket.source}")
        return result or {}

    # ---- out-of-band signals ----
    async def _ticket_for_signal(self, session, source: str, source_id: str, ticket_id: uuid.UUID | None):
        tickets = TicketRepository(session)
        if ticket_id is not None:
            ticket = await tickets.get(ticket_id)
            if ticket is not None and (ticket.source, ticket.source_conversation_id) == (source, source_id):
                return ticket
            if ticket is not None:
                log.warning(f"Ticket {ticket_id} does not belong to {source}:{source_id}; ignoring the reference")
        # channels without buttons only know the conversation
        return await tickets.find_latest(source, source_id)

    async def handle_feedback(self, event: FeedbackEvent) -> None:
        log.info(f"Feedback received from {event.source}:{event.source_id}: {event.rating}")
        try:
            async with self.session_factory() as session:
                ticket = await self._ticket_for_signal(session, event.source, event.source_id, event.ticket_id)
                if ticket is None:
                    log.warning(f"No ticket found for feedback from {event.source}:{event.source_id}")
                    return
                await TicketMessageRepository(session).append(
                    ticket.id, "user", f"Оценка: {event.rating} ⭐", sender_id=event.user_id,
                )
                await session.commit()
        except Exception as e:
            log.error(f"Error handling feedback: {e}", exc_info=True)

    async def handle_confirmation(self, event: ConfirmationEvent) -> None:
        log.info(f"Confirmation from {event.source}:{event.source_id}: {'yes' if event.confirmed else 'no'}")
        try:
            async with self.session_factory() as session:
                ticket = await self._ticket_for_signal(session, event.source, event.source_id, event.ticket_id)
                if ticket is None:
                    log.warning(f"No ticket found for confirmation from {event.source}:{event.source_id}")
                    connector = self.get(event.source)
                    if connector is not None:
                        await best_effort(connector.send_plain(event.source_id, NO_TICKET_REPLY), "no-ticket reply", log)
                    return

                audit = AuditService(session)
                if event.confirmed:
                    if ticket.status in st.TERMINAL_STATUSES:
                        log.info(f"Ticket {ticket.id} already {ticket.status}; confirmation ignored")
                        return
                    st.apply_status(ticket, st.RESOLVED)
                    ticket.resolved_by = "auto_confirmed"
                    ticket.resolution_text = AUTO_CONFIRMED_TEXT
                    await audit.log(ticket.id, f"user:{event.user_id or event.source_id}", "auto_confirmed", {"source": event.source})
                else:
                    st.apply_status(ticket, st.IN_PROGRESS)
                    await TicketMessageRepository(session).append(ticket.id, "system", AUTOMATION_REJECTED_NOTE, sender_id="system")
                    await audit.log(ticket.id, f"user:{event.user_id or event.source_id}", "auto_rejected", {"source": event.source})
                await session.commit()
        except Exception as e:
            log.error(f"Error handling confirmation: {e}", exc_info=True)

    async def handle_status_request(self, event: StatusRequestEvent) -> None:
        try:
            async with self.session_factory() as session:
                user = await ChannelUserRepository(session).get_by_external(event.source, event.user.id)
                tickets = list(await TicketRepository(session).list_active_for_user(user.id)) if user else []
        except Exception as e:
            log.error(f"Error handling status request: {e}", exc_info=True)
            return
        connector = self.get(event.source)
        if connector is not None:
            await best_effort(connector.send_ticket_status(event.source_id, tickets), "ticket status reply", log)

    # ---- health ----
    async def health_check(self) -> dict:
        results = {"overall": "healthy", "connectors": {}}
        for name, connector in self.connectors.items():
            try:
                snap = await connector.health_check()
            except Exception as e:
                snap = {"name": name, "status": "unhealthy", "error": str(e)}
            results["connectors"][name] = snap
            if snap.get("status") not in ("healthy", "running"):
                results["overall"] = "degraded"
        return results

def build_router(session_factory, bus: StreamBusPort, cache=None) -> ConnectorRouter:
    """Router with every configured channel registered (started later by ``start_all``)."""
    from helpdesk.modules.connectors.email import EmailConnector
    from helpdesk.modules.connectors.telegram import TelegramConnector
    from helpdesk.modules.connectors.whatsapp import WhatsAppConnector

    router = ConnectorRouter(session_factory, bus)
    if settings.TELEGRAM_ENABLED and settings.TELEGRAM_BOT_TOKEN:
        router.register("telegram", TelegramConnector())
    if settings.EMAIL_ENABLED and (settings.IMAP_HOST or settings.SMTP_HOST):
        router.register("email", EmailConnector(cache=cache))
    # registered even when not linked yet so sends route once it connects
    router.register("whatsapp", WhatsAppConnector(cache=cache))
    return router

def default_enabled() -> dict[str, bool]:
    return {"whatsapp": settings.WHATSAPP_AUTO_START}

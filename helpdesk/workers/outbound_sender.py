"""Outbound sender: delivers queued replies and resolution notices through the connectors.

Normally runs inside the API process (it must share the connector instances
that own the channel sessions). ``python -m helpdesk.workers.outbound_sender``
runs it standalone with the connectors started in send-only mode.
"""

import asyncio
import logging
from pydantic import ValidationError
from helpdesk.core.logging import bind_log_context
from helpdesk.modules.connectors.registry import ConnectorRouter
from helpdesk.modules.tickets.schemas import OutboundMessageJob, ResolutionNotificationJob
from helpdesk.platform import streams
from helpdesk.platform.ports.stream_bus import StreamBusPort
from helpdesk.workers.consumer import StreamConsumer, consumer_name

log = logging.getLogger("worker.sender")

class OutboundSender:
    def __init__(self, connectors: ConnectorRouter):
        self.connectors = connectors

    async def handle_outbound(self, payload: dict) -> None:
        try:
            job = OutboundMessageJob.model_validate(payload)
        except ValidationError as e:
            log.error(f"Dropping malformed outbound payload {payload!r}: {e}")
            return
        with bind_log_context(f"ticket:{job.ticket_id}"):
            log.info(f"Sending outbound message via {job.source}")
            # raises on unknown ticket/connector or failed send -> entry stays pending
            await self.connectors.send_response(
                job.ticket_id,
                job.message,
                is_auto_response=job.options.is_auto_response,
                operator_name=job.options.operator_name,
                kb_refs=job.options.kb_refs,
            )
            log.info(f"Outbound message sent: {job.message[:50]!r}")

    async def handle_resolution(self, payload: dict) -> None:
        try:
            job = ResolutionNotificationJob.model_validate(payload)
        except ValidationError as e:
            log.error(f"Dropping malformed resolution payload {payload!r}: {e}")
            return
        with bind_log_context(f"ticket:{job.ticket_id}"):
            await self.connectors.send_resolution_notification(job.ticket_id, job.resolution)

    def consumers(self, bus: StreamBusPort, name: str | None = None) -> list[StreamConsumer]:
        name = name or consumer_name("sender")
        return [
            StreamConsumer(bus, streams.OUTBOUND_MESSAGES, streams.SENDERS_GROUP, name, self.handle_outbound, logger=log),
            StreamConsumer(bus, streams.RESOLUTION_NOTIFICATIONS, streams.NOTIFIERS_GROUP, name, self.handle_resolution, logger=log),
        ]

    async def run(self, bus: StreamBusPort, stop: asyncio.Event) -> None:
        await asyncio.gather(*(c.run(stop) for c in self.consumers(bus)))

async def main() -> None:
    from helpdesk.core.db import SessionLocal, engine
    from helpdesk.core.logging import setup_logging
    from helpdesk.core.redis import redis_manager
    from helpdesk.modules.connectors.registry import build_router
    from helpdesk.platform.provider_registry import registry
    from helpdesk.workers.consumer import install_signal_handlers

    setup_logging()
    bus = registry.stream_bus()
    await redis_manager.connect()
    connectors = build_router(SessionLocal, bus, cache=redis_manager)
    await connectors.start_all(send_only=True)
    stop = asyncio.Event()
    install_signal_handlers(stop, log)
    try:
        await OutboundSender(connectors).run(bus, stop)
    finally:
        await connectors.stop_all()
        await bus.close()
        await redis_manager.close()
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())

"""Ticket processing worker: runs the triage pipeline for ``ticket_processing`` jobs.

Run with ``python -m helpdesk.workers.ticket_processor``.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from pydantic import ValidationError
from helpdesk.core.config import settings
from helpdesk.core.errors import TicketNotFoundError
from helpdesk.core.logging import bind_log_context
from helpdesk.modules.audit.service import AuditService
from helpdesk.modules.nlp.service import NlpService
from helpdesk.modules.tickets import status as st
from helpdesk.modules.tickets.repository import NlpResultRepository, TicketRepository
from helpdesk.modules.tickets.schemas import TicketProcessingJob

log = logging.getLogger("worker.processor")

@dataclass(frozen=True)
class Thresholds:
    auto_resolve: float = 0.90
    triage: float = 0.85
    draft_min: float = 0.65

    @classmethod
    def from_settings(cls) -> "Thresholds":
        return cls(settings.THRESHOLD_AUTO_RESOLVE, settings.THRESHOLD_TRIAGE, settings.THRESHOLD_DRAFT_MIN)

def decide_status(*, escalation: bool, auto_resolvable: bool, category_confidence: float,
                  triage_confidence: float, has_response: bool, thresholds: Thresholds) -> tuple[str, str]:
    """First matching rule wins; returns (status, rule name)."""
    if escalation:
        return st.ESCALATED, "escalation"
    if (
        auto_resolvable
        and category_confidence >= thresholds.auto_resolve
        and triage_confidence >= thresholds.triage
        and has_response
    ):
        # never sent without an operator's approval
        return st.DRAFT_PENDING, "auto_resolve_draft"
    if category_confidence >= thresholds.draft_min and has_response:
        return st.DRAFT_PENDING, "draft_min"
    return st.IN_PROGRESS, "route_to_operator"

class TicketProcessor:
    def __init__(self, session_factory, nlp: NlpService, thresholds: Thresholds | None = None):
        self.session_factory = session_factory
        self.nlp = nlp
        self.thresholds = thresholds or Thresholds.from_settings()

    async def handle(self, payload: dict) -> None:
        """Queue entry handler. Raising leaves the entry pending for retry."""
        try:
            job = TicketProcessingJob.model_validate(payload)
        except ValidationError as e:
            # redelivery cannot fix a malformed payload
            log.error(f"Dropping malformed ticket_processing payload {payload!r}: {e}")
            return
        with bind_log_context(f"ticket:{job.ticket_id}"):
            await self.process(job.ticket_id, is_new=job.is_new)

    async def process(self, ticket_id: uuid.UUID, *, is_new: bool = False) -> str | None:
        """Run the pipeline for one ticket; returns the status set, or None when skipped."""
        started = time.monotonic()
        try:
            return await self._run(ticket_id, is_new, started)
        except TicketNotFoundError:
            raise
        except Exception as e:
            log.error(f"Error processing ticket {ticket_id}: {e}", exc_info=True)
            await self._fall_back_to_operator(ticket_id, e)
            raise

    async def _run(self, ticket_id: uuid.UUID, is_new: bool, started: float) -> str | None:
        async with self.session_factory() as session:
            ticket = await TicketRepository(session).get(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            if ticket.category and not is_new:
                log.debug(f"Ticket {ticket_id} already classified, skipping")
                return None
            subject, body = ticket.subject or "", ticket.body or ""
            log.info(f"Processing ticket {ticket_id} (new={is_new})")

            language = await self.nlp.detect_language(f"{subject} {body}")
            classification = await self.nlp.classify(subject, body)
            top = classification.top
            priority = await self.nlp.predict_priority(subject, body, top.category)
            categories = [{"category": p.category, "confidence": p.confidence} for p in classification.predictions]

            nlp_results = NlpResultRepository(session)
            audit = AuditService(session)
            ticket.language = language.language
            ticket.category = top.category
            ticket.category_confidence = top.confidence

            if priority.escalation_required:
                ticket.priority = "critical"
                ticket.priority_confidence = priority.confidence
                ticket.summary = f"{top.category}: {subject}"
                st.apply_status(ticket, st.ESCALATED, force=True)
                elapsed = int((time.monotonic() - started) * 1000)
                await nlp_results.upsert(
                    ticket.id,
                    language=language.language,
                    category=top.category,
                    category_confidence=top.confidence,
                    categories=categories,
                    priority="critical",
                    priority_confidence=priority.confidence,
                    escalation_required=True,
                    summary=ticket.summary,
                    decision="escalation",
                    processing_ms=elapsed,
                )
                await audit.log(ticket.id, "system", "nlp_escalated", {
                    "reason": priority.escalation_reason,
                    "category": top.category,
                    "processing_ms": elapsed,
                })
                await session.commit()
                log.warning(f"Ticket {ticket_id} escalated: {priority.escalation_reason}")
                return st.ESCALATED

            kb_results = await self.nlp.search_knowledge(f"{subject}\n{body}", language=language.language, category=top.category)
            triage = await self.nlp.triage(subject, body, top.category, kb_results)
            draft = None
            if triage.auto_resolvable and kb_results:
                draft = await self.nlp.generate_response(subject, body, kb_results, language.language)

            target, rule = decide_status(
                escalation=False,
                auto_resolvable=triage.auto_resolvable,
                category_confidence=top.confidence,
                triage_confidence=triage.confidence,
                has_response=draft is not None,
                thresholds=self.thresholds,
            )
            kb_refs = []
            if draft:
                cited = set(draft.kb_refs)
                kb_refs = [
                    {"id": str(kb.get("id")), "title": kb.get("title"), "score": kb.get("score")}
                    for kb in kb_results if str(kb.get("id")) in cited
                ]
            summary = (draft.summary if draft and draft.summary else None) or f"{top.category}: {subject}"
            verdict = "auto_resolvable" if triage.auto_resolvable else "manual"

            ticket.priority = priority.priority
            ticket.priority_confidence = priority.confidence
            ticket.triage_verdict = verdict
            ticket.triage_confidence = triage.confidence
            ticket.suggested_response = draft.answer if draft else None
            ticket.summary = summary

            applied = target
            if ticket.status != target:
                if st.can_transition(ticket.status, target):
                    st.apply_status(ticket, target)
                else:
                    # an operator moved the ticket meanwhile; their status stands
                    log.info(f"Keeping status {ticket.status} (pipeline proposed {target})")
                    applied = ticket.status

            elapsed = int((time.monotonic() - started) * 1000)
            await nlp_results.upsert(
                ticket.id,
                language=language.language,
                category=top.category,
                category_confidence=top.confidence,
                categories=categories,
                priority=priority.priority,
                priority_confidence=priority.confidence,
                escalation_required=False,
                triage_verdict=verdict,
                triage_confidence=triage.confidence,
                kb_refs=kb_refs,
                summary=summary,
                suggested_response=ticket.suggested_response,
                decision=rule,
                processing_ms=elapsed,
            )
            await audit.log(ticket.id, "system", "nlp_processed", {
                "category": top.category,
                "category_confidence": top.confidence,
                "classification_method": classification.method,
                "language": language.language,
                "priority": priority.priority,
                "triage": verdict,
                "triage_confidence": triage.confidence,
                "decision": rule,
                "status": applied,
                "kb_refs": [r["id"] for r in kb_refs],
                "processing_ms": elapsed,
            })
            await session.commit()

        log.info(f"Ticket {ticket_id} processed: {top.category} ({top.confidence:.2f}) -> {applied} via {rule} in {elapsed}ms")
        return applied

    async def _fall_back_to_operator(self, ticket_id: uuid.UUID, error: Exception) -> None:
        try:
            async with self.session_factory() as session:
                ticket = await TicketRepository(session).get(ticket_id)
                if ticket is None:
                    return
                if ticket.status not in st.TERMINAL_STATUSES:
                    st.apply_status(ticket, st.IN_PROGRESS, force=True)
                await AuditService(session).log(ticket_id, "system", "nlp_error", {"error": str(error)}, success=False)
                await session.commit()
        except Exception as e:
            log.error(f"Failed to update ticket {ticket_id} after error: {e}")

async def main() -> None:
    from helpdesk.core.db import SessionLocal, engine
    from helpdesk.core.logging import setup_logging
    from helpdesk.core.redis import redis_manager
    from helpdesk.platform import streams
    from helpdesk.platform.provider_registry import registry
    from helpdesk.workers.consumer import StreamConsumer, consumer_name, install_signal_handlers

    setup_logging()
    bus = registry.stream_bus()
    await redis_manager.connect()
    nlp = NlpService(registry.completion(), registry.semantic_search(), cache=redis_manager)
    consumer = StreamConsumer(
        bus, streams.TICKET_PROCESSING, streams.PROCESSORS_GROUP, consumer_name("processor"),
        TicketProcessor(SessionLocal, nlp).handle, logger=log,
    )
    stop = asyncio.Event()
    install_signal_handlers(stop, log)
    try:
        await consumer.run(stop)
    finally:
        await bus.close()
        await redis_manager.close()
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(main())

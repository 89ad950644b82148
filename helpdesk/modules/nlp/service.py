import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field, asdict
from helpdesk.core.config import settings
from helpdesk.core.errors import PipelineStageError
from helpdesk.modules.nlp import prompts
from helpdesk.modules.nlp.categories import CATEGORIES, BY_CODE, FALLBACK_CATEGORY, PRIORITIES, is_auto_resolvable
from helpdesk.platform.ports.completion import CompletionPort
from helpdesk.platform.ports.semantic_search import SemanticSearchPort

log = logging.getLogger("nlp.pipeline")

_KAZAKH_LETTERS = re.compile(r"[әғқңөұүһі]", re.IGNORECASE)
_CYRILLIC_LETTERS = re.compile(r"[а-яё]", re.IGNORECASE)
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

CLASSIFY_CACHE_TTL = 3600

# ---- Stage results ----

@dataclass
class LanguageResult:
    language: str
    confidence: float
    method: str

@dataclass
class CategoryPrediction:
    category: str
    confidence: float
    rationale: str | None = None

@dataclass
class Classification:
    predictions: list[CategoryPrediction]
    method: str = "llm"

    @property
    def top(self) -> CategoryPrediction:
        return self.predictions[0]

@dataclass
class PriorityResult:
    priority: str
    confidence: float
    escalation_required: bool = False
    escalation_reason: str | None = None

@dataclass
class TriageResult:
    auto_resolvable: bool
    confidence: float
    recommended_action: str = "route_to_operator"
    relevant_kb_ids: list[str] = field(default_factory=list)
    reasoning: str | None = None

@dataclass
class DraftResponse:
    answer: str
    summary: str | None = None
    kb_refs: list[str] = field(default_factory=list)
    needs_clarification: bool = False
    clarification_question: str | None = None

def parse_llm_json(text: str) -> dict:
    """Parse a JSON object out of a completion, tolerating markdown fences."""
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # models sometimes wrap the object in prose
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ValueError(f"Invalid JSON response from LLM: {cleaned[:200]!r}")
        data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("LLM JSON response is not an object")
    return data

def _confidence(value, default: float = 0.5) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return min(max(v, 0.0), 1.0)

class NlpService:
    """Stages of the triage pipeline.

    Each stage bounds its external call with ``timeout`` and owns its fallback,
    so a failing completion or search backend degrades the answer instead of
    aborting the pipeline.
    """

    def __init__(self, completion: CompletionPort, search: SemanticSearchPort, *, cache=None, timeout: float | None = None, escalation_keywords: list[str] | None = None):
        self.completion = completion
        self.search = search
        self.cache = cache
        self.timeout = timeout or settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.escalation_keywords = [k.lower() for k in (escalation_keywords if escalation_keywords is not None else settings.ESCALATION_KEYWORDS)]

    async def _complete_json(self, stage: str, prompt: str, *, system_prompt: str, max_tokens: int, temperature: float) -> dict:
        try:
            text = await asyncio.wait_for(
                self.completion.complete(prompt, system_prompt=system_prompt, max_tokens=max_tokens, temperature=temperature),
                timeout=self.timeout,
            )
            return parse_llm_json(text)
        except asyncio.TimeoutError as e:
            raise PipelineStageError(stage, f"timed out after {self.timeout}s") from e
        except Exception as e:
            raise PipelineStageError(stage, e) from e

    # ---- Language ----
    async def detect_language(self, text: str) -> LanguageResult:
        text = text or ""
        if _KAZAKH_LETTERS.search(text):
            return LanguageResult("kz", 0.95, "heuristic")
        if text and len(_CYRILLIC_LETTERS.findall(text)) / len(text) > 0.3:
            return LanguageResult("ru", 0.9, "heuristic")
        if not text.strip():
            return LanguageResult("ru", 0.5, "default")
        try:
            data = await self._complete_json(
                "language", prompts.LANGUAGE.user(text),
                system_prompt=prompts.LANGUAGE.system, max_tokens=100, temperature=0.1,
            )
            lang = data.get("language")
            if lang not in ("ru", "kz", "en"):
                raise PipelineStageError("language", f"unsupported language {lang!r}")
            return LanguageResult(lang, _confidence(data.get("confidence"), 0.7), "llm")
        except PipelineStageError as e:
            log.warning(f"Language detection via LLM failed, using default: {e}")
            return LanguageResult("ru", 0.5, "default")

    # ---- Category ----
    async def classify(self, subject: str, body: str) -> Classification:
        cache_key = "classify:" + hashlib.sha256(f"{subject}\n{body}".encode("utf-8")).hexdigest()[:32]
        cached = await self._cache_get(cache_key)
        if cached:
            log.debug("Classification cache hit")
            return Classification([CategoryPrediction(**p) for p in cached["predictions"]], cached.get("method", "llm"))

        try:
            data = await self._complete_json(
                "classify", prompts.CLASSIFIER.user(subject, body),
                system_prompt=prompts.CLASSIFIER.system, max_tokens=500, temperature=0.2,
            )
        except PipelineStageError as e:
            log.error(f"Classification failed, falling back to keywords: {e}")
            return self.classify_by_keywords(subject, body)

        predictions = [
            CategoryPrediction(p.get("category"), _confidence(p.get("confidence")), p.get("rationale"))
            for p in data.get("predictions") or []
            if isinstance(p, dict) and p.get("category") in BY_CODE
        ]
        predictions.sort(key=lambda p: p.confidence, reverse=True)
        predictions = predictions[:3]
        if not predictions:
            predictions = [CategoryPrediction(FALLBACK_CATEGORY, 0.5, "No matching category found")]
        result = Classification(predictions, "llm")
        await self._cache_set(cache_key, {"predictions": [asdict(p) for p in predictions], "method": "llm"}, CLASSIFY_CACHE_TTL)
        log.debug(f"Ticket classified as {result.top.category} ({result.top.confidence:.2f})")
        return result

    def classify_by_keywords(self, subject: str, body: str) -> Classification:
        text = f"{subject} {body}".lower()
        predictions = []
        for cat in CATEGORIES:
            matches = [kw for kw in cat.keywords if kw.lower() in text]
            if matches:
                predictions.append(CategoryPrediction(
                    cat.code,
                    min(0.4 + len(matches) * 0.15, 0.75),
                    f"Matched keywords: {', '.join(matches)}",
                ))
        predictions.sort(key=lambda p: p.confidence, reverse=True)
        predictions = predictions[:3] or [CategoryPrediction(FALLBACK_CATEGORY, 0.5, "No keyword matches")]
        return Classification(predictions, "keywords")

    # ---- Priority ----
    def match_escalation_keyword(self, subject: str, body: str) -> str | None:
        text = f"{subject} {body}".lower()
        for kw in self.escalation_keywords:
            if kw and kw in text:
                return kw
        return None

    async def predict_priority(self, subject: str, body: str, category: str) -> PriorityResult:
        keyword = self.match_escalation_keyword(subject, body)
        if keyword:
            return PriorityResult("critical", 0.95, True, f"Escalation keyword detected: {keyword}")
        try:
            data = await self._complete_json(
                "priority", prompts.PRIORITY.user(subject, body, category),
                system_prompt=prompts.PRIORITY.system, max_tokens=300, temperature=0.2,
            )
        except PipelineStageError as e:
            log.error(f"Priority prediction failed: {e}")
            return PriorityResult("medium", 0.5)
        priority = data.get("priority")
        if priority not in PRIORITIES:
            priority = "medium"
        return PriorityResult(
            priority,
            _confidence(data.get("confidence")),
            bool(data.get("escalation_required")),
            data.get("escalation_reason"),
        )

    # ---- Knowledge base ----
    async def search_knowledge(self, query: str, *, language: str | None = None, category: str | None = None, limit: int | None = None) -> list[dict]:
        try:
            results = await asyncio.wait_for(
                self.search.search(query, language=language, category=category, limit=limit or settings.KB_SEARCH_LIMIT),
                timeout=self.timeout,
            )
        except Exception as e:
            log.error(f"KB search failed, treating as no results: {e!r}")
            return []
        log.debug(f"KB search returned {len(results)} results")
        return list(results or [])

    # ---- Triage ----
    async def triage(self, subject: str, body: str, category: str, kb_results: list[dict]) -> TriageResult:
        kb_ids = [str(kb.get("id")) for kb in kb_results]
        if not kb_results:
            return TriageResult(False, 0.8, reasoning="No relevant KB articles found")
        if not is_auto_resolvable(category):
            return TriageResult(False, 0.9, relevant_kb_ids=kb_ids, reasoning=f"Category '{category}' requires manual handling")
        try:
            data = await self._complete_json(
                "triage", prompts.TRIAGE.user(subject, body, category, kb_results),
                system_prompt=prompts.TRIAGE.system, max_tokens=400, temperature=0.2,
            )
        except PipelineStageError as e:
            log.error(f"Triage failed: {e}")
            return TriageResult(False, 0.5, relevant_kb_ids=kb_ids, reasoning="Triage analysis failed")
        return TriageResult(
            bool(data.get("auto_resolvable")),
            _confidence(data.get("confidence")),
            data.get("recommended_action") or "route_to_operator",
            [str(x) for x in data.get("relevant_kb_ids") or kb_ids],
            data.get("reasoning"),
        )

    # ---- Drafted reply ----
    async def generate_response(self, subject: str, body: str, kb_results: list[dict], language: str = "ru") -> DraftResponse | None:
        if not kb_results:
            return None
        prompt = prompts.response_prompt(language)
        try:
            data = await self._complete_json(
                "response", prompt.user(subject, body, kb_results),
                system_prompt=prompt.system, max_tokens=800, temperature=0.4,
            )
        except PipelineStageError as e:
            log.error(f"Response generation failed: {e}")
            return None
        answer = (data.get("answer") or "").strip()
        question = data.get("clarification_question")
        if not answer and data.get("needs_clarification") and question:
            answer = str(question).strip()
        if not answer:
            return None
        known = {str(kb.get("id")) for kb in kb_results}
        return DraftResponse(
            answer=answer,
            summary=data.get("summary"),
            kb_refs=[str(r) for r in data.get("kb_refs") or [] if str(r) in known],
            needs_clarification=bool(data.get("needs_clarification")),
            clarification_question=question,
        )

    # ---- cache (best effort) ----
    async def _cache_get(self, key: str):
        if self.cache is None:
            return None
        try:
            return await self.cache.get_json(key)
        except Exception as e:
            log.warning(f"Classification cache read failed: {e}")
            return None

    async def _cache_set(self, key: str, value, ttl: int):
        if self.cache is None:
            return
        try:
            await self.cache.set_json(key, value, ttl)
        except Exception as e:
            log.warning(f"Classification cache write failed: {e}")

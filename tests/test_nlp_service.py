"""NLP stages and their fallbacks."""
import asyncio

import pytest

from helpdesk.modules.nlp import prompts
from helpdesk.modules.nlp.service import NlpService, parse_llm_json

from fakes import FakeCache, ScriptedCompletion, StaticSearch

KB = [{"id": "kb1", "title": "VPN", "excerpt": "...", "score": 0.9}]


def _nlp(responses=None, results=None, search_error=None, **kwargs) -> NlpService:
    return NlpService(
        ScriptedCompletion(responses),
        StaticSearch(results, error=search_error),
        timeout=kwargs.pop("timeout", 5),
        escalation_keywords=kwargs.pop("escalation_keywords", ["срочно", "outage", "шұғыл"]),
        **kwargs,
    )


def test_parse_llm_json_tolerates_fences_and_prose():
    assert parse_llm_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_llm_json('Here you go: {"a": 2} hope it helps') == {"a": 2}
    with pytest.raises(ValueError):
        parse_llm_json("no json here")
    with pytest.raises(ValueError):
        parse_llm_json("[1, 2]")


@pytest.mark.parametrize("text,expected", [
    ("VPN құпиясөзін ұмыттым", ("kz", "heuristic")),
    ("Не работает принтер на третьем этаже", ("ru", "heuristic")),
    ("   ", ("ru", "default")),
])
async def test_language_heuristics(text, expected):
    result = await _nlp().detect_language(text)
    assert (result.language, result.method) == expected


async def test_language_falls_back_to_completion_then_default():
    nlp = _nlp({prompts.LANGUAGE.system: {"language": "en", "confidence": 0.9}})
    assert (await nlp.detect_language("My printer is broken")).language == "en"

    result = await _nlp().detect_language("My printer is broken")
    assert (result.language, result.confidence, result.method) == ("ru", 0.5, "default")


async def test_classify_keeps_top_three_known_categories():
    nlp = _nlp({prompts.CLASSIFIER.system: {"predictions": [
        {"category": "email", "confidence": 0.4},
        {"category": "made_up", "confidence": 0.99},
        {"category": "access_vpn", "confidence": 0.8},
        {"category": "network", "confidence": 0.1},
        {"category": "software", "confidence": 0.3},
    ]}})
    result = await nlp.classify("VPN", "не пускает")
    assert [p.category for p in result.predictions] == ["access_vpn", "email", "software"]
    assert result.method == "llm"


async def test_classify_without_known_categories_is_other():
    nlp = _nlp({prompts.CLASSIFIER.system: {"predictions": [{"category": "made_up", "confidence": 0.9}]}})
    top = (await nlp.classify("?", "?")).top
    assert (top.category, top.confidence) == ("other", 0.5)


async def test_classify_falls_back_to_keywords():
    result = await _nlp().classify("Почта", "Outlook не отправляет письмо")
    assert result.method == "keywords"
    # почта, outlook, письмо
    assert (result.top.category, result.top.confidence) == ("email", 0.75)

    result = await _nlp().classify("Вопрос", "Подскажите график работы")
    assert (result.top.category, result.top.confidence) == ("other", 0.5)


async def test_classification_is_cached():
    cache = FakeCache()
    nlp = _nlp({prompts.CLASSIFIER.system: {"predictions": [{"category": "email", "confidence": 0.9}]}}, cache=cache)
    await nlp.classify("Почта", "не работает")
    nlp.completion.responses.clear()

    cached = await nlp.classify("Почта", "не работает")
    assert cached.top.category == "email"
    assert len(nlp.completion.calls) == 1
    assert list(cache.ttls.values()) == [3600]


async def test_escalation_keyword_short_circuits_priority():
    result = await _nlp().predict_priority("Шұғыл!", "Сервер істемейді", "incident")
    assert (result.priority, result.escalation_required) == ("critical", True)
    assert "шұғыл" in result.escalation_reason


async def test_priority_fallback_is_medium():
    result = await _nlp().predict_priority("Монитор", "мерцает", "hardware")
    assert (result.priority, result.confidence, result.escalation_required) == ("medium", 0.5, False)


async def test_search_failure_means_no_results():
    assert await _nlp(search_error=ConnectionError("db down")).search_knowledge("vpn") == []


async def test_slow_completion_is_bounded_by_timeout():
    class Slow:
        async def complete(self, *args, **kwargs):
            await asyncio.sleep(5)

    nlp = NlpService(Slow(), StaticSearch(), timeout=0.01, escalation_keywords=[])
    result = await nlp.predict_priority("a", "b", "other")
    assert result.priority == "medium"


async def test_triage_rules_before_completion():
    nlp = _nlp()
    no_kb = await nlp.triage("s", "b", "access_vpn", [])
    assert (no_kb.auto_resolvable, no_kb.confidence) == (False, 0.8)

    manual = await nlp.triage("s", "b", "hardware", KB)
    assert (manual.auto_resolvable, manual.confidence) == (False, 0.9)

    failed = await nlp.triage("s", "b", "access_vpn", KB)
    assert (failed.auto_resolvable, failed.confidence) == (False, 0.5)
    assert nlp.completion.calls == [prompts.TRIAGE.system]


async def test_generate_response_filters_unknown_refs():
    nlp = _nlp({prompts.response_prompt("kz").system: {"answer": "Порталға кіріңіз", "kb_refs": ["kb1", "kb9"]}})
    draft = await nlp.generate_response("VPN", "кіре алмаймын", KB, "kz")
    assert draft.answer == "Порталға кіріңіз"
    assert draft.kb_refs == ["kb1"]
    assert draft.summary is None


async def test_generate_response_uses_clarification_question():
    nlp = _nlp({prompts.response_prompt("ru").system: {"answer": "", "needs_clarification": True, "clarification_question": "Какая ОС?"}})
    draft = await nlp.generate_response("VPN", "?", KB, "ru")
    assert draft.answer == "Какая ОС?"
    assert draft.needs_clarification is True


async def test_generate_response_failures_yield_none():
    assert await _nlp().generate_response("VPN", "?", KB, "ru") is None
    assert await _nlp().generate_response("VPN", "?", [], "ru") is None

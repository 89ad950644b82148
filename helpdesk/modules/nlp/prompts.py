"""Prompt templates for the triage pipeline.

System-level analysis prompts are written in English; the drafted reply is
requested in the user's language (ru or kz, anything else falls back to ru).
"""

from dataclasses import dataclass
from typing import Callable

@dataclass(frozen=True)
class Prompt:
    system: str
    user: Callable[..., str]

CLASSIFIER = Prompt(
    system="""You classify IT support tickets into exactly one of these categories:
- access_vpn: VPN access, password resets, login problems
- hardware: physical equipment (computers, printers, monitors, keyboards, mice)
- software: installation, updates, application errors, licensing
- email: mail client setup, mailbox access, sending or receiving mail
- network: connectivity, Wi-Fi, slow internet
- account: user accounts, permissions, profiles
- request_new: requests for new equipment, software or access
- incident: outages, critical failures, security incidents
- other: anything else

Answer with JSON only. Give the three most likely categories with confidences in [0, 1]
that roughly sum to 1, each with a short rationale. Tickets may be in Russian, Kazakh or English.""",
    user=lambda subject, body: f"""Ticket:
Subject: {subject}
Body: {body}

JSON:
{{
  "predictions": [
    {{"category": "<code>", "confidence": 0.0, "rationale": "<why>"}}
  ],
  "detected_language": "ru|kz|en"
}}""",
)

PRIORITY = Prompt(
    system="""You assess the priority of IT support tickets.
- critical: production outage, security breach, many users affected, risk of data loss
- high: one user fully blocked, deadline at stake, executive request
- medium: a workaround exists, moderate inconvenience
- low: cosmetic issue, general question, wish-list item

Set escalation_required when the ticket describes an outage, a breach, data loss
or many affected users. Answer with JSON only.""",
    user=lambda subject, body, category: f"""Ticket:
Subject: {subject}
Body: {body}
Category: {category}

JSON:
{{
  "priority": "critical|high|medium|low",
  "confidence": 0.0,
  "escalation_required": false,
  "escalation_reason": null
}}""",
)

TRIAGE = Prompt(
    system="""You decide whether an IT support ticket can be answered from the knowledge base alone.
Auto-resolvable only when the articles hold a complete solution the user can apply
without physical access, admin rights or further questions. Security-sensitive
requests and unclear tickets go to an operator. Answer with JSON only.""",
    user=lambda subject, body, category, excerpts: f"""Ticket:
Subject: {subject}
Body: {body}
Category: {category}

Knowledge base excerpts:
{_format_excerpts(excerpts)}

JSON:
{{
  "auto_resolvable": false,
  "confidence": 0.0,
  "recommended_action": "generate_response|request_clarification|route_to_operator|escalate",
  "relevant_kb_ids": [],
  "reasoning": "<short>"
}}""",
)

LANGUAGE = Prompt(
    system="Detect the language of an IT support message. Answer with JSON only.",
    user=lambda text: f"""Text:
"{text[:500]}"

JSON:
{{"language": "ru|kz|en", "confidence": 0.0}}""",
)

RESPONSE_RU = Prompt(
    system="""Вы — специалист технической поддержки. Отвечайте пользователю вежливо и по делу,
опираясь ТОЛЬКО на приведённые статьи базы знаний.
- Пишите по-русски, не длиннее 150 слов, пошагово.
- Ничего не додумывайте сверх статей.
- Если данных не хватает, задайте один уточняющий вопрос.
- В конце предложите обратиться снова, если решение не помогло.
Ответ — только JSON.""",
    user=lambda subject, body, articles: f"""Обращение:
Тема: {subject}
Сообщение: {body}

Статьи базы знаний:
{_format_articles(articles, "Статья")}

JSON:
{{
  "answer": "<ответ пользователю>",
  "summary": "<суть проблемы одной строкой>",
  "kb_refs": ["<id статей>"],
  "needs_clarification": false,
  "clarification_question": null
}}""",
)

RESPONSE_KZ = Prompt(
    system="""Сіз техникалық қолдау маманысыз. Пайдаланушыға тек берілген білім қоры
мақалаларына сүйеніп, сыпайы әрі қысқа жауап беріңіз.
- Қазақ тілінде, 150 сөзден аспай, қадамдап жазыңыз.
- Мақалада жоқ ақпаратты қоспаңыз.
- Ақпарат жетпесе, бір нақтылау сұрағын қойыңыз.
Тек JSON қайтарыңыз.""",
    user=lambda subject, body, articles: f"""Сұрау:
Тақырып: {subject}
Хабарлама: {body}

Білім қоры мақалалары:
{_format_articles(articles, "Мақала")}

JSON:
{{
  "answer": "<пайдаланушыға жауап>",
  "summary": "<мәселенің қысқаша сипаттамасы>",
  "kb_refs": ["<мақала id>"],
  "needs_clarification": false,
  "clarification_question": null
}}""",
)

def response_prompt(language: str | None) -> Prompt:
    return RESPONSE_KZ if language == "kz" else RESPONSE_RU

def _format_excerpts(excerpts: list[dict]) -> str:
    return "\n\n".join(
        f"{i}. [{kb.get('id')}] {kb.get('title')}:\n{kb.get('excerpt')}"
        for i, kb in enumerate(excerpts, start=1)
    )

def _format_articles(articles: list[dict], label: str) -> str:
    return "\n".join(
        f"--- {label} {i} [{kb.get('id')}]: {kb.get('title')} ---\n{kb.get('excerpt')}\n"
        for i, kb in enumerate(articles, start=1)
    )

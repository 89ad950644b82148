"""Knowledge base chunking and excerpt ranking."""
from types import SimpleNamespace
import uuid

from helpdesk.modules.knowledge.service import EXCERPT_CHARS, KnowledgeService, chunk_text


def test_short_text_is_one_chunk():
    assert chunk_text("VPN", 100, 10) == ["VPN"]
    assert chunk_text("", 100, 10) == [""]


def test_chunks_overlap_and_cover_the_text():
    text = "abcdefghij" * 3
    chunks = chunk_text(text, 12, 2)
    assert chunks[0] == text[:12]
    assert chunks[1].startswith(text[10:12])
    assert chunks[-1].endswith(text[-1])
    assert all(len(c) <= 12 for c in chunks)


class FakeRepo:
    def __init__(self, hits):
        self.hits = hits
        self.calls = []

    async def search_hybrid(self, vector, query, *, top_k, language=None, category=None):
        self.calls.append({"top_k": top_k, "language": language, "category": category})
        return self.hits


def _service(hits):
    service = KnowledgeService(session=None)
    service.repo = FakeRepo(hits)
    return service


async def test_best_chunk_per_article_above_threshold():
    vpn, printer, weak = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    hits = [
        (SimpleNamespace(article_id=vpn, text="Сброс пароля VPN, шаг 1"), "VPN", 0.62),
        (SimpleNamespace(article_id=vpn, text="Сброс пароля VPN, шаг 2" + "x" * 600), "VPN", 0.81),
        (SimpleNamespace(article_id=printer, text="Переподключите принтер"), "Принтер", 0.44),
        (SimpleNamespace(article_id=weak, text="Wi-Fi"), "Wi-Fi", 0.05),
    ]
    service = _service(hits)
    results = await service.search_excerpts("не работает vpn", language="ru", category="access_vpn", limit=5)

    assert [r["id"] for r in results] == [str(vpn), str(printer)]
    assert results[0]["score"] == 0.81
    assert len(results[0]["excerpt"]) == EXCERPT_CHARS
    assert service.repo.calls == [{"top_k": 20, "language": "ru", "category": "access_vpn"}]


async def test_limit_applies_after_grouping():
    hits = [(SimpleNamespace(article_id=uuid.uuid4(), text=f"статья {n}"), f"Статья {n}", 0.9 - n / 100) for n in range(5)]
    results = await _service(hits).search_excerpts("статья", limit=2)
    assert [r["title"] for r in results] == ["Статья 0", "Статья 1"]

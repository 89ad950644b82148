import argparse
import asyncio
import json
import os

from helpdesk.core.db import SessionLocal, engine, init_models
from helpdesk.modules.knowledge.repository import KnowledgeRepository
from helpdesk.modules.knowledge.schemas import ArticleIngest
from helpdesk.modules.knowledge.service import KnowledgeService
from helpdesk.modules.knowledge.setup import ensure_vector_indexes

DEFAULT_FILE = os.path.join(os.path.dirname(__file__), "kb_articles.json")

async def main(path: str, reindex: bool):
    """
    Load knowledge base articles from a JSON file and index them for search.
    Articles already present (same title and language) are skipped unless --reindex is given.
    """
    print(f"Starting knowledge base ingestion from {path}...")

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    await init_models()
    await ensure_vector_indexes()

    created, skipped = 0, 0
    async with SessionLocal() as db:
        repo = KnowledgeRepository(db)
        service = KnowledgeService(db)
        for item in data:
            payload = ArticleIngest.model_validate(item)
            existing = await repo.find_by_title(payload.title, payload.language)
            if existing and not reindex:
                print(f"  - '{payload.title}' already indexed. Skipping.")
                skipped += 1
                continue
            if existing:
                payload.id = existing.id
            result = await service.ingest_article(payload)
            print(f"  - Indexed '{payload.title}' ({result['indexed']} chunks)")
            created += 1

    await engine.dispose()
    print(f"Ingestion complete: {created} indexed, {skipped} skipped.")

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Index knowledge base articles from a JSON file.")
    parser.add_argument("path", nargs="?", default=DEFAULT_FILE)
    parser.add_argument("--reindex", action="store_true", help="re-embed articles that already exist")
    args = parser.parse_args()
    asyncio.run(main(args.path, args.reindex))

from helpdesk.core.db import engine

async def ensure_vector_indexes():
    # FTS + IVFFLAT indexes for KnowledgeChunk (Postgres only).
    # IVFFLAT needs ANALYZE after substantial inserts to be effective.
    if engine.dialect.name != "postgresql":
        return
    async with engine.begin() as conn:
        await conn.exec_driver_sql(
            "CREATE INDEX IF NOT EXISTS knowledgechunk_fts_idx ON knowledgechunk USING gin (to_tsvector('simple', text))"
        )
        await conn.exec_driver_sql(
            "CREATE INDEX IF NOT EXISTS knowledgechunk_embedding_idx ON knowledgechunk USING ivfflat (embedding vector_l2_ops) WITH (lists=100)"
        )

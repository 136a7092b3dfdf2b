import asyncio

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from filehub.app.db import models  # noqa: F401 - import to register models
from filehub.app.db.base import Base
from filehub.app.db.crud import count_logs_by_level, save_logs_bulk
from filehub.app.db.models import Log
from filehub.app.services.log_batcher import format_log_entry


def test_db_models_create_tables():
    tables = Base.metadata.tables
    assert "logs" in tables
    assert "metadata" in tables["logs"].columns
    assert Log.metadata_.property.columns[0].name == "metadata"


def test_bulk_insert_and_count(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'logs.db'}")

    async def run() -> tuple[int, dict[str, int]]:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        rows = [
            format_log_entry("info", "one", {"metadata": {"k": 1}}).to_row(),
            format_log_entry("error", "two", {"request_id": "r"}).to_row(),
            format_log_entry("error", "three").to_row(),
        ]
        async with session_maker() as session:
            written = await save_logs_bulk(session, rows)
            counts = await count_logs_by_level(session)
        await engine.dispose()
        return written, counts

    written, counts = asyncio.run(run())

    assert written == 3
    assert counts == {"info": 1, "error": 2}

from __future__ import annotations

import pytest
import pytest_asyncio

import animl_watchlist as aw
from tests.helpers import RecordingSink, build_config


@pytest.fixture()
def config(tmp_path) -> aw.Config:
    return build_config(tmp_path)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture()
async def store(config):
    store = aw.SQLiteStore(config.sqlite_path, config.user_table, config.watched_table)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()

from __future__ import annotations

import asyncio

import pytest

import animl_watchlist as aw
from tests.helpers import RecordingSink, ScriptedFetcher, build_config


@pytest.mark.asyncio()
async def test_new_user_end_to_end(tmp_path) -> None:
    config = build_config(tmp_path)
    sink = RecordingSink()
    fetcher = ScriptedFetcher(
        [
            [
                aw.WatchEntry(item_id="a1", status=aw.WatchStatus.COMPLETED, score=8),
                aw.WatchEntry(item_id="a2", status=aw.WatchStatus.COMPLETED, score=5),
            ],
            [],
        ]
    )

    stats = await aw.run_watchlist(["u1"], config, fetch_page=fetcher, sink=sink)

    # Two entries is not a multiple of the page size, so no second fetch.
    assert fetcher.offsets == [0]
    assert stats.counts[aw.CRAWLABLE_USER_COUNT] == 1
    assert stats.counts[aw.PUT_WATCHED_COUNT] == 2
    assert sink.total(aw.CRAWLABLE_USER_COUNT) == 1
    assert sink.total(aw.PUT_WATCHED_COUNT) == 2

    store = aw.SQLiteStore(config.sqlite_path)
    await store.initialize()
    try:
        watched = await store.list_watched("u1")
    finally:
        await store.close()
    assert [(w.item_id, w.score) for w in watched] == [("a1", 8), ("a2", 5)]


@pytest.mark.asyncio()
async def test_end_to_end_with_two_entry_page_size(tmp_path) -> None:
    config = build_config(tmp_path, page_size=2)
    fetcher = ScriptedFetcher(
        [
            [
                aw.WatchEntry(item_id="a1", status=aw.WatchStatus.COMPLETED, score=8),
                aw.WatchEntry(item_id="a2", status=aw.WatchStatus.COMPLETED, score=5),
            ],
            [],
        ]
    )

    stats = await aw.run_watchlist(["u1"], config, fetch_page=fetcher, sink=RecordingSink())

    assert fetcher.offsets == [0, 2]
    assert stats.counts[aw.PUT_WATCHED_COUNT] == 2


@pytest.mark.asyncio()
async def test_duplicate_delivery_crawls_once(tmp_path) -> None:
    config = build_config(tmp_path)
    fetcher = ScriptedFetcher([[aw.WatchEntry(item_id="a1", status=aw.WatchStatus.COMPLETED)]])

    stats = await aw.run_watchlist(["u1", "u1", "u1"], config, fetch_page=fetcher, sink=RecordingSink())

    assert stats.counts[aw.CRAWLABLE_USER_COUNT] == 1
    assert stats.counts[aw.DUPLICATE_USER_COUNT] == 2
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio()
async def test_one_users_failure_does_not_affect_others(tmp_path) -> None:
    config = build_config(tmp_path)

    async def fetch_page(user_id: str, offset: int, category: str) -> aw.Page:
        if user_id == "broken":
            raise aw.FetchError("HTTP 503: Service Unavailable")
        await asyncio.sleep(0)
        return [aw.WatchEntry(item_id=f"{user_id}-show", status=aw.WatchStatus.COMPLETED)]

    stats = await aw.run_watchlist(
        ["u1", "broken", "", "u2"], config, fetch_page=fetch_page, sink=RecordingSink()
    )

    assert stats.counts[aw.CRAWLABLE_USER_COUNT] == 3
    assert stats.counts[aw.WATCH_LIST_FAILURE_COUNT] == 1
    assert stats.counts[aw.PUT_WATCHED_COUNT] == 2


@pytest.mark.asyncio()
async def test_empty_batch_does_nothing(tmp_path) -> None:
    config = build_config(tmp_path)
    stats = await aw.run_watchlist([], config, fetch_page=ScriptedFetcher([]))
    assert not stats.counts
    assert not (tmp_path / "animl.db").exists()


def test_user_ids_from_event_skips_blank_bodies() -> None:
    event = {
        "Records": [
            {"messageId": "1", "body": "Xinil"},
            {"messageId": "2", "body": "  "},
            {"messageId": "3", "body": " Kineta\n"},
            {"messageId": "4"},
        ]
    }
    assert aw.user_ids_from_event(event) == ["Xinil", "Kineta"]
    assert aw.user_ids_from_event({}) == []


def test_handler_with_no_records_returns_ok(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("ANIML_SQLITE_PATH", str(tmp_path / "animl.db"))
    assert aw.handler({"Records": []}) == {"statusCode": 200, "users": 0, "counts": {}}


def test_handler_rejects_bad_configuration(monkeypatch) -> None:
    monkeypatch.setenv("PAGE_SIZE", "0")
    with pytest.raises(ValueError):
        aw.handler({"Records": [{"body": "u1"}]})


@pytest.mark.asyncio()
async def test_long_crawl_does_not_hold_up_gating(tmp_path) -> None:
    config = build_config(tmp_path, n_concurrent=1)
    sink = RecordingSink()
    slow_started = asyncio.Event()
    release = asyncio.Event()

    async def fetch_page(user_id: str, offset: int, category: str) -> aw.Page:
        if user_id == "slow":
            slow_started.set()
            await release.wait()
        return []

    async def both_users_gated() -> None:
        while sink.total(aw.CRAWLABLE_USER_COUNT) < 2:
            await asyncio.sleep(0.01)

    run = asyncio.create_task(
        aw.run_watchlist(["slow", "u2"], config, fetch_page=fetch_page, sink=sink)
    )
    try:
        await asyncio.wait_for(slow_started.wait(), timeout=5)
        await asyncio.wait_for(both_users_gated(), timeout=5)
        assert not release.is_set()
    finally:
        release.set()
    stats = await asyncio.wait_for(run, timeout=5)

    assert stats.counts[aw.CRAWLABLE_USER_COUNT] == 2

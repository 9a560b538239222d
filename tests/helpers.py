from __future__ import annotations

from typing import Any

import animl_watchlist as aw


def build_config(tmp_path: Any, **overrides: Any) -> aw.Config:
    """Return a fully-populated Config instance for tests."""

    cfg = aw.Config(
        sqlite_path=str(tmp_path / "animl.db"),
        user_table="malUser",
        watched_table="malWatched",
        region="eu-west-1",
        namespace="AniMLTest",
        stale_window_ms=1_000_000,
        page_size=100,
        n_concurrent=2,
        fetch_timeout_ms=1_000,
        headers={"User-Agent": "test-suite"},
        metrics_backend="log",
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def entries(count: int, status: int = aw.WatchStatus.COMPLETED, start: int = 0) -> aw.Page:
    return [aw.WatchEntry(item_id=f"i{start + n}", status=status, score=7) for n in range(count)]


class RecordingSink:
    """Metrics sink that keeps every emit call."""

    def __init__(self) -> None:
        self.calls: list[list[aw.MetricEvent]] = []

    async def emit(self, events: list[aw.MetricEvent]) -> None:
        self.calls.append(list(events))

    def total(self, name: str) -> int:
        return sum(e.value for call in self.calls for e in call if e.name == name)


class BrokenSink:
    async def emit(self, events: list[aw.MetricEvent]) -> None:
        raise RuntimeError("metrics backend down")


class ScriptedFetcher:
    """Fetch boundary returning scripted pages (or raising scripted errors) in order."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, int, str]] = []

    async def __call__(self, user_id: str, offset: int, category: str) -> aw.Page:
        self.calls.append((user_id, offset, category))
        if not self.responses:
            return []
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def offsets(self) -> list[int]:
        return [offset for _, offset, _ in self.calls]


class FlakyStore:
    """Wraps a store and fails selected put_watched attempts (1-based)."""

    def __init__(self, store: aw.SQLiteStore, fail_on: set[int]) -> None:
        self._store = store
        self.fail_on = fail_on
        self.attempts: list[str] = []

    async def put_watched(self, user_id: str, entry: aw.WatchEntry, now_ms: int) -> None:
        self.attempts.append(entry.item_id)
        if len(self.attempts) in self.fail_on:
            raise aw.StoreError("disk I/O error")
        await self._store.put_watched(user_id, entry, now_ms)

    async def mark_crawled(self, user_id: str, now_ms: int, threshold_ms: int) -> None:
        raise aw.StoreError("database is locked")

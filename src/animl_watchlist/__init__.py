"""Incremental MyAnimeList watchlist crawler with idempotent SQLite storage."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol
from urllib.parse import quote

import aiosqlite
import boto3
from botocore.config import Config as BotoConfig
from lxml import html
from playwright.async_api import APIRequestContext, async_playwright
from playwright.async_api import Error as PlaywrightError

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = "animl.db"
DEFAULT_USER_TABLE = "malUser"
DEFAULT_WATCHED_TABLE = "malWatched"
DEFAULT_NAMESPACE = "AniML"
DEFAULT_REGION = "us-east-1"
DEFAULT_BASE_URL = "https://myanimelist.net"
DEFAULT_HEADERS = {"User-Agent": "animl-watchlist/0.1", "Accept": "application/json"}
DEFAULT_STALE_WINDOW_MS = 1000 * 60 * 60 * 24 * 30 * 3  # 3 months
# The list endpoint is documented at 300 entries per page but has been observed
# serving 100; any multiple of this value keeps pagination going.
DEFAULT_PAGE_SIZE = 100
DEFAULT_FETCH_TIMEOUT_MS = 60_000
WATCH_CATEGORY = "anime"
ALL_STATUSES = 7
METRICS_BACKENDS = {"log", "cloudwatch"}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# --- Metric names ---

CRAWLABLE_USER_COUNT = "CrawlableUserCount"
DUPLICATE_USER_COUNT = "DuplicateUserCount"
UNCRAWLABLE_USER_COUNT = "UncrawlableUserCount"
WATCH_LIST_FAILURE_COUNT = "WatchListFailureCount"
PUT_WATCHED_COUNT = "PutWatchedAnimeCount"
PUT_WATCHED_DUPLICATE_COUNT = "PutWatchedAnimeDuplicateCount"
PUT_WATCHED_FAILURE_COUNT = "PutWatchedAnimeFailureCount"


class WatchStatus(IntEnum):
    """Status codes used by the upstream list endpoint."""

    WATCHING = 1
    COMPLETED = 2
    ON_HOLD = 3
    DROPPED = 4
    PLAN_TO_WATCH = 6


@dataclass
class WatchEntry:
    item_id: str
    status: int
    score: int | None = None


Page = list[WatchEntry]

# Fetches one page of a user's list: (user_id, offset, category) -> entries.
FetchPage = Callable[[str, int, str], Awaitable[Page]]


@dataclass
class UserRecord:
    user_id: str
    last_updated: int | None


@dataclass
class WatchedAssociation:
    user_id: str
    item_id: str
    score: int | None
    watched_time: int


@dataclass
class MetricEvent:
    name: str
    value: int
    unit: str = "Count"
    dimensions: dict[str, str] = field(default_factory=dict)


@dataclass
class WriteSummary:
    new: int = 0
    duplicate: int = 0
    failed: int = 0

    def as_counts(self) -> dict[str, int]:
        return {
            PUT_WATCHED_COUNT: self.new,
            PUT_WATCHED_DUPLICATE_COUNT: self.duplicate,
            PUT_WATCHED_FAILURE_COUNT: self.failed,
        }


@dataclass
class InvocationStats:
    """Counters accumulated over a single invocation."""

    counts: Counter = field(default_factory=Counter)

    def add(self, counts: Mapping[str, int]) -> None:
        self.counts.update(counts)


# --- Errors ---


class StoreError(Exception):
    """The backing store rejected or failed a request."""


class ConditionFailedError(StoreError):
    """A conditional write was rejected because its condition did not hold."""


class FetchError(Exception):
    """The upstream list could not be fetched."""


class MalformedPageError(FetchError):
    """The upstream answered, but not with a list of entries."""


# --- Configuration ---


@dataclass
class Config:
    sqlite_path: str = DEFAULT_SQLITE_PATH
    user_table: str = DEFAULT_USER_TABLE
    watched_table: str = DEFAULT_WATCHED_TABLE
    region: str = DEFAULT_REGION
    namespace: str = DEFAULT_NAMESPACE
    stale_window_ms: int = DEFAULT_STALE_WINDOW_MS
    page_size: int = DEFAULT_PAGE_SIZE
    category: str = WATCH_CATEGORY
    n_concurrent: int = 4
    fetch_timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS
    base_url: str = DEFAULT_BASE_URL
    headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_HEADERS))
    metrics_backend: str = "log"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a config from the deployment environment.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Raises:
            ValueError: If a numeric variable does not parse or the result is invalid.
        """
        env = os.environ if environ is None else environ
        config = cls(
            sqlite_path=env.get("ANIML_SQLITE_PATH", DEFAULT_SQLITE_PATH),
            user_table=env.get("MAL_USER_TABLE_NAME", DEFAULT_USER_TABLE),
            watched_table=env.get("MAL_WATCHED_TABLE_NAME", DEFAULT_WATCHED_TABLE),
            region=env.get("REGION") or env.get("AWS_REGION") or DEFAULT_REGION,
            namespace=env.get("NAMESPACE", DEFAULT_NAMESPACE),
            stale_window_ms=int(env.get("STALE_WINDOW_MS", DEFAULT_STALE_WINDOW_MS)),
            page_size=int(env.get("PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            n_concurrent=int(env.get("N_CONCURRENT", 4)),
            fetch_timeout_ms=int(env.get("FETCH_TIMEOUT_MS", DEFAULT_FETCH_TIMEOUT_MS)),
            metrics_backend=env.get("METRICS_BACKEND", "log"),
        )
        _validate_config(config)
        return config


def _validate_config(config: Config) -> None:
    if config.stale_window_ms <= 0:
        raise ValueError("stale_window_ms must be > 0")
    if config.page_size <= 0:
        raise ValueError("page_size must be > 0")
    if config.n_concurrent <= 0:
        raise ValueError("n_concurrent must be > 0")
    if config.fetch_timeout_ms <= 0:
        raise ValueError("fetch_timeout_ms must be > 0")
    for name in (config.user_table, config.watched_table):
        if not _IDENTIFIER_RE.match(name):
            raise ValueError(f"invalid table name: {name!r}")
    if config.user_table == config.watched_table:
        raise ValueError("user_table and watched_table must differ")
    if config.metrics_backend not in METRICS_BACKENDS:
        raise ValueError(f"metrics_backend must be one of {sorted(METRICS_BACKENDS)}")


def _now_ms() -> int:
    return int(time.time() * 1000)


# --- Metrics ---


class MetricsSink(Protocol):
    async def emit(self, events: list[MetricEvent]) -> None: ...


class LoggingMetricsSink:
    """Writes counters to the log. Used when no metrics backend is configured."""

    async def emit(self, events: list[MetricEvent]) -> None:
        for event in events:
            logger.info("metric %s=%d %s", event.name, event.value, event.dimensions)


class CloudWatchMetricsSink:
    """Pushes counters to CloudWatch with ``put_metric_data``."""

    def __init__(self, namespace: str, region: str, client: Any = None) -> None:
        self.namespace = namespace
        if client is None:
            cfg = BotoConfig(retries={"max_attempts": 3, "mode": "standard"})
            client = boto3.client("cloudwatch", region_name=region, config=cfg)
        self._client = client

    async def emit(self, events: list[MetricEvent]) -> None:
        if not events:
            return
        metric_data = [
            {
                "MetricName": event.name,
                "Value": event.value,
                "Unit": event.unit,
                "Dimensions": [{"Name": k, "Value": v} for k, v in event.dimensions.items()],
            }
            for event in events
        ]
        # put_metric_data blocks.
        await asyncio.to_thread(
            self._client.put_metric_data, Namespace=self.namespace, MetricData=metric_data
        )


def _build_sink(config: Config) -> MetricsSink:
    if config.metrics_backend == "cloudwatch":
        return CloudWatchMetricsSink(config.namespace, config.region)
    return LoggingMetricsSink()


async def _emit(sink: MetricsSink, counts: Mapping[str, int], config: Config) -> None:
    events = [
        MetricEvent(name=name, value=value, dimensions={"Region": config.region})
        for name, value in counts.items()
    ]
    try:
        await sink.emit(events)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to emit metrics %s: %s", sorted(counts), exc)


# --- Storage ---


class Store(Protocol):
    async def mark_crawled(self, user_id: str, now_ms: int, threshold_ms: int) -> None: ...

    async def put_watched(self, user_id: str, entry: WatchEntry, now_ms: int) -> None: ...


class SQLiteStore:
    """User records and watched associations, written only with conditional statements."""

    def __init__(
        self,
        sqlite_path: str,
        user_table: str = DEFAULT_USER_TABLE,
        watched_table: str = DEFAULT_WATCHED_TABLE,
    ) -> None:
        for name in (user_table, watched_table):
            if not _IDENTIFIER_RE.match(name):
                raise ValueError(f"invalid table name: {name!r}")
        self.sqlite_path = sqlite_path
        self.user_table = user_table
        self.watched_table = watched_table
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self.sqlite_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.user_table} (
              user_id       TEXT PRIMARY KEY,
              last_updated  INTEGER NULL
            );
            """
        )
        await self._db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.watched_table} (
              user_id       TEXT NOT NULL,
              item_id       TEXT NOT NULL,
              score         INTEGER NULL,
              watched_time  INTEGER NOT NULL,
              PRIMARY KEY (user_id, item_id)
            );
            """
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("store is not initialized")
        return self._db

    async def mark_crawled(self, user_id: str, now_ms: int, threshold_ms: int) -> None:
        """Set ``last_updated`` if the user is unknown or older than ``threshold_ms``.

        Raises:
            ConditionFailedError: The user exists and is newer than the threshold.
            StoreError: The statement failed.
        """
        try:
            cursor = await self.db.execute(
                f"""
                INSERT INTO {self.user_table}(user_id, last_updated)
                VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_updated = excluded.last_updated
                WHERE {self.user_table}.last_updated IS NULL
                   OR {self.user_table}.last_updated < ?
                """,
                (user_id, now_ms, threshold_ms),
            )
            await self.db.commit()
        except (aiosqlite.Error, ValueError) as exc:
            await self._rollback()
            raise StoreError(f"user update failed: {exc}") from exc
        if cursor.rowcount == 0:
            raise ConditionFailedError(f"user {user_id!r} is still fresh")

    async def put_watched(self, user_id: str, entry: WatchEntry, now_ms: int) -> None:
        """Insert a watched association unless one exists for ``(user_id, item_id)``.

        Raises:
            ConditionFailedError: The association already exists.
            StoreError: The entry is malformed or the statement failed.
        """
        if not entry.item_id:
            raise StoreError("entry has no item id")
        try:
            cursor = await self.db.execute(
                f"""
                INSERT INTO {self.watched_table}(user_id, item_id, score, watched_time)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, item_id) DO NOTHING
                """,
                (user_id, entry.item_id, entry.score, now_ms),
            )
            await self.db.commit()
        except (aiosqlite.Error, ValueError) as exc:
            await self._rollback()
            raise StoreError(f"watched insert failed: {exc}") from exc
        if cursor.rowcount == 0:
            raise ConditionFailedError(f"{user_id!r} already has {entry.item_id!r}")

    async def _rollback(self) -> None:
        # The connection is shared; an uncommitted row must not ride along with
        # another task's commit.
        try:
            await self.db.rollback()
        except (aiosqlite.Error, ValueError) as exc:
            logger.warning("Rollback failed on %s: %s", self.sqlite_path, exc)

    async def get_user(self, user_id: str) -> UserRecord | None:
        cursor = await self.db.execute(
            f"SELECT user_id, last_updated FROM {self.user_table} WHERE user_id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return UserRecord(user_id=row["user_id"], last_updated=row["last_updated"])

    async def list_watched(self, user_id: str) -> list[WatchedAssociation]:
        cursor = await self.db.execute(
            f"""
            SELECT user_id, item_id, score, watched_time
            FROM {self.watched_table}
            WHERE user_id = ?
            ORDER BY item_id
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [
            WatchedAssociation(
                user_id=row["user_id"],
                item_id=row["item_id"],
                score=row["score"],
                watched_time=row["watched_time"],
            )
            for row in rows
        ]


# --- Upstream ---


class MalWatchlistFetcher:
    """Reads list pages from the ``load.json`` endpoint through a Playwright request context."""

    def __init__(
        self,
        request: APIRequestContext,
        base_url: str = DEFAULT_BASE_URL,
        timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS,
    ) -> None:
        self._request = request
        self._base_url = base_url.rstrip("/")
        self._timeout_ms = timeout_ms

    async def __call__(self, user_id: str, offset: int, category: str) -> Page:
        url = f"{self._base_url}/{category}list/{quote(user_id, safe='')}/load.json"
        try:
            response = await self._request.get(
                url,
                params={"offset": offset, "status": ALL_STATUSES},
                timeout=self._timeout_ms,
            )
            body = await response.body()
        except PlaywrightError as exc:
            raise FetchError(f"request to {url} failed: {exc}") from exc

        if response.status == 429:
            raise FetchError("rate limited (HTTP 429)")
        if not response.ok:
            message = _extract_error_message(body) or response.status_text
            raise FetchError(f"HTTP {response.status}: {message}")

        try:
            payload = json.loads(body)
        except ValueError as exc:
            message = _extract_error_message(body) or str(exc)
            raise MalformedPageError(f"response is not JSON: {message}") from exc
        return _parse_page(payload, category)


def _extract_error_message(content: bytes | str) -> str:
    """Pull a readable message out of an HTML error page."""
    if not content:
        return ""
    try:
        document = html.fromstring(content)
    except Exception:  # noqa: BLE001
        return ""

    for expr in (
        "//*[contains(@class, 'error404')]",
        "//*[contains(@class, 'badresult')]",
        "//title",
    ):
        for node in document.xpath(expr):
            text = " ".join(node.text_content().split())
            if text:
                return text
    return ""


def _parse_page(payload: Any, category: str = WATCH_CATEGORY) -> Page:
    if not isinstance(payload, list):
        raise MalformedPageError(f"expected a list of entries, got {type(payload).__name__}")
    entries: Page = []
    for raw in payload:
        if not isinstance(raw, dict):
            raise MalformedPageError(f"expected an entry object, got {type(raw).__name__}")
        entries.append(_parse_entry(raw, category))
    return entries


def _parse_entry(raw: dict[str, Any], category: str) -> WatchEntry:
    # A missing id stays empty so the writer counts it as a failure.
    item_id = raw.get(f"{category}_id")
    return WatchEntry(
        item_id="" if item_id is None else str(item_id),
        status=_as_int(raw.get("status"), 0),
        score=_as_int(raw.get("score"), 0) or None,
    )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# --- Pipeline ---


async def check_and_mark_crawlable(
    user_id: str,
    *,
    store: Store,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats | None = None,
    now_ms: int | None = None,
) -> bool:
    """Claim a user for crawling if it is new or stale.

    The claim is a single conditional write, so concurrent invocations for the
    same user cannot both succeed. Any error resolves to ``False``.

    Args:
        user_id: Upstream user name.
        store: Backing store holding user records.
        sink: Metrics sink for the outcome counter.
        config: Runtime configuration (staleness window, region).
        stats: Per-invocation accumulator.
        now_ms: Current time in milliseconds. Defaults to the wall clock.

    Returns:
        True if the user was marked and should be crawled now.
    """
    if not user_id:
        raise ValueError("user_id must be a non-empty string")
    if now_ms is None:
        now_ms = _now_ms()

    try:
        await store.mark_crawled(user_id, now_ms, now_ms - config.stale_window_ms)
    except ConditionFailedError:
        logger.debug("User %s crawled within the staleness window; skipping", user_id)
        metric, crawlable = DUPLICATE_USER_COUNT, False
    except Exception as exc:  # noqa: BLE001
        logger.error("Staleness check failed for user %s: %s", user_id, exc)
        metric, crawlable = UNCRAWLABLE_USER_COUNT, False
    else:
        metric, crawlable = CRAWLABLE_USER_COUNT, True

    counts = {metric: 1}
    if stats is not None:
        stats.add(counts)
    await _emit(sink, counts, config)
    return crawlable


async def crawl_and_store(
    user_id: str,
    *,
    store: Store,
    fetch_page: FetchPage,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats | None = None,
) -> None:
    """Walk a user's list from offset 0 and persist every page.

    A page whose length is zero or not a multiple of ``config.page_size`` is the
    last one. A fetch failure ends this user's crawl; pages already written stay.
    """
    offset = 0
    while True:
        try:
            page = await fetch_page(user_id, offset, config.category)
        except MalformedPageError as exc:
            if offset > 0:
                logger.info(
                    "Unreadable page for user %s at offset %d after a full page; "
                    "treating as end of list: %s",
                    user_id,
                    offset,
                    exc,
                )
                return
            await _record_fetch_failure(user_id, offset, exc, sink, config, stats)
            return
        except Exception as exc:  # noqa: BLE001
            await _record_fetch_failure(user_id, offset, exc, sink, config, stats)
            return

        if not page:
            logger.debug("Empty page for user %s at offset %d", user_id, offset)
            return

        await persist_completed(user_id, page, store=store, sink=sink, config=config, stats=stats)

        if len(page) % config.page_size != 0:
            return
        offset += len(page)


async def _record_fetch_failure(
    user_id: str,
    offset: int,
    exc: Exception,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats | None,
) -> None:
    logger.warning("Failed to fetch list for user %s at offset %d: %s", user_id, offset, exc)
    counts = {WATCH_LIST_FAILURE_COUNT: 1}
    if stats is not None:
        stats.add(counts)
    await _emit(sink, counts, config)


async def persist_completed(
    user_id: str,
    page: Page,
    *,
    store: Store,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats | None = None,
    now_ms: int | None = None,
) -> WriteSummary:
    """Store the completed entries of a page, one conditional insert each.

    Other statuses are skipped. Every completed entry is attempted even if an
    earlier one failed; the three outcome counters go out in one metrics call.
    """
    if now_ms is None:
        now_ms = _now_ms()
    summary = WriteSummary()

    for entry in page:
        if entry.status != WatchStatus.COMPLETED:
            continue
        try:
            await store.put_watched(user_id, entry, now_ms)
        except ConditionFailedError:
            summary.duplicate += 1
        except Exception as exc:  # noqa: BLE001
            summary.failed += 1
            logger.error(
                "Failed to store watched item %r (score=%s) for user %s: %s",
                entry.item_id,
                entry.score,
                user_id,
                exc,
            )
        else:
            summary.new += 1
            logger.info("Stored watched item %s for user %s", entry.item_id, user_id)

    counts = summary.as_counts()
    if stats is not None:
        stats.add(counts)
    await _emit(sink, counts, config)
    return summary


async def process_user(
    user_id: str,
    *,
    store: Store,
    fetch_page: FetchPage,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats | None = None,
    crawl_slots: asyncio.Semaphore | None = None,
) -> bool:
    """Gate a user and crawl it if eligible. Returns whether a crawl ran.

    Only the crawl waits for ``crawl_slots``; the gate runs immediately so a
    long crawl never delays the claim of another user.
    """
    if not await check_and_mark_crawlable(
        user_id, store=store, sink=sink, config=config, stats=stats
    ):
        return False
    if crawl_slots is None:
        await crawl_and_store(
            user_id, store=store, fetch_page=fetch_page, sink=sink, config=config, stats=stats
        )
        return True
    async with crawl_slots:
        await crawl_and_store(
            user_id, store=store, fetch_page=fetch_page, sink=sink, config=config, stats=stats
        )
    return True


# --- Entry points ---


def animl_watchlist(user_ids: Iterable[str], config: Config | None = None) -> dict[str, int]:
    """Run one batch of users and return the accumulated counters."""
    stats = asyncio.run(run_watchlist(list(user_ids), config or Config()))
    return dict(stats.counts)


async def run_watchlist(
    user_ids: list[str],
    config: Config,
    fetch_page: FetchPage | None = None,
    sink: MetricsSink | None = None,
) -> InvocationStats:
    """Process a batch of users concurrently.

    Args:
        user_ids: Users to gate and crawl. Duplicates are resolved by the gate.
        config: Runtime configuration.
        fetch_page: Upstream boundary. Defaults to a Playwright-backed fetcher.
        sink: Metrics sink. Defaults to the backend named in ``config``.
    """
    _validate_config(config)
    stats = InvocationStats()
    if not user_ids:
        return stats
    if sink is None:
        sink = _build_sink(config)

    store = SQLiteStore(config.sqlite_path, config.user_table, config.watched_table)
    await store.initialize()
    try:
        if fetch_page is not None:
            await _process_users(user_ids, store, fetch_page, sink, config, stats)
        else:
            async with async_playwright() as playwright:
                request = await playwright.request.new_context(
                    extra_http_headers=config.headers,
                    timeout=config.fetch_timeout_ms,
                )
                try:
                    fetcher = MalWatchlistFetcher(
                        request, base_url=config.base_url, timeout_ms=config.fetch_timeout_ms
                    )
                    await _process_users(user_ids, store, fetcher, sink, config, stats)
                finally:
                    await request.dispose()
    finally:
        await store.close()

    logger.info("Processed %d users: %s", len(user_ids), dict(stats.counts))
    return stats


async def _process_users(
    user_ids: list[str],
    store: Store,
    fetch_page: FetchPage,
    sink: MetricsSink,
    config: Config,
    stats: InvocationStats,
) -> None:
    crawl_slots = asyncio.Semaphore(config.n_concurrent)
    tasks = [
        asyncio.create_task(
            _process_user(
                user_id=user_id,
                crawl_slots=crawl_slots,
                store=store,
                fetch_page=fetch_page,
                sink=sink,
                config=config,
                stats=stats,
            )
        )
        for user_id in user_ids
    ]
    await asyncio.gather(*tasks)


async def _process_user(user_id: str, **kwargs) -> None:
    try:
        await process_user(user_id, **kwargs)
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error processing user %r", user_id)


def user_ids_from_event(event: Mapping[str, Any]) -> list[str]:
    """Extract one user id per queue record body, skipping blank bodies."""
    user_ids = []
    for record in event.get("Records", []):
        body = (record.get("body") or "").strip()
        if not body:
            logger.warning("Skipping work item %s with empty body", record.get("messageId"))
            continue
        user_ids.append(body)
    return user_ids


def handler(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    """Queue consumer entry point: one user id per record."""
    config = Config.from_env()
    user_ids = user_ids_from_event(event)
    stats = asyncio.run(run_watchlist(user_ids, config))
    return {"statusCode": 200, "users": len(user_ids), "counts": dict(stats.counts)}

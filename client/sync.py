"""Sync Engine: local-first timetable persistence with background reconciliation.

Edits land in the Credential Store immediately and are marked pending; a
debounced push per canonical key carries them to the server. Pushes for the
same key run strictly one after another; different keys proceed
independently. Pulls resolve conflicts by newer `last_modified` wins, and an
entry without a timestamp is an error, never a tie-breaker.
"""

import asyncio
import contextlib
import logging
import math
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import ValidationError

from client.config import ClientConfig
from client.device_auth import DeviceAuthManager
from client.errors import InvalidRequestError, NotFoundError, SyncError, TimestampError, UnauthorizedError
from client.models import CacheEntry, SyncState, TimetableDraft, utcnow
from client.retry import retry_with_backoff
from client.storage import CredentialStore

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache:"
CACHE_INDEX_KEY = "cache_index"
DEFAULT_START_TIME = "09:00"
UNTITLED = "Untitled Presentation"
TYPED_PAYLOAD_KEYS = ("title", "startTime", "totalDuration")


def _clip_time(value: Any) -> Any:
    """HH:MM from "H:MM", "HH:MM" or "HH:MM:SS"; anything else is left for the server to reject."""
    if not isinstance(value, str):
        return value
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(value.strip(), fmt).strftime("%H:%M")
        except ValueError:
            continue
    return value


class KeyedLocks:
    """One asyncio.Lock per key, dropped as soon as nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


def normalize_payload(payload: Any) -> dict[str, Any]:
    """Coerce a timetable payload into the shape the server validates.

    Item ids and titles become strings, durations become non-negative ints
    (0 when missing or non-finite), times become zero-padded HH:MM.
    Items still lacking an id or title are dropped rather than forwarded.
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError(f"Timetable payload must be an object, got {type(payload).__name__}", phase="write")

    raw_items = payload.get("items")
    if raw_items is None:
        raw_items = []
    if not isinstance(raw_items, list):
        raise InvalidRequestError("Timetable items must be a list", phase="write")

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        item_id = "" if raw.get("id") is None else str(raw["id"]).strip()
        title = "" if raw.get("title") is None else str(raw["title"]).strip()
        if not item_id or not title:
            continue

        try:
            duration = float(raw.get("duration"))
        except (TypeError, ValueError):
            duration = 0.0
        duration = int(duration) if math.isfinite(duration) and duration > 0 else 0

        item = {k: v for k, v in raw.items() if k not in ("id", "title", "duration", "startTime", "endTime")}
        item.update(id=item_id, title=title, duration=duration)
        for key in ("startTime", "endTime"):
            if raw.get(key) is not None:
                item[key] = _clip_time(raw[key])
        items.append(item)

    # Unset typed fields go as absent; unknown keys keep explicit nulls
    normalized = {
        k: v for k, v in payload.items() if k != "items" and not (k in TYPED_PAYLOAD_KEYS and v is None)
    }
    normalized["items"] = items
    if "startTime" in normalized:
        normalized["startTime"] = _clip_time(normalized["startTime"])
    total = normalized.get("totalDuration")
    if total is not None and not (isinstance(total, int) and total >= 0):
        normalized.pop("totalDuration")
    return normalized


def resolve_conflict(local_modified: Optional[datetime], remote_modified: Optional[datetime]) -> str:
    """'remote' if the remote copy is strictly newer, else 'local'.

    Missing timestamps raise TimestampError: guessing an order here would
    silently throw away somebody's edit.
    """
    if local_modified is None or remote_modified is None:
        side = "local" if local_modified is None else "remote"
        raise TimestampError(f"Cannot resolve conflict: {side} last_modified is missing", phase="read")
    return "remote" if remote_modified > local_modified else "local"


class SyncEngine:
    def __init__(
        self,
        config: ClientConfig,
        store: CredentialStore,
        auth: DeviceAuthManager,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.auth = auth
        self._sleep = sleep
        # Push locks order requests per key; state locks guard each
        # load -> modify -> write of a cache entry. A push takes its state
        # lock only while holding its push lock, never the other way round.
        self._push_locks = KeyedLocks()
        self._state_locks = KeyedLocks()
        self._index_lock = asyncio.Lock()
        self._scheduled: dict[str, asyncio.Task] = {}
        self._debouncing: set[asyncio.Task] = set()
        self._rearm: set[str] = set()

    # --- local cache ---

    async def load_local(self, canonical_key: str) -> Optional[CacheEntry]:
        raw = await self.store.get(CACHE_PREFIX + canonical_key)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate(raw)
        except ValidationError as e:
            raise TimestampError(f"Corrupt cache entry for {canonical_key}: {e}", phase="read") from e

    async def _write_local(self, entry: CacheEntry) -> None:
        await self.store.set(CACHE_PREFIX + entry.canonical_key, entry.model_dump(mode="json"))
        async with self._index_lock:
            index = await self.store.get(CACHE_INDEX_KEY) or []
            if entry.canonical_key not in index:
                index.append(entry.canonical_key)
                await self.store.set(CACHE_INDEX_KEY, index)

    async def cached_keys(self) -> list[str]:
        return list(await self.store.get(CACHE_INDEX_KEY) or [])

    async def save_local(self, draft: TimetableDraft, *, schedule_push: bool = True) -> CacheEntry:
        """Persist an edit locally, mark it pending and schedule a debounced push."""
        async with self._state_locks.hold(draft.canonical_key):
            previous = await self.load_local(draft.canonical_key)
            entry = CacheEntry(
                **draft.model_dump(),
                last_modified=utcnow(),
                sync_state=SyncState.PENDING,
                last_synced_at=previous.last_synced_at if previous else None,
                version=(previous.version + 1) if previous else 1,
                remote_id=previous.remote_id if previous else None,
            )
            await self._write_local(entry)
        if schedule_push:
            self.schedule_push(entry.canonical_key)
        return entry

    # --- scheduling ---

    def schedule_push(self, canonical_key: str, delay: Optional[float] = None) -> None:
        """(Re)arm the background push for a key; rapid edits collapse into one push.

        A push still waiting out its debounce is replaced. A push already
        talking to the server is left alone and runs once more after it
        resolves, so two requests for one key never overlap.
        """
        delay = self.config.sync_debounce if delay is None else delay
        existing = self._scheduled.get(canonical_key)
        if existing is not None and not existing.done():
            if existing not in self._debouncing:
                self._rearm.add(canonical_key)
                return
            existing.cancel()
            self._debouncing.discard(existing)

        task = asyncio.ensure_future(self._debounced_push(canonical_key, delay))
        self._scheduled[canonical_key] = task
        self._debouncing.add(task)
        task.add_done_callback(lambda t, key=canonical_key: self._forget(key, t))

    def _forget(self, key: str, task: asyncio.Task) -> None:
        self._debouncing.discard(task)
        if self._scheduled.get(key) is task:
            del self._scheduled[key]
            self._rearm.discard(key)

    async def _debounced_push(self, canonical_key: str, delay: float) -> None:
        task = asyncio.current_task()
        while True:
            await self._sleep(delay)
            self._debouncing.discard(task)
            self._rearm.discard(canonical_key)
            await self._auto_push(canonical_key)
            if canonical_key not in self._rearm:
                return
            # Edited while the push was in flight
            self._debouncing.add(task)
            delay = self.config.sync_debounce

    async def _auto_push(self, canonical_key: str) -> None:
        """Background push: failures are logged, never raised. The entry stays pending."""
        try:
            await self.push_to_remote(canonical_key)
        except UnauthorizedError as e:
            logger.info("Background sync of %s skipped, not authenticated: %s", canonical_key, e)
        except SyncError as e:
            logger.warning("Background sync of %s failed (%s phase): %s", canonical_key, e.phase, e)

    async def wait_idle(self) -> None:
        """Wait until every scheduled background push has finished."""
        while self._scheduled:
            await asyncio.gather(*list(self._scheduled.values()), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._scheduled.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # --- push ---

    async def push_to_remote(self, canonical_key: str) -> CacheEntry:
        """Upload the cached entry for `canonical_key`.

        Raises a SyncError with phase 'auth' when no usable token could be
        obtained and 'write' when the server refused or never answered the
        upsert. The entry stays pending in either case.
        """
        async with self._push_locks.hold(canonical_key):
            entry = await self.load_local(canonical_key)
            if entry is None:
                raise NotFoundError(f"No local timetable for {canonical_key}", phase="write")
            if entry.sync_state != SyncState.PENDING:
                return entry

            title = entry.title.strip() or str(entry.payload.get("title") or "").strip() or UNTITLED
            body = {
                "canonicalKey": entry.canonical_key,
                "title": title,
                "payload": normalize_payload(entry.payload),
                "startTime": _clip_time(entry.start_time) if entry.start_time else None,
                "totalDuration": entry.total_duration,
            }
            body = {k: v for k, v in body.items() if v is not None}

            async def call() -> Any:
                return await self.auth.authorized_request("POST", "/resources/save", json=body, phase="write")

            remote = await retry_with_backoff(call, self.config, context=f"push {canonical_key}", sleep=self._sleep)

            server_modified = datetime.fromisoformat(remote["lastModified"])
            async with self._state_locks.hold(canonical_key):
                current = await self.load_local(canonical_key)
                if current is None:
                    current = entry
                current.remote_id = remote.get("id")
                current.last_synced_at = server_modified
                # Only the version that was sent becomes synced; a newer edit stays pending
                if current.version == entry.version:
                    current.last_modified = server_modified
                    current.sync_state = SyncState.SYNCED
                await self._write_local(current)
            logger.info("Pushed %s (version %d, state=%s)", canonical_key, entry.version, current.sync_state.value)
            return current

    async def sync_now(self, canonical_key: str) -> CacheEntry:
        """User-initiated push: skips a pending debounce and surfaces failures.

        A background push already in flight is not interrupted; this waits
        its turn on the key and then pushes whatever is still pending.
        """
        scheduled = self._scheduled.get(canonical_key)
        if scheduled is not None and scheduled in self._debouncing:
            scheduled.cancel()
            self._debouncing.discard(scheduled)
        return await self.push_to_remote(canonical_key)

    async def flush_pending(self) -> dict[str, Optional[str]]:
        """Push every pending entry, e.g. right after pairing completes.

        Returns canonical key -> None on success or the error message.
        """
        results: dict[str, Optional[str]] = {}
        for key in await self.cached_keys():
            entry = await self.load_local(key)
            if entry is None or entry.sync_state != SyncState.PENDING:
                continue
            try:
                await self.push_to_remote(key)
                results[key] = None
            except SyncError as e:
                logger.warning("Flush of %s failed (%s phase): %s", key, e.phase, e)
                results[key] = str(e)
        return results

    # --- pull ---

    async def fetch_remote(self, canonical_key: str) -> Optional[dict[str, Any]]:
        """The server copy, or None when the server has never seen this key."""

        async def call() -> Any:
            return await self.auth.authorized_request(
                "GET", "/resources/get", params={"key": canonical_key}, phase="read"
            )

        try:
            return await retry_with_backoff(call, self.config, context=f"pull {canonical_key}", sleep=self._sleep)
        except NotFoundError:
            return None

    async def pull_from_remote(self, canonical_key: str) -> Optional[CacheEntry]:
        """Reconcile the local entry with the server copy, newer last_modified wins."""
        remote = await self.fetch_remote(canonical_key)
        async with self._state_locks.hold(canonical_key):
            local = await self.load_local(canonical_key)
            if remote is None:
                return local

            raw_modified = remote.get("lastModified")
            remote_modified = datetime.fromisoformat(raw_modified) if raw_modified else None

            if local is None:
                if remote_modified is None:
                    raise TimestampError(f"Remote {canonical_key} has no lastModified", phase="read")
                entry = self._entry_from_remote(canonical_key, remote, remote_modified, version=0)
                await self._write_local(entry)
                return entry

            winner = resolve_conflict(local.last_modified, remote_modified)
            if winner == "remote":
                entry = self._entry_from_remote(canonical_key, remote, remote_modified, version=local.version)
                if local.sync_state == SyncState.PENDING:
                    logger.warning(
                        "Remote copy of %s is newer than unsynced local version %d; remote wins",
                        canonical_key,
                        local.version,
                    )
                    entry.sync_state = SyncState.CONFLICTED
                await self._write_local(entry)
                logger.info("Pulled newer remote copy of %s", canonical_key)
                return entry

            if local.sync_state == SyncState.PENDING:
                self.schedule_push(canonical_key, delay=0)
            return local

    @staticmethod
    def _entry_from_remote(canonical_key: str, remote: dict[str, Any], modified: datetime, *, version: int) -> CacheEntry:
        return CacheEntry(
            canonical_key=canonical_key,
            title=remote.get("title") or "",
            payload=remote.get("payload") or {},
            start_time=remote.get("startTime") or DEFAULT_START_TIME,
            total_duration=remote.get("totalDuration") or 0,
            last_modified=modified,
            sync_state=SyncState.SYNCED,
            last_synced_at=modified,
            version=version,
            remote_id=remote.get("id"),
        )

    async def list_remote(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        async def call() -> Any:
            return await self.auth.authorized_request(
                "GET", "/resources/list", params={"limit": limit, "offset": offset}, phase="read"
            )

        return await retry_with_backoff(call, self.config, context="list remote", sleep=self._sleep)

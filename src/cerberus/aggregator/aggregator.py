from __future__ import annotations

import asyncio
from functools import partial
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from sanic.log import logger

from cerberus.aggregator.decision import (
    ConflictPolicy,
    GuardOutput,
    compute_decision,
    guard_output,
    is_guard_run,
    last_delivered_wins,
    split_check_runs,
)
from cerberus.aggregator.types import (
    AggregateEntry,
    CheckRunRecord,
    CommitKey,
    Decision,
    EntryState,
    GuardState,
)
from cerberus.aggregator.workers import KeyedWorkerPool
from cerberus.errors import (
    RETRYABLE_ERRORS,
    CerberusError,
    InternalError,
    NotFound,
    Unauthorized,
)
from cerberus.github.api import API
from cerberus.github.auth import InstallationTokenManager
from cerberus.github.model import (
    CHECK_RUN_NAME,
    CheckRun,
    CheckRunEvent,
    IssueCommentEvent,
    PullRequestEvent,
    UnknownEvent,
    WebhookEvent,
)
from cerberus.metric import (
    aggregate_entries,
    check_run_post,
    debounce_total,
    error_counter,
    webhook_skipped_counter,
)

T = TypeVar("T")

GUARDED_PULL_REQUEST_ACTIONS = frozenset({"opened", "reopened", "synchronize"})
REFRESH_COMMAND = "/cerberus refresh"


def is_refresh_command(event: IssueCommentEvent) -> bool:
    if event.action != "created" or not event.issue.is_pull_request:
        return False
    lines = event.comment.body.strip().splitlines()
    return bool(lines) and lines[0].strip() == REFRESH_COMMAND


class CheckAggregator:
    """Tracks the check runs of each commit and keeps the guard run in sync.

    Every event for a commit is applied by that commit's worker, one at a
    time and in arrival order, so an entry never has two writers. With a
    positive ``refresh_interval`` pushes to GitHub are debounced: the first
    mutation schedules a push, later ones inside the window ride along.
    """

    def __init__(
        self,
        api: API,
        tokens: InstallationTokenManager,
        *,
        client_id: str | None = None,
        refresh_interval: float = 0.0,
        retention: float = 600.0,
        eviction_interval: float = 60.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        conflict_policy: ConflictPolicy = last_delivered_wins,
        rehydrate: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.tokens = tokens
        self.client_id = client_id
        self.refresh_interval = max(0.0, float(refresh_interval))
        self.retention = max(0.0, float(retention))
        self.eviction_interval = float(eviction_interval)
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self.conflict_policy = conflict_policy
        self.rehydrate = rehydrate
        self._clock = clock

        self._entries: Dict[CommitKey, AggregateEntry] = {}
        self._lock = asyncio.Lock()
        self._pool: KeyedWorkerPool[CommitKey] = KeyedWorkerPool()
        self._timers: Dict[CommitKey, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._eviction_task: Optional[asyncio.Task] = None
        self._closing = False

    def start(self) -> None:
        if self.eviction_interval > 0 and self._eviction_task is None:
            self._eviction_task = asyncio.create_task(self._eviction_loop())

    def get_entry(self, key: CommitKey) -> AggregateEntry | None:
        return self._entries.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    # event intake

    async def submit(self, event: WebhookEvent) -> asyncio.Future | None:
        """Queue an event for its commit and return without waiting for it.

        Returns the future of the queued job, or None if the event was
        ignored.
        """
        if self._closing:
            logger.warning("Shutting down, dropping %s event", type(event).__name__)
            return None

        if isinstance(event, PullRequestEvent):
            return await self._on_pull_request(event)
        elif isinstance(event, CheckRunEvent):
            return await self._on_check_run(event)
        elif isinstance(event, IssueCommentEvent):
            return self._on_issue_comment(event)
        elif isinstance(event, UnknownEvent):
            logger.debug("Ignoring %s event", event.event)
            return None
        else:
            raise InternalError(f"Unexpected event {type(event).__name__}")

    async def _on_pull_request(self, event: PullRequestEvent) -> asyncio.Future | None:
        installation_id = event.installation_id
        if installation_id is None:
            self._skip("pull_request", "no_installation")
            return None
        key = CommitKey(event.repository.full_name, event.pull_request.head.sha)
        logger.debug("Received pull_request %s for %s", event.action, key)

        if event.action == "closed":
            return await self._close(key)
        if event.action not in GUARDED_PULL_REQUEST_ACTIONS:
            self._skip("pull_request", "action")
            return None

        entry = await self._get_or_create(key, installation_id)
        return self._pool.submit(key, partial(self._ensure_guard, entry))

    async def _on_check_run(self, event: CheckRunEvent) -> asyncio.Future | None:
        check_run = event.check_run
        if is_guard_run(check_run, self.client_id):
            logger.debug("Check run from us, skip handling")
            self._skip("check_run", "own_check_run")
            return None
        installation_id = event.installation_id
        if installation_id is None:
            self._skip("check_run", "no_installation")
            return None

        key = CommitKey(event.repository.full_name, check_run.head_sha)
        entry = await self._get_or_create(key, installation_id)
        return self._pool.submit(key, partial(self._apply_check_run, entry, check_run))

    def _on_issue_comment(self, event: IssueCommentEvent) -> asyncio.Future | None:
        if not is_refresh_command(event):
            self._skip("issue_comment", "no_command")
            return None
        installation_id = event.installation_id
        if installation_id is None:
            self._skip("issue_comment", "no_installation")
            return None
        logger.info(
            "Refresh requested on %s#%d", event.repository.full_name, event.issue.number
        )
        task = asyncio.create_task(
            self._refresh_from_comment(
                installation_id, event.repository.full_name, event.issue.number
            )
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    def _skip(event: str, reason: str) -> None:
        webhook_skipped_counter.labels(event=event, reason=reason).inc()

    # entry map

    async def _get_or_create(
        self, key: CommitKey, installation_id: int
    ) -> AggregateEntry:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("Tracking new commit %s", key)
                entry = AggregateEntry(
                    key=key,
                    installation_id=installation_id,
                    hydrated=not self.rehydrate,
                    last_activity=self._clock(),
                )
                self._entries[key] = entry
                aggregate_entries.set(len(self._entries))
            else:
                entry.installation_id = installation_id
            return entry

    async def _close(self, key: CommitKey) -> asyncio.Future | None:
        async with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return self._pool.submit(key, partial(self._discard, entry))

    async def _discard(self, entry: AggregateEntry) -> None:
        self._cancel_timer(entry)
        async with self._lock:
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]
                aggregate_entries.set(len(self._entries))
        logger.info("Pull request closed, forgetting %s", entry.key)

    async def evict_idle(self) -> int:
        now = self._clock()
        evicted = 0
        async with self._lock:
            for key, entry in list(self._entries.items()):
                if entry.state != EntryState.settled or entry.refreshing:
                    continue
                if self._pool.busy(key) or key in self._timers:
                    continue
                if now - entry.last_activity < self.retention:
                    continue
                del self._entries[key]
                evicted += 1
            aggregate_entries.set(len(self._entries))
        if evicted:
            logger.info("Evicted %d settled commits", evicted)
        return evicted

    async def _eviction_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.eviction_interval)
                await self.evict_idle()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                error_counter.labels(context="eviction").inc()
                logger.error("Eviction loop encountered error", exc_info=True)

    # jobs, always run on the entry's worker

    async def _prepare(self, entry: AggregateEntry) -> None:
        entry.last_activity = self._clock()
        if not entry.hydrated:
            await self._hydrate(entry)

    async def _ensure_guard(self, entry: AggregateEntry) -> None:
        await self._prepare(entry)
        if entry.guard.id is None:
            entry.dirty = True
        if entry.dirty:
            await self._schedule_push(entry)

    async def _apply_check_run(self, entry: AggregateEntry, check_run: CheckRun) -> None:
        await self._prepare(entry)
        incoming = CheckRunRecord.from_check_run(check_run, applied_at=self._clock())
        if self._upsert(entry, incoming):
            entry.dirty = True
        # a failed push left the entry dirty, any event retries it
        if entry.dirty:
            await self._schedule_push(entry)

    def _upsert(self, entry: AggregateEntry, incoming: CheckRunRecord) -> bool:
        existing = entry.checks.get(incoming.name)
        if existing is not None and existing.same_state(incoming):
            logger.debug("No change for check %s on %s", incoming.name, entry.key)
            return False
        if not self.conflict_policy(existing, incoming):
            logger.debug(
                "Keeping %s over %s for %s", existing, incoming, entry.key
            )
            return False
        entry.checks[incoming.name] = incoming
        return True

    async def _hydrate(self, entry: AggregateEntry, replace: bool = False) -> bool:
        key = entry.key
        try:
            runs = await self._github(
                entry.installation_id,
                lambda token: self.api.list_check_runs(token, key.repo, key.sha),
            )
        except NotFound:
            logger.warning("Commit %s not found while loading check runs", key)
            entry.hydrated = True
            return False
        except CerberusError:
            error_counter.labels(context="hydrate").inc()
            logger.warning("Failed to load check runs for %s", key, exc_info=True)
            return False

        records, guard = split_check_runs(
            runs, self.client_id, applied_at=self._clock()
        )
        if replace:
            entry.checks = records
        else:
            for name, record in records.items():
                entry.checks.setdefault(name, record)
        if guard is not None and (entry.guard.id is None or (guard.id or 0) > entry.guard.id):
            entry.guard = GuardState(
                id=guard.id,
                status=guard.status,
                conclusion=guard.conclusion,
                title=guard.output.title if guard.output else None,
                summary=guard.output.summary if guard.output else None,
            )
        entry.hydrated = True
        logger.debug(
            "Loaded %d check runs for %s, guard id %s",
            len(records),
            key,
            entry.guard.id,
        )
        return True

    async def _schedule_push(self, entry: AggregateEntry) -> None:
        if self.refresh_interval <= 0:
            await self._push(entry)
            return
        if entry.refresh_deadline is not None:
            debounce_total.labels(result="coalesced").inc()
            return
        loop = asyncio.get_running_loop()
        entry.refresh_deadline = loop.time() + self.refresh_interval
        self._timers[entry.key] = loop.call_later(
            self.refresh_interval, self._on_timer, entry
        )
        debounce_total.labels(result="scheduled").inc()

    def _on_timer(self, entry: AggregateEntry) -> None:
        self._timers.pop(entry.key, None)
        if self._pool.closed:
            return
        self._pool.submit(entry.key, partial(self._flush, entry))

    def _cancel_timer(self, entry: AggregateEntry) -> None:
        handle = self._timers.pop(entry.key, None)
        if handle is not None:
            handle.cancel()
        entry.refresh_deadline = None

    async def _flush(self, entry: AggregateEntry) -> None:
        entry.refresh_deadline = None
        debounce_total.labels(result="executed").inc()
        if entry.dirty:
            await self._push(entry)

    async def _push(self, entry: AggregateEntry) -> None:
        decision = compute_decision(entry.checks.values())
        desired = guard_output(decision, entry.checks.values())
        guard = entry.guard
        if (
            guard.id is not None
            and guard.status == desired.status
            and guard.conclusion == desired.conclusion
            and guard.title == desired.output.title
            and guard.summary == desired.output.summary
        ):
            logger.debug("No changes to guard for %s, skipping update", entry.key)
            check_run_post.labels(operation="unchanged").inc()
            entry.dirty = False
            return

        entry.refreshing = True
        try:
            guard_id = await self._write_guard(entry, desired)
        except CerberusError as exc:
            error_counter.labels(context="push").inc()
            logger.error(
                "Failed to publish guard for %s, will retry on next event: %s",
                entry.key,
                exc,
            )
            return
        finally:
            entry.refreshing = False

        entry.guard = GuardState(
            id=guard_id,
            status=desired.status,
            conclusion=desired.conclusion,
            title=desired.output.title,
            summary=desired.output.summary,
        )
        entry.dirty = False
        logger.info(
            "Guard for %s is %s (%s)", entry.key, decision.value, desired.output.title
        )

    async def _write_guard(self, entry: AggregateEntry, desired: GuardOutput) -> int | None:
        key = entry.key
        guard_id = entry.guard.id
        # a completed run is not moved back to in_progress, a fresh one is created
        reopened = desired.status != "completed" and entry.guard.status == "completed"

        if guard_id is not None and not reopened:
            fields: Dict[str, Any] = {"status": desired.status, "output": desired.output}
            if desired.conclusion is not None:
                fields["conclusion"] = desired.conclusion
            try:
                updated = await self._github(
                    entry.installation_id,
                    lambda token: self.api.update_check_run(
                        token, key.repo, guard_id, fields
                    ),
                )
            except NotFound:
                logger.warning(
                    "Guard check run %d for %s is gone, creating a new one",
                    guard_id,
                    key,
                )
                entry.guard = GuardState()
            else:
                check_run_post.labels(operation="update").inc()
                return updated.id or guard_id

        created = await self._github(
            entry.installation_id,
            lambda token: self.api.create_check_run(
                token,
                key.repo,
                key.sha,
                CHECK_RUN_NAME,
                desired.status,
                desired.output,
                desired.conclusion,
            ),
        )
        check_run_post.labels(operation="create").inc()
        return created.id

    # remote calls

    async def _github(
        self, installation_id: int, fn: Callable[[str], Awaitable[T]]
    ) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._call_with_token(installation_id, fn)

    async def _call_with_token(
        self, installation_id: int, fn: Callable[[str], Awaitable[T]]
    ) -> T:
        token = await self.tokens.get_token(installation_id)
        try:
            return await fn(token)
        except Unauthorized:
            logger.info(
                "Token for installation %d was rejected, retrying with a new one",
                installation_id,
            )
            await self.tokens.invalidate(installation_id)
            token = await self.tokens.get_token(installation_id)
            return await fn(token)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "GitHub call failed (attempt %d), retrying in %.1fs: %s",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )

    # explicit refresh, used by the comment command and the CLI

    async def _refresh_from_comment(
        self, installation_id: int, repo: str, number: int
    ) -> None:
        try:
            pull = await self._github(
                installation_id,
                lambda token: self.api.get_pull(token, repo, number),
            )
        except CerberusError:
            error_counter.labels(context="comment_refresh").inc()
            logger.error(
                "Could not resolve head commit of %s#%d", repo, number, exc_info=True
            )
            return
        # submitted even while shutting down, the drain waits for it
        future = await self._submit_refresh(installation_id, repo, pull.head.sha)
        await future

    async def refresh(
        self, installation_id: int, repo: str, sha: str
    ) -> asyncio.Future | None:
        """Reload a commit's check runs from GitHub and push the guard now."""
        if self._closing:
            return None
        return await self._submit_refresh(installation_id, repo, sha)

    async def _submit_refresh(
        self, installation_id: int, repo: str, sha: str
    ) -> asyncio.Future:
        key = CommitKey(repo, sha)
        entry = await self._get_or_create(key, installation_id)
        return self._pool.submit(key, partial(self._force_refresh, entry))

    async def ensure_guard(
        self, installation_id: int, repo: str, sha: str
    ) -> asyncio.Future | None:
        if self._closing:
            return None
        key = CommitKey(repo, sha)
        entry = await self._get_or_create(key, installation_id)
        return self._pool.submit(key, partial(self._ensure_guard, entry))

    async def _force_refresh(self, entry: AggregateEntry) -> Decision:
        entry.last_activity = self._clock()
        self._cancel_timer(entry)
        if await self._hydrate(entry, replace=True):
            entry.dirty = True
        if entry.dirty or entry.guard.id is None:
            await self._push(entry)
        return compute_decision(entry.checks.values())

    # lifecycle

    async def join(self) -> None:
        """Wait until all queued work (not pending timers) has run."""
        while self._background or len(self._pool):
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            await self._pool.join()

    async def shutdown(self, timeout: float = 10.0) -> bool:
        """Flush pending debounced pushes and drain workers within ``timeout``.

        Returns False if anything was cancelled at the deadline.
        """
        self._closing = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        if self._eviction_task is not None:
            self._eviction_task.cancel()
            await asyncio.gather(self._eviction_task, return_exceptions=True)
            self._eviction_task = None

        abandoned = 0
        if self._background:
            _, unfinished = await asyncio.wait(
                list(self._background), timeout=max(0.0, deadline - loop.time())
            )
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)
            abandoned = len(unfinished)

        pending = list(self._timers.items())
        self._timers.clear()
        for key, handle in pending:
            handle.cancel()
            entry = self._entries.get(key)
            if entry is not None:
                logger.info("Flushing pending guard update for %s", key)
                self._pool.submit(key, partial(self._flush, entry))

        self._pool.close()
        drained = await self._pool.drain(max(0.0, deadline - loop.time()))
        drained = drained and not abandoned
        if not drained:
            logger.warning("Shutdown deadline passed, some guard updates were abandoned")
        return drained

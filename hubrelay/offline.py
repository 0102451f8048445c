"""Offline action queue with durable storage and automatic resync.

Actions that cannot complete online are kept here, ordered by priority and
age, and replayed through registered handlers once connectivity returns.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import pydantic
from loguru import logger

from .errors import OfflineQueueFullError
from .events import Listeners
from .models import Config, OfflineAction, Priority, SyncError, SyncResult, utcnow
from .singleflight import SingleFlight
from .storage import Storage

log = logger.bind(component="offline_queue")

ActionHandler = Callable[[OfflineAction], Awaitable[Any]]

STALE_LOW_PRIORITY_AGE = timedelta(hours=1)


class OfflineQueue:
    """Durable, priority-ordered queue of deferred actions.

    Every mutation is written through to storage, so pending actions, the
    offline key/value data and the last-sync time survive a restart.

    Example:
        >>> queue = OfflineQueue(Storage(".hubrelay"))
        >>> queue.register_handler("save_draft", save_draft_online)
        >>> await queue.enqueue(OfflineAction(type="save_draft", payload={"text": "hi"}))
        >>> queue.set_online(True)   # schedules a sync
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        config: Optional[Config] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        online: bool = True,
    ) -> None:
        self._storage = storage
        self._config = config or (storage.get_config() if storage else Config())
        self._clock = clock
        self._sleep = sleep
        self._online = online
        self._lock = asyncio.Lock()
        self._flight = SingleFlight()
        self._actions: Dict[str, OfflineAction] = {}
        self._data: Dict[str, Any] = {}
        self._last_sync_at: Optional[datetime] = None
        self._handlers: Dict[str, ActionHandler] = {}
        self._timer: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._sync_listeners: Listeners[SyncResult] = Listeners("offline:sync")
        self._connectivity_listeners: Listeners[bool] = Listeners("offline:connectivity")

        if storage:
            self._load()

    def _load(self) -> None:
        """Load queue state from disk."""
        try:
            self._actions = self._storage.load_actions()
        except (json.JSONDecodeError, pydantic.ValidationError, OSError) as e:
            log.warning(f"Pending actions unreadable, starting with an empty queue: {e}")
        try:
            self._data = self._storage.load_offline_data()
            self._last_sync_at = self._storage.get_last_sync()
        except (json.JSONDecodeError, ValueError, OSError) as e:
            log.warning(f"Offline data unreadable, starting fresh: {e}")
        log.info(f"Loaded {len(self._actions)} pending actions")

    def _persist_actions(self) -> None:
        if self._storage:
            self._storage.save_actions(self._actions)

    def _persist_data(self) -> None:
        if self._storage:
            self._storage.save_offline_data(self._data)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self._last_sync_at

    def __len__(self) -> int:
        return len(self._actions)

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        """Register the coroutine that replays actions of a type online."""
        self._handlers[action_type] = handler

    def on_sync(self, listener: Callable[[SyncResult], None]) -> Callable[[], None]:
        return self._sync_listeners.subscribe(listener)

    def on_connectivity_change(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._connectivity_listeners.subscribe(listener)

    async def enqueue(self, action: OfflineAction) -> str:
        """Add an action to the queue.

        Re-enqueueing an id that is already queued keeps the existing entry.

        Raises:
            OfflineQueueFullError: if the queue is full and nothing can be evicted
        """
        async with self._lock:
            if action.id in self._actions:
                log.debug(f"Action {action.id} already queued")
                return action.id

            if len(self._actions) >= self._config.max_queue_size:
                self._evict_stale_low_priority()
                if len(self._actions) >= self._config.max_queue_size:
                    raise OfflineQueueFullError(
                        f"Offline queue full ({self._config.max_queue_size} actions)"
                    )

            self._actions[action.id] = action.model_copy(deep=True)
            self._persist_actions()

        log.debug(f"Enqueued {action.type} action {action.id} ({action.priority.value})")
        return action.id

    async def queue_action(
        self,
        action_type: str,
        payload: Dict[str, Any],
        priority: Priority = Priority.NORMAL,
        depends_on: Optional[List[str]] = None,
        expires_in: Optional[float] = None,
        action_id: Optional[str] = None,
    ) -> str:
        """Build an action with the configured retry limit and enqueue it."""
        now = self._clock()
        fields: Dict[str, Any] = {}
        if action_id:
            fields["id"] = action_id
        action = OfflineAction(
            type=action_type,
            payload=payload,
            priority=priority,
            created_at=now,
            next_retry_at=now,
            max_retries=self._config.max_retries,
            depends_on=depends_on or [],
            expires_at=now + timedelta(seconds=expires_in) if expires_in is not None else None,
            **fields,
        )
        return await self.enqueue(action)

    def _evict_stale_low_priority(self) -> None:
        """Drop old low-priority actions to make room."""
        cutoff = self._clock() - STALE_LOW_PRIORITY_AGE
        stale = [
            action_id
            for action_id, action in self._actions.items()
            if action.priority == Priority.LOW and action.created_at < cutoff
        ]
        for action_id in stale:
            del self._actions[action_id]
        if stale:
            log.warning(f"Evicted {len(stale)} stale low-priority actions")

    async def cancel(self, action_id: str) -> bool:
        """Remove a queued action. Returns False if it was not queued."""
        async with self._lock:
            if self._actions.pop(action_id, None) is None:
                return False
            self._persist_actions()
        log.info(f"Cancelled action {action_id}")
        return True

    def get(self, action_id: str) -> Optional[OfflineAction]:
        action = self._actions.get(action_id)
        return action.model_copy(deep=True) if action else None

    def pending(self) -> List[OfflineAction]:
        """All queued actions in sync order."""
        actions = sorted(self._actions.values(), key=lambda a: (a.priority.rank, a.created_at))
        return [action.model_copy(deep=True) for action in actions]

    def set_online(self, online: bool) -> None:
        """Record a connectivity change; coming back online schedules a sync.

        Must be called from inside the running event loop.
        """
        if online == self._online:
            return
        self._online = online
        if online:
            log.info("Connectivity restored")
        else:
            log.warning("Connectivity lost")
        self._connectivity_listeners.emit(online)
        if online and self._actions:
            self._spawn(self.sync())

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def sync(self) -> SyncResult:
        """Replay every action that is due and unblocked.

        Concurrent callers share one pass. While offline nothing is attempted.
        """
        if not self._online:
            return SyncResult(success=False)
        return await self._flight.do("sync", self._sync_pass)

    async def _sync_pass(self) -> SyncResult:
        result = SyncResult()
        now = self._clock()

        async with self._lock:
            expired = [
                action for action in self._actions.values()
                if action.expires_at is not None and action.expires_at < now
            ]
            for action in expired:
                del self._actions[action.id]
                result.expired.append(action.id)
                log.warning(f"Action {action.id} ({action.type}) expired, dropping")
            if expired:
                self._persist_actions()

        attempted: Set[str] = set()
        log.info(f"Syncing {len(self._actions)} pending actions")
        while self._online:
            async with self._lock:
                action = self._next_ready(now, attempted)
            if action is None:
                break
            attempted.add(action.id)

            handler = self._handlers.get(action.type)
            if handler is None:
                async with self._lock:
                    self._record_failure(action, f"No handler registered for {action.type}", now, result)
                continue

            try:
                await handler(action.model_copy(deep=True))
            except Exception as e:
                async with self._lock:
                    self._record_failure(action, str(e) or type(e).__name__, now, result)
            else:
                async with self._lock:
                    self._actions.pop(action.id, None)
                    self._persist_actions()
                result.processed += 1
                log.debug(f"Synced action {action.id} ({action.type})")

        async with self._lock:
            self._last_sync_at = now
            if self._storage:
                self._storage.set_last_sync(now)

        result.success = result.failed == 0
        self._sync_listeners.emit(result)
        return result

    def _next_ready(self, now: datetime, attempted: Set[str]) -> Optional[OfflineAction]:
        """Most urgent action that is due and whose dependencies are all gone."""
        ready = [
            action for action in self._actions.values()
            if action.id not in attempted
            and action.next_retry_at <= now
            and not any(dep in self._actions for dep in action.depends_on)
        ]
        return min(ready, key=lambda a: (a.priority.rank, a.created_at), default=None)

    def _record_failure(self, action: OfflineAction, message: str, now: datetime, result: SyncResult) -> None:
        result.failed += 1
        stored = self._actions.get(action.id)
        if stored is None:
            # Cancelled while its handler was running.
            result.errors.append(SyncError(action_id=action.id, action_type=action.type, error=message))
            return

        stored.retry_count += 1
        if stored.retry_count >= stored.max_retries:
            del self._actions[action.id]
            log.warning(f"Action {action.id} exceeded max retries, removing: {message}")
            result.errors.append(
                SyncError(action_id=action.id, action_type=action.type, error=message, dropped=True)
            )
        else:
            delay = min(
                self._config.sync_backoff_base * 2 ** stored.retry_count,
                self._config.sync_backoff_max,
            )
            stored.next_retry_at = now + timedelta(seconds=delay)
            log.warning(f"Action {action.id} failed (retry {stored.retry_count}), next try in {delay:g}s: {message}")
            result.errors.append(SyncError(action_id=action.id, action_type=action.type, error=message))
        self._persist_actions()

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._persist_data()

    def clear_data(self) -> None:
        self._data.clear()
        self._persist_data()

    def start(self) -> None:
        """Start the periodic sync timer. Must run inside the event loop."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._periodic_sync())

    async def stop(self) -> None:
        """Stop the timer and any sync scheduled by a connectivity change."""
        tasks = list(self._background)
        if self._timer is not None:
            tasks.append(self._timer)
            self._timer = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _periodic_sync(self) -> None:
        while True:
            await self._sleep(self._config.sync_interval)
            if not (self._online and self._actions) or self._flight.in_flight("sync"):
                continue
            try:
                await self.sync()
            except Exception:
                log.opt(exception=True).error("Periodic sync failed")

    def stats(self) -> Dict[str, Any]:
        by_priority: Dict[str, int] = {}
        for action in self._actions.values():
            by_priority[action.priority.value] = by_priority.get(action.priority.value, 0) + 1
        return {
            "total": len(self._actions),
            "by_priority": by_priority,
            "max_size": self._config.max_queue_size,
            "is_online": self._online,
            "last_sync_at": self._last_sync_at,
        }

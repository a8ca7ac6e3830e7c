"""Re-check incompatible mods until a compatible version shows up.

A watch is registered when an install finds no version for the server's
loader and game version. Every ``interval_hours`` the watcher resolves each
watch again; the first success moves the watch into the server's history
and notifies the operator.

State is kept per server in ``<server>/.modkeeper/``::

    mod-availability-watches.json   {watches, last_check, next_check}
    mod-availability-history.json   [FulfillmentRecord, ...]
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError

from .config import ALLOWED_WATCH_INTERVALS
from .errors import NotFound, ValidationError
from .models import ArtifactTarget, FulfillmentRecord, ServerWatchState, Watch
from .monitor import ErrorMonitor
from .notify import NotificationSink
from .scheduler import Ticker
from .store import JsonFileStore
from .versions import VersionResolver

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".modkeeper"
WATCHES_FILENAME = "mod-availability-watches.json"
HISTORY_FILENAME = "mod-availability-history.json"
DEFAULT_HISTORY_LIMIT = 200
DEFAULT_TICK_SECONDS = 5 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _server_key(server: Path) -> str:
    return str(Path(server).expanduser().resolve())


class WatcherRegistry:
    """Durable per-server watch state, hydrated on first use."""

    def __init__(self, store: JsonFileStore) -> None:
        self._store = store
        self._states: Dict[str, ServerWatchState] = {}
        self._histories: Dict[str, List[FulfillmentRecord]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def watches_path(server: Path) -> Path:
        return Path(server) / STATE_DIRNAME / WATCHES_FILENAME

    @staticmethod
    def history_path(server: Path) -> Path:
        return Path(server) / STATE_DIRNAME / HISTORY_FILENAME

    def servers(self) -> List[Path]:
        with self._lock:
            return [Path(key) for key in self._states]

    def state(self, server: Path) -> ServerWatchState:
        key = _server_key(server)
        with self._lock:
            cached = self._states.get(key)
            if cached is None:
                cached = self._load(Path(key))
                self._states[key] = cached
            return cached

    def _load(self, server: Path) -> ServerWatchState:
        data = self._store.read(self.watches_path(server))
        if data is None:
            return ServerWatchState()
        try:
            return ServerWatchState.model_validate(data)
        except ModelValidationError as exc:
            logger.warning("Ignoring malformed watch state for %s: %s", server, exc)
            return ServerWatchState()

    def save(self, server: Path) -> None:
        with self._lock:
            state = self.state(server)
            payload = state.model_dump(mode="json")
        try:
            self._store.write(self.watches_path(server), payload)
        except OSError as exc:
            logger.warning("Could not save watch state for %s: %s", server, exc)

    def history(self, server: Path) -> List[FulfillmentRecord]:
        key = _server_key(server)
        with self._lock:
            cached = self._histories.get(key)
            if cached is None:
                cached = self._load_history(Path(key))
                self._histories[key] = cached
            return list(cached)

    def _load_history(self, server: Path) -> List[FulfillmentRecord]:
        data = self._store.read(self.history_path(server), default=[])
        if not isinstance(data, list):
            logger.warning("Ignoring malformed watch history for %s", server)
            return []
        records: List[FulfillmentRecord] = []
        for item in data:
            try:
                records.append(FulfillmentRecord.model_validate(item))
            except ModelValidationError as exc:
                logger.warning("Skipping malformed history entry for %s: %s", server, exc)
        return records

    def save_history(self, server: Path, records: List[FulfillmentRecord]) -> None:
        with self._lock:
            self._histories[_server_key(server)] = list(records)
        try:
            self._store.write(self.history_path(server), [record.model_dump(mode="json") for record in records])
        except OSError as exc:
            logger.warning("Could not save watch history for %s: %s", server, exc)


class AvailabilityWatcher:
    def __init__(
        self,
        registry: WatcherRegistry,
        resolver: VersionResolver,
        notifier: NotificationSink,
        *,
        interval_hours: int = ALLOWED_WATCH_INTERVALS[0],
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
        monitor: Optional[ErrorMonitor] = None,
    ) -> None:
        self.registry = registry
        self._resolver = resolver
        self._notifier = notifier
        self._interval_hours = _check_interval(interval_hours)
        self.history_limit = history_limit
        self._clock = clock
        self._monitor = monitor
        self._lock = threading.RLock()
        self._pass_locks: Dict[str, threading.Lock] = {}
        self._ticker: Optional[Ticker] = None

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self._interval_hours)

    # ------------------------------------------------------------------ watches

    def add_watch(
        self,
        server: Path,
        *,
        project_id: str,
        mod_name: str,
        loader: str,
        game_version: str,
        file_name: Optional[str] = None,
    ) -> Watch:
        missing = [
            name
            for name, value in (
                ("project_id", project_id),
                ("mod_name", mod_name),
                ("loader", loader),
                ("game_version", game_version),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Cannot watch a mod without {', '.join(missing)}.")

        target = ArtifactTarget(project_id=project_id, loader=loader, game_version=game_version)
        with self._lock:
            state = self.registry.state(server)
            for existing in state.watches:
                if existing.key == target:
                    return existing

            now = self._clock()
            watch = Watch(
                project_id=project_id,
                mod_name=mod_name,
                file_name=file_name,
                target=target,
                added_at=now,
            )
            state.watches.append(watch)
            if state.next_check is None:
                state.next_check = now + self.interval
            self.registry.save(server)
        logger.info("Watching %s for %s %s", mod_name, target.loader, target.game_version)
        return watch

    def remove_watch(
        self,
        server: Path,
        project_id: str,
        *,
        loader: Optional[str] = None,
        game_version: Optional[str] = None,
    ) -> bool:
        with self._lock:
            state = self.registry.state(server)
            kept = [
                watch
                for watch in state.watches
                if not (
                    watch.project_id == project_id
                    and (loader is None or watch.target.loader == loader.lower())
                    and (game_version is None or watch.target.game_version == game_version)
                )
            ]
            removed = len(kept) != len(state.watches)
            if removed:
                state.watches = kept
                self.registry.save(server)
        return removed

    def clear_watches(self, server: Path) -> int:
        with self._lock:
            state = self.registry.state(server)
            count = len(state.watches)
            state.watches = []
            self.registry.save(server)
        return count

    def list_watches(self, server: Path) -> List[Watch]:
        with self._lock:
            return list(self.registry.state(server).watches)

    def get_history(self, server: Path, limit: Optional[int] = None) -> List[FulfillmentRecord]:
        """Fulfilled watches, oldest first."""
        records = self.registry.history(server)
        return records[-limit:] if limit else records

    def clear_history(self, server: Path) -> None:
        self.registry.save_history(server, [])

    # ------------------------------------------------------------------ schedule

    def set_interval_hours(self, hours: int) -> None:
        self._interval_hours = _check_interval(hours)
        with self._lock:
            now = self._clock()
            for server in self.registry.servers():
                state = self.registry.state(server)
                state.next_check = (state.last_check or now) + self.interval
                self.registry.save(server)
        logger.info("Watch interval set to %d hours", hours)

    def get_config(self) -> Dict[str, Any]:
        return {
            "interval_hours": self._interval_hours,
            "history_limit": self.history_limit,
            "servers": len(self.registry.servers()),
            "running": self._ticker is not None and self._ticker.running,
        }

    def is_due(self, server: Path, now: Optional[datetime] = None) -> bool:
        state = self.registry.state(server)
        if not state.watches or state.next_check is None:
            return False
        return (now or self._clock()) >= state.next_check

    def tick(self) -> None:
        now = self._clock()
        for server in self.registry.servers():
            state = self.registry.state(server)
            if not state.watches:
                continue
            if state.next_check is None:
                with self._lock:
                    state.next_check = now + self.interval
                    self.registry.save(server)
                continue
            if self.is_due(server, now):
                self.run_pass(server)

    def _pass_lock(self, server: Path) -> threading.Lock:
        key = _server_key(server)
        with self._lock:
            return self._pass_locks.setdefault(key, threading.Lock())

    def run_pass(self, server: Path) -> List[FulfillmentRecord]:
        """Resolve every watch of ``server`` once, one at a time.

        Passes for the same server never overlap; a second caller waits and
        then sees only the watches the first pass left behind.
        """
        with self._pass_lock(server):
            return self._run_pass(server)

    def _run_pass(self, server: Path) -> List[FulfillmentRecord]:
        with self._lock:
            watches = list(self.registry.state(server).watches)
        logger.info("Checking %d watched mod(s) for %s", len(watches), server)

        fulfilled: List[FulfillmentRecord] = []
        for watch in watches:
            now = self._clock()
            try:
                version = self._resolver.resolve(watch.target)
            except NotFound:
                logger.debug("Still no compatible version of %s", watch.mod_name)
                watch.last_checked_at = now
                continue
            except Exception as exc:
                logger.warning("Availability check for %s failed: %s", watch.mod_name, exc)
                if self._monitor is not None:
                    self._monitor.record_exception(
                        exc,
                        source="watcher",
                        mod_id=watch.project_id,
                        mod_name=watch.mod_name,
                    )
                watch.last_checked_at = now
                continue

            record = FulfillmentRecord(
                project_id=watch.project_id,
                mod_name=watch.mod_name,
                target=watch.target,
                version_found=version.version_number,
                found_at=now,
            )
            if self._fulfill(server, watch, record):
                fulfilled.append(record)

        with self._lock:
            state = self.registry.state(server)
            now = self._clock()
            state.last_check = now
            state.next_check = now + self.interval
            self.registry.save(server)
        return fulfilled

    def _fulfill(self, server: Path, watch: Watch, record: FulfillmentRecord) -> bool:
        with self._lock:
            state = self.registry.state(server)
            if not any(item.key == watch.key for item in state.watches):
                logger.debug("Watch for %s was removed during the pass", watch.mod_name)
                return False
            state.watches = [item for item in state.watches if item.key != watch.key]
            history = self.registry.history(server)
            history.append(record)
            self.registry.save_history(server, history[-self.history_limit :])
            self.registry.save(server)
        logger.info("%s %s is now compatible with %s", record.mod_name, record.version_found, record.target)
        try:
            self._notifier.notify_fulfilled(Path(server), record)
        except Exception:
            logger.exception("Notification for %s failed", record.mod_name)
        return True

    def start(self, tick_seconds: float = DEFAULT_TICK_SECONDS) -> None:
        if self._ticker is not None:
            return
        self._ticker = Ticker(tick_seconds, self.tick, name="availability-watcher")
        self._ticker.start()

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.stop(timeout=1.0)
            self._ticker = None


def _check_interval(hours: int) -> int:
    if hours not in ALLOWED_WATCH_INTERVALS:
        allowed = " or ".join(str(value) for value in ALLOWED_WATCH_INTERVALS)
        raise ValidationError(f"Check interval must be {allowed} hours, got {hours}.")
    return hours

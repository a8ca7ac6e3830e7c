"""Single-flight update checks with request coalescing.

At most one check runs at a time. Requests arriving while a check is in
flight are merged into a single pending request, which runs as soon as the
current check finishes::

    IDLE --trigger--> RUNNING --trigger--> RUNNING_WITH_PENDING
      ^                  |                         |
      +----run done------+      run done: start pending, back to RUNNING
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, FrozenSet, Optional

from .scheduler import Ticker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckRequest:
    server_path: Optional[Path] = None
    force_refresh: bool = False
    targets: Optional[FrozenSet[str]] = None

    def merge(self, newer: "CheckRequest") -> "CheckRequest":
        return CheckRequest(
            server_path=newer.server_path,
            force_refresh=self.force_refresh or newer.force_refresh,
            targets=newer.targets,
        )


class CheckState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_WITH_PENDING = "running_with_pending"


class TriggerOutcome(str, Enum):
    STARTED = "started"
    ENQUEUED = "enqueued"


CheckRunner = Callable[[CheckRequest], Any]


class UpdateCheckCoordinator:
    def __init__(self, runner: CheckRunner) -> None:
        self._runner = runner
        self._cond = threading.Condition()
        self._state = CheckState.IDLE
        self._pending: Optional[CheckRequest] = None
        self._runs_completed = 0
        self._last_request: Optional[CheckRequest] = None
        self._last_result: Any = None
        self._last_error: Optional[BaseException] = None
        self._ticker: Optional[Ticker] = None

    @property
    def state(self) -> CheckState:
        with self._cond:
            return self._state

    @property
    def runs_completed(self) -> int:
        with self._cond:
            return self._runs_completed

    @property
    def last_request(self) -> Optional[CheckRequest]:
        with self._cond:
            return self._last_request

    @property
    def last_result(self) -> Any:
        with self._cond:
            return self._last_result

    @property
    def last_error(self) -> Optional[BaseException]:
        with self._cond:
            return self._last_error

    def trigger_check(self, request: CheckRequest, *, wait: bool = True) -> TriggerOutcome:
        """Run ``request`` now, or fold it into the pending request.

        Never blocks on another caller's check. With ``wait=True`` a
        ``STARTED`` call returns after the whole drain, including pending
        requests merged in meanwhile.
        """
        with self._cond:
            if self._state is not CheckState.IDLE:
                self._pending = request if self._pending is None else self._pending.merge(request)
                self._state = CheckState.RUNNING_WITH_PENDING
                logger.debug("Update check in progress; request queued (force=%s)", self._pending.force_refresh)
                return TriggerOutcome.ENQUEUED
            self._state = CheckState.RUNNING

        if wait:
            self._drain(request)
        else:
            threading.Thread(target=self._drain, args=(request,), name="update-check", daemon=True).start()
        return TriggerOutcome.STARTED

    def _drain(self, request: CheckRequest) -> None:
        current: Optional[CheckRequest] = request
        while current is not None:
            result: Any = None
            error: Optional[BaseException] = None
            try:
                result = self._runner(current)
            except Exception as exc:
                logger.exception("Update check failed")
                error = exc
            finally:
                with self._cond:
                    self._runs_completed += 1
                    self._last_request = current
                    self._last_result = result
                    self._last_error = error
                    current = self._pending
                    self._pending = None
                    self._state = CheckState.IDLE if current is None else CheckState.RUNNING
                    self._cond.notify_all()
            if current is not None:
                logger.debug("Running queued update check (force=%s)", current.force_refresh)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._state is CheckState.IDLE, timeout)

    def start_periodic(self, interval_seconds: float, request: Optional[CheckRequest] = None) -> None:
        if self._ticker is not None:
            return
        periodic = request or CheckRequest()
        self._ticker = Ticker(interval_seconds, lambda: self.trigger_check(periodic), name="update-check-periodic")
        self._ticker.start()

    def stop_periodic(self) -> None:
        if self._ticker is not None:
            self._ticker.stop(timeout=1.0)
            self._ticker = None

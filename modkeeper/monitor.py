"""Aggregation of download, registry and integrity failures.

The monitor is a sink: callers hand it failure events and never get an
exception back. Each event is categorized, scored, kept in a bounded ring
buffer and counted per ``(category, source, type)`` pattern so repeating
failures surface as a single alert.

With an ``entries_path`` the ring buffer is saved after every event and
replayed on start, so counters and alerts carry over between processes.
"""

from __future__ import annotations

import logging
import platform
import threading
import uuid
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from .errors import (
    FilesystemError,
    IntegrityMismatch,
    NotFound,
    TransientError,
    ValidationError,
)
from .scheduler import Ticker
from .store import JsonFileStore

logger = logging.getLogger(__name__)

PATTERN_ALERT_THRESHOLD = 5
FILE_CHECKSUM_ALERT_THRESHOLD = 3
DEFAULT_MAX_LOG_SIZE = 10_000
DEFAULT_RETENTION = timedelta(days=7)
PRUNE_INTERVAL_SECONDS = 60 * 60
REPORT_INTERVAL_SECONDS = 6 * 60 * 60


class ErrorCategory(str, Enum):
    INTEGRITY = "integrity"
    TIMEOUT = "timeout"
    CONNECTIVITY = "connectivity"
    SERVER_ERROR = "server-error"
    NOT_FOUND = "not-found"
    AUTH = "auth"
    FILESYSTEM = "filesystem"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorEvent(BaseModel):
    type: str = "unknown"
    message: str = "Unknown error"
    source: str = "unknown"
    mod_id: Optional[str] = None
    mod_name: Optional[str] = None
    attempt: int = 1
    total_attempts: int = 1
    http_status: Optional[int] = None
    download_url: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    expected: Optional[str] = None
    actual: Optional[str] = None
    algorithm: Optional[str] = None
    error_type: Optional[str] = None


class ErrorEntry(BaseModel):
    id: str
    timestamp: datetime
    type: str
    category: ErrorCategory
    severity: Severity
    message: str
    source: str
    mod_id: Optional[str] = None
    mod_name: Optional[str] = None
    attempt: int = 1
    total_attempts: int = 1
    context: Dict[str, Any] = Field(default_factory=dict)
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def pattern(self) -> Tuple[str, str, str]:
        return (self.category.value, self.source, self.type)


class PatternAlert(BaseModel):
    category: str
    source: str
    type: str
    count: int
    raised_at: datetime


class Recommendation(BaseModel):
    priority: str
    type: str
    title: str
    description: str
    suggestion: str
    action: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def categorize(event: ErrorEvent) -> ErrorCategory:
    message = event.message.lower()
    status = event.http_status or 0

    if event.type == "filesystem":
        return ErrorCategory.FILESYSTEM
    if event.type == "checksum" or "checksum" in message or "integrity" in message:
        return ErrorCategory.INTEGRITY
    if "timeout" in message or "timed out" in message:
        return ErrorCategory.TIMEOUT
    if any(word in message for word in ("network", "connection", "dns", "resolve")):
        return ErrorCategory.CONNECTIVITY
    if status >= 500 or "server error" in message:
        return ErrorCategory.SERVER_ERROR
    if status == 404 or "not found" in message:
        return ErrorCategory.NOT_FOUND
    if status in (401, 403) or "forbidden" in message or "unauthorized" in message:
        return ErrorCategory.AUTH
    if any(word in message for word in ("permission", "access denied", "disk space", "no space left")):
        return ErrorCategory.FILESYSTEM
    return ErrorCategory.UNKNOWN


def determine_severity(category: ErrorCategory, attempt: int = 1) -> Severity:
    if category is ErrorCategory.FILESYSTEM:
        return Severity.CRITICAL
    if category in (ErrorCategory.SERVER_ERROR, ErrorCategory.AUTH):
        return Severity.HIGH
    if category is ErrorCategory.INTEGRITY:
        return Severity.HIGH if attempt >= 2 else Severity.MEDIUM
    if category in (ErrorCategory.TIMEOUT, ErrorCategory.NOT_FOUND):
        return Severity.MEDIUM
    return Severity.LOW


def _event_type_for(exc: BaseException) -> str:
    if isinstance(exc, IntegrityMismatch):
        return "checksum"
    if isinstance(exc, FilesystemError):
        return "filesystem"
    if isinstance(exc, TransientError):
        return "network"
    if isinstance(exc, NotFound):
        return "not_found"
    if isinstance(exc, ValidationError):
        return "validation"
    return type(exc).__name__.lower()


def _count_by(entries: Iterable[ErrorEntry], key: Callable[[ErrorEntry], Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for entry in entries:
        value = key(entry)
        name = getattr(value, "value", value) or "unknown"
        counts[name] = counts.get(name, 0) + 1
    return counts


class ErrorMonitor:
    def __init__(
        self,
        *,
        max_log_size: int = DEFAULT_MAX_LOG_SIZE,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _utcnow,
        store: Optional[JsonFileStore] = None,
        report_path: Optional[Path] = None,
        entries_path: Optional[Path] = None,
    ) -> None:
        self.max_log_size = max_log_size
        self.retention = retention
        self._clock = clock
        self._store = store
        self._report_path = report_path
        self._entries_path = entries_path
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._log: Deque[ErrorEntry] = deque(maxlen=max_log_size)
        self._patterns: Counter[Tuple[str, str, str]] = Counter()
        self._checksum_errors: Dict[str, List[ErrorEntry]] = {}
        self._source_failures: Counter[str] = Counter()
        self._alerts: List[PatternAlert] = []
        self._session = {
            "total_errors": 0,
            "integrity_errors": 0,
            "network_errors": 0,
            "server_errors": 0,
            "session_start": self._clock(),
        }
        self._tickers: List[Ticker] = []
        self._hydrate()

    # ------------------------------------------------------------------ ingest

    def record(self, event: ErrorEvent) -> Optional[ErrorEntry]:
        try:
            return self._record(event)
        except Exception:
            logger.exception("Error monitor failed to record event")
            return None

    def log_download_error(self, **fields: Any) -> Optional[ErrorEntry]:
        return self.record(ErrorEvent(**fields))

    def log_checksum_error(
        self,
        *,
        expected: Optional[str],
        actual: Optional[str],
        algorithm: Optional[str] = "sha1",
        **fields: Any,
    ) -> Optional[ErrorEntry]:
        message = f"Checksum validation failed: expected {expected}, got {actual}"
        return self.record(
            ErrorEvent(
                type="checksum",
                message=message,
                expected=expected,
                actual=actual,
                algorithm=algorithm,
                **fields,
            )
        )

    def record_exception(self, exc: BaseException, *, source: str, **fields: Any) -> Optional[ErrorEntry]:
        try:
            event = ErrorEvent(
                type=_event_type_for(exc),
                message=str(exc) or type(exc).__name__,
                source=source,
                http_status=getattr(exc, "http_status", None),
                expected=getattr(exc, "expected", None),
                actual=getattr(exc, "actual", None),
                algorithm=getattr(exc, "algorithm", None),
                error_type=type(exc).__name__,
                **fields,
            )
        except Exception:
            logger.exception("Error monitor could not describe %r", exc)
            return None
        return self.record(event)

    def _record(self, event: ErrorEvent) -> ErrorEntry:
        category = categorize(event)
        entry = ErrorEntry(
            id=f"err_{uuid.uuid4().hex[:12]}",
            timestamp=self._clock(),
            type=event.type,
            category=category,
            severity=determine_severity(category, event.attempt),
            message=event.message,
            source=event.source,
            mod_id=event.mod_id,
            mod_name=event.mod_name,
            attempt=event.attempt,
            total_attempts=event.total_attempts,
            context={
                "download_url": event.download_url,
                "file_path": event.file_path,
                "file_size": event.file_size,
                "http_status": event.http_status,
            },
            details={
                "error_type": event.error_type,
                "expected": event.expected,
                "actual": event.actual,
                "algorithm": event.algorithm,
            },
        )
        with self._lock:
            self._log.append(entry)
            self._update_statistics(entry)
            self._detect_patterns(entry)
        self._save_entries()

        logger.info(
            "Recorded %s error from %s (%s, severity=%s): %s",
            entry.category.value,
            entry.source,
            entry.type,
            entry.severity.value,
            entry.message,
        )
        return entry

    def _update_statistics(self, entry: ErrorEntry) -> None:
        self._session["total_errors"] += 1
        if entry.category is ErrorCategory.INTEGRITY:
            self._session["integrity_errors"] += 1
        elif entry.category in (ErrorCategory.CONNECTIVITY, ErrorCategory.TIMEOUT):
            self._session["network_errors"] += 1
        elif entry.category is ErrorCategory.SERVER_ERROR:
            self._session["server_errors"] += 1
        self._source_failures[entry.source] += 1

    def _detect_patterns(self, entry: ErrorEntry, announce: bool = True) -> None:
        pattern = entry.pattern
        self._patterns[pattern] += 1
        count = self._patterns[pattern]
        if count == PATTERN_ALERT_THRESHOLD:
            alert = PatternAlert(
                category=pattern[0],
                source=pattern[1],
                type=pattern[2],
                count=count,
                raised_at=entry.timestamp,
            )
            self._alerts.append(alert)
            if announce:
                logger.warning(
                    "High frequency error pattern detected: %s/%s/%s occurred %d times",
                    alert.category,
                    alert.source,
                    alert.type,
                    count,
                )

        if entry.category is ErrorCategory.INTEGRITY:
            file_key = f"{entry.mod_id or entry.context.get('file_path')}:{entry.source}"
            failures = self._checksum_errors.setdefault(file_key, [])
            failures.append(entry)
            if announce and len(failures) >= FILE_CHECKSUM_ALERT_THRESHOLD:
                logger.warning(
                    "Repeated checksum failures for %s (%d); file corruption suspected",
                    file_key,
                    len(failures),
                )

    # ------------------------------------------------------------------ queries

    def entries(self) -> List[ErrorEntry]:
        with self._lock:
            return list(self._log)

    def pattern_alerts(self) -> List[PatternAlert]:
        with self._lock:
            return list(self._alerts)

    def statistics(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            session = dict(self._session)
            log = list(self._log)
            patterns = self._patterns.most_common(10)
            checksum_issues = [
                {
                    "file_key": key,
                    "error_count": len(errors),
                    "latest_error": max(error.timestamp for error in errors),
                }
                for key, errors in self._checksum_errors.items()
                if errors
            ]
            source_failures = self._source_failures.most_common(10)

        elapsed_minutes = (now - session["session_start"]).total_seconds() / 60
        session["duration_seconds"] = elapsed_minutes * 60
        session["error_rate"] = session["total_errors"] / max(elapsed_minutes, 1.0)

        recent = [entry for entry in log if now - entry.timestamp < timedelta(hours=1)]
        checksum_issues.sort(key=lambda item: item["error_count"], reverse=True)
        return {
            "session": session,
            "recent": {
                "total_errors": len(recent),
                "by_category": _count_by(recent, lambda entry: entry.category),
                "by_severity": _count_by(recent, lambda entry: entry.severity),
                "by_source": _count_by(recent, lambda entry: entry.source),
            },
            "patterns": {
                "top_patterns": [{"pattern": "/".join(key), "count": count} for key, count in patterns],
                "checksum_issues": checksum_issues[:10],
                "source_failures": [{"source": source, "count": count} for source, count in source_failures],
            },
        }

    def recommendations(self, stats: Optional[Dict[str, Any]] = None) -> List[Recommendation]:
        session = (stats or self.statistics())["session"]
        found: List[Recommendation] = []
        if session["error_rate"] > 5:
            found.append(
                Recommendation(
                    priority="high",
                    type="high_error_rate",
                    title="High Error Rate Detected",
                    description=f"Current error rate: {session['error_rate']:.2f} errors/minute",
                    suggestion="Check system resources, network connectivity, and registry health",
                    action="investigate_system_health",
                )
            )
        if session["integrity_errors"] > 10:
            found.append(
                Recommendation(
                    priority="high",
                    type="checksum_issues",
                    title="Multiple Checksum Failures",
                    description=f"{session['integrity_errors']} checksum validation failures detected",
                    suggestion="Verify source file integrity and check for storage corruption",
                    action="verify_file_integrity",
                )
            )
        if session["network_errors"] > 20:
            found.append(
                Recommendation(
                    priority="medium",
                    type="network_issues",
                    title="Network Connectivity Issues",
                    description=f"{session['network_errors']} network-related errors detected",
                    suggestion="Check network connectivity, DNS resolution, and firewall settings",
                    action="check_network_infrastructure",
                )
            )
        if session["server_errors"] > 5:
            found.append(
                Recommendation(
                    priority="high",
                    type="server_issues",
                    title="Server-Side Issues",
                    description=f"{session['server_errors']} server errors detected",
                    suggestion="Check download server health and capacity",
                    action="investigate_server_health",
                )
            )
        return found

    def report(self, time_range: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        now = self._clock()
        cutoff = now - time_range
        relevant = [entry for entry in self.entries() if entry.timestamp > cutoff]

        hourly: Dict[str, int] = {}
        for entry in relevant:
            bucket = entry.timestamp.replace(minute=0, second=0, microsecond=0).isoformat()
            hourly[bucket] = hourly.get(bucket, 0) + 1

        return {
            "generated_at": now.isoformat(),
            "time_range_seconds": time_range.total_seconds(),
            "host": {
                "python": platform.python_version(),
                "platform": platform.platform(),
            },
            "summary": {
                "total_errors": len(relevant),
                "unique_patterns": len({entry.pattern for entry in relevant}),
                "affected_mods": len({entry.mod_id for entry in relevant if entry.mod_id}),
                "critical_errors": sum(1 for entry in relevant if entry.severity is Severity.CRITICAL),
                "high_severity_errors": sum(1 for entry in relevant if entry.severity is Severity.HIGH),
            },
            "breakdown": {
                "by_category": _count_by(relevant, lambda entry: entry.category),
                "by_severity": _count_by(relevant, lambda entry: entry.severity),
                "by_source": _count_by(relevant, lambda entry: entry.source),
                "by_hour": hourly,
            },
            "top_issues": {
                "most_problematic_mods": self._problematic_mods(relevant),
                "frequent_patterns": self._frequent_patterns(relevant),
                "checksum_failures": self._checksum_failures(relevant),
            },
            "recommendations": [item.model_dump() for item in self.recommendations()],
        }

    @staticmethod
    def _problematic_mods(entries: List[ErrorEntry]) -> List[Dict[str, Any]]:
        mods: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            if not entry.mod_id:
                continue
            mod = mods.setdefault(
                entry.mod_id,
                {
                    "mod_id": entry.mod_id,
                    "mod_name": entry.mod_name,
                    "error_count": 0,
                    "categories": set(),
                    "sources": set(),
                    "latest_error": entry.timestamp,
                },
            )
            mod["error_count"] += 1
            mod["categories"].add(entry.category.value)
            mod["sources"].add(entry.source)
            mod["latest_error"] = max(mod["latest_error"], entry.timestamp)
        ranked = sorted(mods.values(), key=lambda mod: mod["error_count"], reverse=True)[:10]
        return [
            {
                **mod,
                "categories": sorted(mod["categories"]),
                "sources": sorted(mod["sources"]),
                "latest_error": mod["latest_error"].isoformat(),
            }
            for mod in ranked
        ]

    @staticmethod
    def _frequent_patterns(entries: List[ErrorEntry]) -> List[Dict[str, Any]]:
        patterns: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        for entry in entries:
            item = patterns.setdefault(
                entry.pattern,
                {
                    "category": entry.category.value,
                    "source": entry.source,
                    "type": entry.type,
                    "count": 0,
                    "first_occurrence": entry.timestamp,
                    "last_occurrence": entry.timestamp,
                    "affected_mods": set(),
                },
            )
            item["count"] += 1
            item["first_occurrence"] = min(item["first_occurrence"], entry.timestamp)
            item["last_occurrence"] = max(item["last_occurrence"], entry.timestamp)
            if entry.mod_id:
                item["affected_mods"].add(entry.mod_id)
        ranked = sorted(patterns.values(), key=lambda item: item["count"], reverse=True)[:10]
        return [
            {
                "category": item["category"],
                "source": item["source"],
                "type": item["type"],
                "count": item["count"],
                "first_occurrence": item["first_occurrence"].isoformat(),
                "last_occurrence": item["last_occurrence"].isoformat(),
                "affected_mods_count": len(item["affected_mods"]),
            }
            for item in ranked
        ]

    @staticmethod
    def _checksum_failures(entries: List[ErrorEntry]) -> List[Dict[str, Any]]:
        failures: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            if entry.category is not ErrorCategory.INTEGRITY:
                continue
            key = f"{entry.mod_id}:{entry.source}"
            item = failures.setdefault(
                key,
                {
                    "mod_id": entry.mod_id,
                    "mod_name": entry.mod_name,
                    "source": entry.source,
                    "failure_count": 0,
                    "expected": set(),
                    "actual": set(),
                },
            )
            item["failure_count"] += 1
            if entry.details.get("expected"):
                item["expected"].add(entry.details["expected"])
            if entry.details.get("actual"):
                item["actual"].add(entry.details["actual"])
        ranked = sorted(failures.values(), key=lambda item: item["failure_count"], reverse=True)[:10]
        return [
            {
                "mod_id": item["mod_id"],
                "mod_name": item["mod_name"],
                "source": item["source"],
                "failure_count": item["failure_count"],
                "expected_checksums_count": len(item["expected"]),
                "actual_checksums_count": len(item["actual"]),
            }
            for item in ranked
        ]

    # ------------------------------------------------------------------ maintenance

    def prune(self) -> int:
        cutoff = self._clock() - self.retention
        with self._lock:
            before = len(self._log)
            kept = [entry for entry in self._log if entry.timestamp > cutoff]
            self._log = deque(kept, maxlen=self.max_log_size)
            for key in list(self._checksum_errors):
                remaining = [entry for entry in self._checksum_errors[key] if entry.timestamp > cutoff]
                if remaining:
                    self._checksum_errors[key] = remaining
                else:
                    del self._checksum_errors[key]
        removed = before - len(kept)
        if removed:
            logger.info("Pruned %d error entries older than %s", removed, self.retention)
            self._save_entries()
        return removed

    def periodic_report(self) -> Dict[str, Any]:
        report = self.report(time_range=timedelta(seconds=REPORT_INTERVAL_SECONDS))
        summary = report["summary"]
        if summary["total_errors"]:
            logger.info(
                "Periodic error report: %d errors (%d critical, %d high) across %d mods",
                summary["total_errors"],
                summary["critical_errors"],
                summary["high_severity_errors"],
                summary["affected_mods"],
            )
            for recommendation in report["recommendations"]:
                if recommendation["priority"] == "high":
                    logger.warning("Recommendation: %s - %s", recommendation["title"], recommendation["suggestion"])
        self._persist(report)
        return report

    def _persist(self, report: Dict[str, Any]) -> None:
        if self._store is None or self._report_path is None:
            return
        try:
            self._store.write(self._report_path, report)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist error report to %s: %s", self._report_path, exc)

    def _hydrate(self) -> None:
        """Replay the entries saved by earlier processes into the counters."""
        if self._store is None or self._entries_path is None:
            return
        data = self._store.read(self._entries_path)
        if data is None:
            return
        items = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(items, list):
            logger.warning("Ignoring malformed error log %s", self._entries_path)
            return

        cutoff = self._clock() - self.retention
        restored: List[ErrorEntry] = []
        for item in items:
            try:
                entry = ErrorEntry.model_validate(item)
            except ModelValidationError as exc:
                logger.warning("Skipping malformed error entry in %s: %s", self._entries_path, exc)
                continue
            if entry.timestamp > cutoff:
                restored.append(entry)
        restored = restored[-self.max_log_size :]

        for entry in restored:
            self._log.append(entry)
            self._update_statistics(entry)
            self._detect_patterns(entry, announce=False)
        if restored:
            earliest = min(entry.timestamp for entry in restored)
            self._session["session_start"] = min(self._session["session_start"], earliest)
            logger.debug("Restored %d error entries from %s", len(restored), self._entries_path)

    def _save_entries(self) -> None:
        if self._store is None or self._entries_path is None:
            return
        with self._save_lock:
            with self._lock:
                payload = {"entries": [entry.model_dump(mode="json") for entry in self._log]}
            try:
                self._store.write(self._entries_path, payload)
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("Could not persist error log to %s: %s", self._entries_path, exc)

    def start(
        self,
        *,
        prune_every: float = PRUNE_INTERVAL_SECONDS,
        report_every: float = REPORT_INTERVAL_SECONDS,
    ) -> None:
        if self._tickers:
            return
        self._tickers = [
            Ticker(prune_every, self.prune, name="error-monitor-prune"),
            Ticker(report_every, self.periodic_report, name="error-monitor-report"),
        ]
        for ticker in self._tickers:
            ticker.start()

    def stop(self) -> None:
        for ticker in self._tickers:
            ticker.stop(timeout=1.0)
        self._tickers = []

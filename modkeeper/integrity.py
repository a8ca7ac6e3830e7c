"""Streaming checksums, sidecar integrity records and corruption alerts.

Records live next to the files they describe::

    <dir>/.integrity/<name>.checksum.json
    <dir>/.integrity/corruption/<name>.corruption.json
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from .errors import FilesystemError, ValidationError
from .models import BatchVerifyResult, CorruptionAlert, IntegrityRecord, VerificationResult
from .monitor import ErrorMonitor
from .store import JsonFileStore

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
DEFAULT_ALGORITHM = "sha1"
INTEGRITY_DIRNAME = ".integrity"
CORRUPTION_DIRNAME = "corruption"

ProgressCallback = Callable[[Dict[str, Any]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _key(path: Path) -> str:
    return str(Path(path).expanduser().resolve())


def sidecar_path(path: Path) -> Path:
    return path.parent / INTEGRITY_DIRNAME / f"{path.name}.checksum.json"


def corruption_path(path: Path) -> Path:
    return path.parent / INTEGRITY_DIRNAME / CORRUPTION_DIRNAME / f"{path.name}.corruption.json"


def _check_algorithm(algorithm: str) -> str:
    name = (algorithm or "").lower()
    if name not in SUPPORTED_ALGORITHMS:
        raise ValidationError(
            f"Unsupported checksum algorithm {algorithm!r}; use one of {', '.join(SUPPORTED_ALGORITHMS)}."
        )
    return name


class IntegrityVerifier:
    def __init__(
        self,
        store: JsonFileStore,
        *,
        monitor: Optional[ErrorMonitor] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._monitor = monitor
        self._clock = clock
        self._records: Dict[str, IntegrityRecord] = {}
        self._alerts: Dict[str, CorruptionAlert] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        key = _key(path)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------ checksums

    def compute_checksum(self, path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
        name = _check_algorithm(algorithm)
        digest = hashlib.new(name)
        try:
            with Path(path).open("rb") as handle:
                for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                    digest.update(chunk)
        except OSError as exc:
            raise FilesystemError(f"Cannot read {path}: {exc}") from exc
        return digest.hexdigest()

    def store_checksum(
        self,
        path: Path,
        checksum: Optional[str] = None,
        algorithm: str = DEFAULT_ALGORITHM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IntegrityRecord:
        path = Path(path)
        name = _check_algorithm(algorithm)
        with self._locked(path):
            value = (checksum or self.compute_checksum(path, name)).lower()
            try:
                size = path.stat().st_size
            except OSError as exc:
                raise FilesystemError(f"Cannot stat {path}: {exc}") from exc
            record = IntegrityRecord(
                file_path=_key(path),
                checksum=value,
                algorithm=name,
                file_size=size,
                timestamp=self._clock(),
                metadata=dict(metadata or {}),
            )
            self._records[record.file_path] = record
            try:
                self._store.write(sidecar_path(path), record.model_dump(mode="json"))
            except OSError as exc:
                raise FilesystemError(f"Cannot write integrity record for {path}: {exc}") from exc
        logger.debug("Stored %s checksum for %s", name, path)
        return record

    def get_stored_checksum(self, path: Path) -> Optional[IntegrityRecord]:
        path = Path(path)
        key = _key(path)
        cached = self._records.get(key)
        if cached is not None:
            return cached
        data = self._store.read(sidecar_path(path))
        if data is None:
            return None
        try:
            record = IntegrityRecord.model_validate(data)
        except ModelValidationError as exc:
            logger.warning("Ignoring malformed integrity record for %s: %s", path, exc)
            return None
        self._records[key] = record
        return record

    # ------------------------------------------------------------------ verification

    def verify(
        self,
        path: Path,
        expected: Optional[str] = None,
        algorithm: Optional[str] = None,
        *,
        track_as: Optional[Path] = None,
    ) -> VerificationResult:
        """Check ``path`` against ``expected`` or its stored record.

        ``track_as`` names the file a mismatch is attributed to, e.g. the
        final name of a download that is still sitting at a temp path.
        """
        path = Path(path)
        started = time.monotonic()
        stored: Optional[IntegrityRecord] = None

        if expected is None:
            stored = self.get_stored_checksum(path)
            if stored is None:
                return VerificationResult(
                    file_path=str(path),
                    is_valid=None,
                    algorithm=algorithm,
                    reason="no_expected_checksum",
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            if algorithm and _check_algorithm(algorithm) != stored.algorithm:
                return VerificationResult(
                    file_path=str(path),
                    is_valid=None,
                    expected=stored.checksum,
                    algorithm=stored.algorithm,
                    reason="algorithm_mismatch",
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            expected = stored.checksum
            algorithm = stored.algorithm

        name = _check_algorithm(algorithm or DEFAULT_ALGORITHM)
        if not path.is_file():
            raise FilesystemError(f"File not found: {path}")
        actual = self.compute_checksum(path, name)
        is_valid = actual.lower() == expected.lower()

        result = VerificationResult(
            file_path=str(path),
            is_valid=is_valid,
            expected=expected.lower(),
            actual=actual,
            algorithm=name,
            reason=None if is_valid else "checksum_mismatch",
            duration_ms=(time.monotonic() - started) * 1000,
        )

        if is_valid:
            if stored is not None:
                self.store_checksum(path, actual, name, metadata=stored.metadata)
        else:
            attributed = Path(track_as) if track_as is not None else path
            logger.warning("Checksum mismatch for %s: expected %s, got %s", attributed, expected, actual)
            self.track_corruption(attributed, result)
            if self._monitor is not None:
                self._monitor.log_checksum_error(
                    expected=result.expected,
                    actual=actual,
                    algorithm=name,
                    source="integrity",
                    file_path=str(attributed),
                    mod_name=attributed.name,
                )
        return result

    # ------------------------------------------------------------------ corruption alerts

    def track_corruption(self, path: Path, result: VerificationResult) -> CorruptionAlert:
        path = Path(path)
        key = _key(path)
        now = self._clock()
        with self._locked(path):
            alert = self._alerts.get(key)
            if alert is None:
                alert = self._load_alert(path)
            if alert is None:
                alert = CorruptionAlert(
                    file_path=key,
                    expected=result.expected,
                    actual=result.actual,
                    algorithm=result.algorithm,
                    first_seen_at=now,
                    last_seen_at=now,
                    alert_count=1,
                )
            else:
                alert = alert.model_copy(
                    update={
                        "expected": result.expected,
                        "actual": result.actual,
                        "algorithm": result.algorithm,
                        "last_seen_at": now,
                        "alert_count": alert.alert_count + 1,
                    }
                )
            self._alerts[key] = alert
            try:
                self._store.write(corruption_path(path), alert.model_dump(mode="json"))
            except OSError as exc:
                logger.warning("Could not persist corruption alert for %s: %s", path, exc)
        logger.error("Corruption detected in %s (alert #%d)", path, alert.alert_count)
        return alert

    def _load_alert(self, path: Path) -> Optional[CorruptionAlert]:
        data = self._store.read(corruption_path(path))
        if data is None:
            return None
        try:
            return CorruptionAlert.model_validate(data)
        except ModelValidationError as exc:
            logger.warning("Ignoring malformed corruption alert for %s: %s", path, exc)
            return None

    def corruption_alerts(self, directory: Optional[Path] = None) -> List[CorruptionAlert]:
        """Known alerts; with ``directory`` also the alerts persisted there."""
        alerts = dict(self._alerts)
        if directory is not None:
            folder = Path(directory) / INTEGRITY_DIRNAME / CORRUPTION_DIRNAME
            for alert_file in sorted(folder.glob("*.corruption.json")) if folder.is_dir() else []:
                data = self._store.read(alert_file)
                if data is None:
                    continue
                try:
                    alert = CorruptionAlert.model_validate(data)
                except ModelValidationError as exc:
                    logger.warning("Ignoring malformed corruption alert %s: %s", alert_file, exc)
                    continue
                alerts.setdefault(alert.file_path, alert)
        return sorted(alerts.values(), key=lambda alert: alert.last_seen_at, reverse=True)

    def clear_corruption_alert(self, path: Path) -> bool:
        path = Path(path)
        with self._locked(path):
            cached = self._alerts.pop(_key(path), None)
            removed = self._store.delete(corruption_path(path))
        return cached is not None or removed

    # ------------------------------------------------------------------ batch

    def batch_verify(
        self,
        paths: Iterable[Path],
        on_progress: Optional[ProgressCallback] = None,
        *,
        expected: Optional[Mapping[Path, Tuple[str, str]]] = None,
    ) -> BatchVerifyResult:
        """Verify ``paths`` one after another.

        ``expected`` maps a path to ``(checksum, algorithm)``; paths without an
        entry are checked against their stored record.
        """
        files = [Path(path) for path in paths]
        known = {Path(path): value for path, value in (expected or {}).items()}
        summary = BatchVerifyResult(total=len(files))

        for index, path in enumerate(files, start=1):
            try:
                checksum, algorithm = known.get(path, (None, None))
                result = self.verify(path, checksum, algorithm)
            except (FilesystemError, ValidationError) as exc:
                result = VerificationResult(file_path=str(path), is_valid=None, reason="error", error=str(exc))
                summary.errors += 1
            else:
                if result.is_valid is True:
                    summary.valid += 1
                elif result.is_valid is False:
                    summary.invalid += 1
                else:
                    summary.unverifiable += 1
            summary.files.append(result)

            if on_progress is not None:
                on_progress(
                    {
                        "current": index,
                        "total": len(files),
                        "progress": round(index / len(files) * 100),
                        "current_file": str(path),
                        "result": result,
                    }
                )

        logger.info(
            "Batch verification: %d valid, %d invalid, %d unverifiable, %d errors",
            summary.valid,
            summary.invalid,
            summary.unverifiable,
            summary.errors,
        )
        return summary

from __future__ import annotations

import logging
import os
import socket
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Optional

from .errors import FilesystemError, IntegrityMismatch, ModkeeperError, NotFound, TransientError
from .integrity import DEFAULT_ALGORITHM, IntegrityVerifier
from .monitor import ErrorMonitor

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT = 60.0
CHUNK_SIZE = 64 * 1024
PART_SUFFIX = ".part"

ProgressCallback = Callable[[int, Optional[int]], None]


class ArtifactFetcher:
    """Download an artifact to a temp name, verify it and move it into place.

    The final path only ever holds a complete, verified file: the download
    lands in ``<file_name>.part`` and is swapped in with ``os.replace``.
    Nothing is retried here; callers decide whether a ``TransientError`` is
    worth another attempt.
    """

    def __init__(
        self,
        verifier: IntegrityVerifier,
        *,
        monitor: Optional[ErrorMonitor] = None,
        user_agent: str = "modkeeper/dev",
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
    ) -> None:
        self._verifier = verifier
        self._monitor = monitor
        self.user_agent = user_agent
        self.timeout = timeout

    def fetch(
        self,
        url: str,
        destination_dir: Path,
        file_name: str,
        expected_hash: Optional[str] = None,
        algorithm: str = DEFAULT_ALGORITHM,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        destination_dir = Path(destination_dir)
        final_path = destination_dir / file_name
        temp_path = destination_dir / f"{file_name}{PART_SUFFIX}"

        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            size = self._download(url, temp_path, on_progress)
            if expected_hash:
                result = self._verifier.verify(temp_path, expected_hash, algorithm, track_as=final_path)
                if not result.is_valid:
                    raise IntegrityMismatch(
                        f"Checksum validation failed for {file_name}: expected {result.expected}, got {result.actual}",
                        expected=result.expected or expected_hash,
                        actual=result.actual or "",
                        algorithm=result.algorithm or algorithm,
                    )
            os.replace(temp_path, final_path)
            self._verifier.store_checksum(
                final_path,
                expected_hash if expected_hash else None,
                algorithm,
                metadata={"source_url": url},
            )
        except IntegrityMismatch:
            # already reported to the monitor by the verifier
            _discard(temp_path)
            raise
        except OSError as exc:
            _discard(temp_path)
            error = FilesystemError(f"Cannot write {final_path}: {exc}")
            self._report(error, url, final_path)
            raise error from exc
        except ModkeeperError as exc:
            _discard(temp_path)
            self._report(exc, url, final_path)
            raise

        logger.info("Downloaded %s (%d bytes)", final_path.name, size)
        return final_path

    def _download(self, url: str, temp_path: Path, on_progress: Optional[ProgressCallback]) -> int:
        deadline = time.monotonic() + self.timeout
        request = urllib.request.Request(url, headers={"User-Agent": self.user_agent})
        logger.debug("Downloading %s -> %s", url, temp_path)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                length = response.headers.get("Content-Length") if response.headers else None
                total = int(length) if length and length.isdigit() else None
                received = 0
                with temp_path.open("wb") as handle:
                    while True:
                        if time.monotonic() > deadline:
                            raise TransientError(f"Download timed out after {self.timeout:.0f}s: {url}")
                        chunk = response.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        handle.write(chunk)
                        received += len(chunk)
                        if on_progress is not None:
                            on_progress(received, total)
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise NotFound(f"Not found: {url}") from exc
            raise TransientError(f"HTTP {exc.code} server error downloading {url}", http_status=exc.code) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TransientError(f"Download timed out: {url}") from exc
            if isinstance(exc.reason, FileNotFoundError):
                raise NotFound(f"Not found: {url}") from exc
            raise TransientError(f"Network error downloading {url}: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TransientError(f"Download timed out: {url}") from exc
        except ConnectionError as exc:
            raise TransientError(f"Network connection lost downloading {url}: {exc}") from exc
        return received

    def _report(self, exc: BaseException, url: str, final_path: Path) -> None:
        if self._monitor is None:
            return
        self._monitor.record_exception(
            exc,
            source="fetcher",
            download_url=url,
            file_path=str(final_path),
            mod_name=final_path.name,
        )


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove partial download %s: %s", path, exc)

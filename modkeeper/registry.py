from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote, urlencode

from .errors import NotFound, TransientError
from .models import VersionDescriptor, VersionFile

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0


class RegistryClient(Protocol):
    def list_versions(
        self, project_id: str, loader: str, game_version: str
    ) -> List[VersionDescriptor]:  # pragma: no cover - protocol
        ...

    def get_version(self, project_id: Optional[str], version_id: str) -> VersionDescriptor:  # pragma: no cover - protocol
        ...

    def get_project(self, identifier: str) -> Dict[str, Any]:  # pragma: no cover - protocol
        ...

    def get_version_by_hash(self, file_hash: str, algorithm: str = "sha1") -> VersionDescriptor:  # pragma: no cover - protocol
        ...


def _parse_timestamp(value: Any) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = str(value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def version_from_modrinth(data: Dict[str, Any]) -> VersionDescriptor:
    files = tuple(
        VersionFile(
            url=file.get("url") or "",
            filename=file.get("filename") or "",
            is_primary=bool(file.get("primary")),
            hashes={key: value for key, value in (file.get("hashes") or {}).items() if value},
            size=file.get("size"),
        )
        for file in data.get("files") or []
    )
    return VersionDescriptor(
        version_id=str(data.get("id")),
        project_id=data.get("project_id"),
        version_number=data.get("version_number") or str(data.get("id")),
        name=data.get("name"),
        is_stable=(data.get("version_type") or "release") == "release",
        published_at=_parse_timestamp(data.get("date_published")),
        loaders=frozenset(loader.lower() for loader in data.get("loaders") or []),
        game_versions=frozenset(data.get("game_versions") or []),
        files=files,
    )


class ModrinthClient:
    """Registry client for the Modrinth v2 API."""

    def __init__(
        self,
        api_base: str = "https://api.modrinth.com/v2",
        *,
        user_agent: str = "modkeeper/dev",
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.user_agent = user_agent
        self.timeout = timeout

    def list_versions(self, project_id: str, loader: str, game_version: str) -> List[VersionDescriptor]:
        params: Dict[str, Any] = {}
        if loader:
            params["loaders"] = json.dumps([loader])
        if game_version:
            params["game_versions"] = json.dumps([game_version])
        query = f"?{urlencode(params)}" if params else ""
        url = f"{self.api_base}/project/{quote(project_id, safe='')}/version{query}"
        payload = self._get_json(url)
        if not isinstance(payload, list):
            raise TransientError(f"Unexpected version list payload from {url}")
        return [version_from_modrinth(item) for item in payload]

    def get_version(self, project_id: Optional[str], version_id: str) -> VersionDescriptor:
        url = f"{self.api_base}/version/{quote(version_id, safe='')}"
        version = version_from_modrinth(self._get_json(url))
        if project_id and version.project_id and version.project_id != project_id:
            raise NotFound(f"Version {version_id} does not belong to project {project_id}.")
        return version

    def get_project(self, identifier: str) -> Dict[str, Any]:
        url = f"{self.api_base}/project/{quote(identifier, safe='')}"
        return self._get_json(url)

    def get_version_by_hash(self, file_hash: str, algorithm: str = "sha1") -> VersionDescriptor:
        """The version that published a file with this hash."""
        query = urlencode({"algorithm": algorithm})
        url = f"{self.api_base}/version_file/{quote(file_hash.lower(), safe='')}?{query}"
        return version_from_modrinth(self._get_json(url))

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }

    def _get_json(self, url: str) -> Any:
        request = urllib.request.Request(url, headers=self._headers())
        logger.debug("GET %s", url)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            message = detail or exc.reason
            if exc.code == 404:
                raise NotFound(f"Not found: {url}") from exc
            raise TransientError(f"HTTP {exc.code} error fetching {url}: {message}", http_status=exc.code) from exc
        except urllib.error.URLError as exc:
            raise TransientError(f"Network error fetching {url}: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TransientError(f"Request timed out fetching {url}") from exc

        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransientError(f"Invalid JSON payload from {url}: {exc}") from exc

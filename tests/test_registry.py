"""Tests for the Modrinth client with urlopen replaced."""

from __future__ import annotations

import io
import json
import socket
import urllib.error
import urllib.request
from typing import Any, Callable, List

import pytest

from modkeeper.errors import NotFound, TransientError
from modkeeper.registry import ModrinthClient, version_from_modrinth

VERSION_PAYLOAD = {
    "id": "AbCd1234",
    "project_id": "AANobbMI",
    "name": "Sodium 0.6.0",
    "version_number": "mc1.21.1-0.6.0-fabric",
    "version_type": "beta",
    "date_published": "2024-09-01T12:00:00Z",
    "loaders": ["Fabric", "quilt"],
    "game_versions": ["1.21", "1.21.1"],
    "files": [
        {
            "url": "https://cdn.modrinth.com/data/AANobbMI/versions/AbCd1234/sodium-extra.jar",
            "filename": "sodium-extra.jar",
            "primary": False,
            "hashes": {"sha1": "1" * 40},
            "size": 10,
        },
        {
            "url": "https://cdn.modrinth.com/data/AANobbMI/versions/AbCd1234/sodium.jar",
            "filename": "sodium.jar",
            "primary": True,
            "hashes": {"sha1": "2" * 40, "sha512": "3" * 128},
            "size": 20,
        },
    ],
}


class _Response(io.BytesIO):
    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class FakeUrlopen:
    def __init__(self) -> None:
        self.requests: List[urllib.request.Request] = []
        self.reply: Callable[[urllib.request.Request], _Response] = lambda request: _Response(b"[]")

    def __call__(self, request: urllib.request.Request, timeout: float = 0) -> _Response:
        self.requests.append(request)
        return self.reply(request)


@pytest.fixture
def urlopen(monkeypatch: pytest.MonkeyPatch) -> FakeUrlopen:
    """Replace urllib's urlopen; tests set ``urlopen.reply``."""
    fake = FakeUrlopen()
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


class TestVersionMapping:
    def test_maps_core_fields(self) -> None:
        version = version_from_modrinth(VERSION_PAYLOAD)
        assert version.version_id == "AbCd1234"
        assert version.project_id == "AANobbMI"
        assert version.is_stable is False
        assert version.loaders == frozenset({"fabric", "quilt"})
        assert "1.21.1" in version.game_versions
        assert version.published_at.year == 2024

    def test_primary_file_and_preferred_hash(self) -> None:
        primary = version_from_modrinth(VERSION_PAYLOAD).primary_file
        assert primary.filename == "sodium.jar"
        assert primary.hash_algorithm == "sha512"
        assert primary.hash == "3" * 128

    def test_release_is_stable(self) -> None:
        payload = dict(VERSION_PAYLOAD, version_type="release")
        assert version_from_modrinth(payload).is_stable is True


class TestModrinthClient:
    def test_list_versions_sends_filters_and_user_agent(self, urlopen: FakeUrlopen) -> None:
        urlopen.reply = lambda request: _Response(json.dumps([VERSION_PAYLOAD]).encode())
        client = ModrinthClient("https://api.example.test/v2", user_agent="modkeeper-tests")

        versions = client.list_versions("sodium", "fabric", "1.21.1")

        assert [version.version_id for version in versions] == ["AbCd1234"]
        url = urlopen.requests[0].full_url
        assert url.startswith("https://api.example.test/v2/project/sodium/version?")
        assert "loaders=%5B%22fabric%22%5D" in url
        assert "game_versions=%5B%221.21.1%22%5D" in url
        assert urlopen.requests[0].get_header("User-agent") == "modkeeper-tests"

    def test_404_is_not_found(self, urlopen: FakeUrlopen) -> None:
        def reply(request):
            raise urllib.error.HTTPError(request.full_url, 404, "Not Found", None, io.BytesIO(b""))

        urlopen.reply = reply
        with pytest.raises(NotFound):
            ModrinthClient().list_versions("missing", "fabric", "1.21.1")

    def test_server_error_is_transient(self, urlopen: FakeUrlopen) -> None:
        def reply(request):
            raise urllib.error.HTTPError(request.full_url, 503, "Unavailable", None, io.BytesIO(b"busy"))

        urlopen.reply = reply
        with pytest.raises(TransientError) as excinfo:
            ModrinthClient().get_version("sodium", "AbCd1234")
        assert excinfo.value.http_status == 503

    def test_network_failure_is_transient(self, urlopen: FakeUrlopen) -> None:
        def reply(request):
            raise urllib.error.URLError("Name or service not known")

        urlopen.reply = reply
        with pytest.raises(TransientError):
            ModrinthClient().get_project("sodium")

    def test_socket_timeout_is_transient(self, urlopen: FakeUrlopen) -> None:
        def reply(request):
            raise socket.timeout("timed out")

        urlopen.reply = reply
        with pytest.raises(TransientError, match="timed out"):
            ModrinthClient().get_project("sodium")

    def test_malformed_json_is_transient(self, urlopen: FakeUrlopen) -> None:
        urlopen.reply = lambda request: _Response(b"<html>")
        with pytest.raises(TransientError):
            ModrinthClient().get_project("sodium")

    def test_get_version_checks_project(self, urlopen: FakeUrlopen) -> None:
        urlopen.reply = lambda request: _Response(json.dumps(VERSION_PAYLOAD).encode())
        client = ModrinthClient()
        assert client.get_version("AANobbMI", "AbCd1234").version_number == "mc1.21.1-0.6.0-fabric"
        with pytest.raises(NotFound):
            client.get_version("someone-else", "AbCd1234")

    def test_get_version_by_hash(self, urlopen: FakeUrlopen) -> None:
        urlopen.reply = lambda request: _Response(json.dumps(VERSION_PAYLOAD).encode())
        version = ModrinthClient("https://api.example.test/v2").get_version_by_hash("2" * 40)

        assert version.project_id == "AANobbMI"
        assert version.version_id == "AbCd1234"
        assert urlopen.requests[0].full_url == (
            f"https://api.example.test/v2/version_file/{'2' * 40}?algorithm=sha1"
        )

    def test_unknown_hash_is_not_found(self, urlopen: FakeUrlopen) -> None:
        def reply(request):
            raise urllib.error.HTTPError(request.full_url, 404, "Not Found", None, io.BytesIO(b""))

        urlopen.reply = reply
        with pytest.raises(NotFound):
            ModrinthClient().get_version_by_hash("f" * 40)

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

import pytest
import requests

from speedrun.adapters.http import fetch
from speedrun.adapters.http.fetch import describe_download, download_file
from speedrun.adapters.process.jobs import ExternalJobError


class _FakeResponse:
    def __init__(self, status_code: int, chunks: list[bytes]) -> None:
        self.status_code = status_code
        self._chunks = chunks

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        yield from self._chunks


def test_download_writes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, Any] = {}

    def fake_get(url: str, **kwargs: Any) -> _FakeResponse:
        seen["url"] = url
        seen.update(kwargs)
        return _FakeResponse(200, [b'{"a": 1}\n', b"", b'{"b": 2}\n'])

    monkeypatch.setattr(fetch.requests, "get", fake_get)
    dest = tmp_path / "base" / "identity_conversations.jsonl"

    out = download_file("https://example.test/identity.jsonl", dest, stage="identity-fetch")

    assert out == dest
    assert dest.read_bytes() == b'{"a": 1}\n{"b": 2}\n'
    assert seen["url"] == "https://example.test/identity.jsonl"
    assert seen["stream"] is True
    assert not dest.with_suffix(".jsonl.part").exists()


def test_http_error_carries_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetch.requests, "get", lambda url, **kw: _FakeResponse(404, []))
    dest = tmp_path / "identity.jsonl"

    with pytest.raises(ExternalJobError) as info:
        download_file("https://example.test/missing", dest, stage="identity-fetch")

    assert info.value.exit_code == 404
    assert info.value.stage == "identity-fetch"
    assert not dest.exists()


def test_transport_error_has_no_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(url: str, **kwargs: Any) -> _FakeResponse:
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(fetch.requests, "get", boom)
    dest = tmp_path / "identity.jsonl"

    with pytest.raises(ExternalJobError) as info:
        download_file("https://example.test/x", dest, stage="identity-fetch")

    assert info.value.exit_code is None
    assert "no route to host" in str(info.value)
    assert not dest.exists()


def test_describe_download_touches_nothing(tmp_path: Path) -> None:
    dest = tmp_path / "identity.jsonl"
    assert describe_download("https://example.test/x", dest, stage="identity-fetch") == dest
    assert not dest.exists()


class _DiskFullResponse(_FakeResponse):
    def iter_content(self, chunk_size: int) -> Iterator[bytes]:
        yield b'{"a": 1}\n'
        raise OSError(28, "No space left on device")


def test_local_write_error_removes_partial_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(fetch.requests, "get", lambda url, **kw: _DiskFullResponse(200, []))
    dest = tmp_path / "identity.jsonl"

    with pytest.raises(ExternalJobError) as info:
        download_file("https://example.test/x", dest, stage="identity-fetch")

    assert info.value.stage == "identity-fetch"
    assert info.value.exit_code is None
    assert "No space left on device" in str(info.value)
    assert not dest.exists()
    assert not dest.with_suffix(".jsonl.part").exists()

"""Tests for the file:// transport."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from MossFetcher.file_transport import FileTransport, file_uri_to_path, is_file_uri


@pytest.mark.parametrize(
    ("uri", "expected"),
    [
        ("file:///tmp/a%20b.txt", Path("/tmp/a b.txt")),
        ("file://localhost/tmp/x", Path("/tmp/x")),
        ("file://README.md", Path("README.md")),
        ("file://docs/Guide.md", Path("docs/Guide.md")),
    ],
)
def test_file_uri_to_path(uri: str, expected: Path) -> None:
    assert file_uri_to_path(uri) == expected


def test_is_file_uri() -> None:
    assert is_file_uri("FILE:///x")
    assert not is_file_uri("https://example.org/file")


def test_serves_file_in_chunks(tmp_path: Path) -> None:
    source = tmp_path / "data.bin"
    source.write_bytes(b"abcdefghij")
    response = FileTransport(chunk_size=4).request(source.as_uri())
    try:
        assert response.status_code == 200
        assert response.headers["Content-Length"] == "10"
        assert list(response.iter_bytes()) == [b"abcd", b"efgh", b"ij"]
    finally:
        response.close()


def test_relative_form_keeps_case(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    Path("README.md").write_text("hello")
    response = FileTransport().request("file://README.md")
    try:
        assert response.status_code == 200
        assert response.read() == b"hello"
    finally:
        response.close()


def test_error_statuses(tmp_path: Path) -> None:
    transport = FileTransport()
    assert transport.request((tmp_path / "missing").as_uri()).status_code == 404
    assert transport.request(tmp_path.as_uri()).status_code == 400
    assert transport.request((tmp_path / "x").as_uri(), method="PUT").status_code == 405


def test_head_reports_size_without_body(tmp_path: Path) -> None:
    source = tmp_path / "h.txt"
    source.write_bytes(b"12345")
    response = FileTransport().request(source.as_uri(), method="HEAD")
    assert response.status_code == 200
    assert response.headers["Content-Length"] == "5"


def test_handle_request_without_extension(tmp_path: Path) -> None:
    source = tmp_path / "plain.txt"
    source.write_bytes(b"plain")
    request = httpx.Request("GET", source.as_uri())
    response = FileTransport().handle_request(request)
    try:
        assert response.read() == b"plain"
    finally:
        response.close()


def test_null_byte_path_is_bad_request(tmp_path: Path) -> None:
    uri = tmp_path.as_uri() + "/a%00b"
    assert FileTransport().request(uri).status_code == 400

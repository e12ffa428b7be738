"""
Общие фикстуры.

Асинхронные тесты гоняем через pytest-плагин anyio, только на asyncio —
сервер написан на нём.
"""
import asyncio
from typing import Dict, Tuple

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _read_response(reader: asyncio.StreamReader) -> Tuple[int, Dict[str, str], bytes]:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split(" ")[1])

    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()

    length = int(headers.get("content-length", 0))
    body = await reader.readexactly(length) if length else b""
    return status, headers, body


@pytest.fixture
def read_response():
    """(status, headers, body) одного ответа из потока."""
    return _read_response


@pytest.fixture
def get_request() -> bytes:
    return (
        b"GET /api/users?page=1&limit=10 HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Accept: application/json\r\n"
        b"\r\n"
    )


@pytest.fixture
def urlencoded_request() -> bytes:
    body = b"name=John+Smith&email=john%40example.com&empty="
    return (
        b"POST /signup HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Content-Type: application/x-www-form-urlencoded\r\n"
        + f"Content-Length: {len(body)}\r\n".encode()
        + b"\r\n"
        + body
    )


BOUNDARY = "----pytestBoundary7MA4YWxk"


@pytest.fixture
def multipart_body() -> bytes:
    return (
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="title"\r\n'
        "\r\n"
        "hello\r\n"
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="upload"; filename="notes.txt"\r\n'
        "Content-Type: text/plain\r\n"
        "\r\n"
        "line one\r\nline two\r\n"
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="empty"\r\n'
        "\r\n"
        "\r\n"
        f"--{BOUNDARY}--\r\n"
    ).encode()


@pytest.fixture
def multipart_request(multipart_body: bytes) -> bytes:
    return (
        b"POST /upload HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        + f"Content-Type: multipart/form-data; boundary={BOUNDARY}\r\n".encode()
        + f"Content-Length: {len(multipart_body)}\r\n".encode()
        + b"\r\n"
        + multipart_body
    )

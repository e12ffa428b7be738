"""
Запись ответов.

Вне ядра: статус-строка, заголовки, файлы, стандартные 404/500.
Всё пишется через сессию — она помнит, что ответ уже начат,
и не даст отправить второй поверх первого.
"""
import html
import mimetypes
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Tuple, Union

if TYPE_CHECKING:
    from webserver.client_handler import ConnectionSession

HeaderList = Iterable[Tuple[str, str]]

STATUS_REASONS = {
    100: "Continue",
    101: "Switching Protocols",
    200: "OK",
    201: "Created",
    202: "Accepted",
    204: "No Content",
    206: "Partial Content",
    301: "Moved Permanently",
    302: "Found",
    304: "Not Modified",
    307: "Temporary Redirect",
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    502: "Bad Gateway",
    503: "Service Unavailable",
    505: "HTTP Version Not Supported",
}


def reason_phrase(status: int) -> str:
    return STATUS_REASONS.get(status, "Unknown")


def format_response_head(status: int, headers: HeaderList = ()) -> bytes:
    """
    HTTP/1.1 200 OK\r\n
    Content-Type: text/plain\r\n
    \r\n
    """
    lines = [f"HTTP/1.1 {status} {reason_phrase(status)}"]
    lines.extend(f"{name}: {value}" for name, value in headers)
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


async def send_response(
    session: "ConnectionSession",
    status: int,
    headers: HeaderList = (),
    body: Union[bytes, str] = b"",
) -> None:
    """Ответ целиком. Content-Length проставляем сами, если его нет."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    headers = list(headers)
    if not any(name.lower() == "content-length" for name, _ in headers):
        headers.append(("Content-Length", str(len(body))))

    session.begin_response(status)
    session.write(format_response_head(status, headers))
    if body:
        session.write(body)
    await session.drain()


async def send_error(
    session: "ConnectionSession",
    status: int,
    message: str,
    close: bool = True,
) -> None:
    """Plain-text объяснение ошибки."""
    headers = [("Content-Type", "text/plain; charset=utf-8")]
    if close:
        headers.append(("Connection", "close"))
    body = f"{status} {reason_phrase(status)}\n{message}\n"
    await send_response(session, status, headers, body)


def in_directory(parent: Union[str, Path], path: Union[str, Path]) -> bool:
    """Не даёт выйти за корень через ../ и симлинки."""
    parent = os.path.realpath(parent)
    target = os.path.realpath(path)
    return os.path.commonpath([parent, target]) == parent


def guess_mime_type(path: Union[str, Path]) -> str:
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type or "application/octet-stream"


async def send_file(
    session: "ConnectionSession",
    path: Union[str, Path],
    mime_type: Optional[str] = None,
) -> None:
    """
    Отдаёт файл целиком.

    Файлы читаем в память — стриминга ответов у нас нет.
    """
    path = Path(path)
    if not path.is_file():
        await send_error(session, 404, f"File not found: {path.name}")
        return
    body = path.read_bytes()
    await send_response(
        session,
        200,
        [("Content-Type", mime_type or guess_mime_type(path))],
        body,
    )


async def send_directory_listing(
    session: "ConnectionSession",
    directory: Union[str, Path],
    url_path: str,
) -> None:
    """Простой HTML-листинг каталога."""
    directory = Path(directory)
    base = url_path.rstrip("/")
    items = []
    for entry in sorted(directory.iterdir()):
        name = entry.name + ("/" if entry.is_dir() else "")
        items.append(f'<li><a href="{html.escape(base + "/" + name)}">{html.escape(name)}</a></li>')

    body = (
        f"<html><body><h1>{html.escape(url_path)}</h1>"
        f"<ul>{''.join(items)}</ul></body></html>"
    )
    await send_response(session, 200, [("Content-Type", "text/html; charset=utf-8")], body)

"""
Инкрементальный парсер HTTP/1.1 запросов.

Байты приходят кусками. Парсер не читает из сокета сам —
ему отдают Request с накопленным буфером, он двигает cursor
и говорит: Incomplete (ждём ещё), Complete или Fatal.

Буфер только растёт, разобранная часть отмечается cursor'ом.
Если разделитель ещё не пришёл — cursor не двигаем,
хвост пересканируется на следующем чанке.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional, Union

from webserver.errors import (
    MalformedHeader,
    MalformedStartLine,
    ParseError,
    RequestTooLarge,
)
from webserver.utils.headers import (
    METHODS,
    Entry,
    parse_header_line,
    parse_params,
    parse_query,
    parse_start_line,
)
from webserver.utils.multipart import parse_multipart_field

if TYPE_CHECKING:
    from webserver.client_handler import ConnectionSession

CRLF = b"\r\n"

# 1MB хватает для форм
DEFAULT_MAX_REQUEST_BYTES = 1024 * 1024


class BodyContext(Enum):
    NONE = "none"
    URLENCODED = "urlencoded"
    MULTIPART = "multipart"


class ParserState(Enum):
    # start line разбирается тем же циклом, что и заголовки
    READING_HEADERS = "reading-headers"
    READING_URLENCODED_BODY = "reading-urlencoded-body"
    READING_MULTIPART_BODY = "reading-multipart-body"
    COMPLETE = "complete"


MEDIA_TYPES = {
    "application/x-www-form-urlencoded": BodyContext.URLENCODED,
    "multipart/form-data": BodyContext.MULTIPART,
}


@dataclass
class Request:
    """
    Один HTTP-запрос на соединении.

    headers — упорядоченный список (key, value), дубли разрешены,
    при поиске побеждает первый. Туда же попадают метод (ключ "GET" и т.п.,
    значение — path) и параметры из query/тела.
    """
    pending: bytearray = field(default_factory=bytearray)
    cursor: int = 0
    body_context: BodyContext = BodyContext.NONE
    boundary: Optional[str] = None
    headers: List[Entry] = field(default_factory=list)
    state: ParserState = ParserState.READING_HEADERS
    version: Optional[str] = None
    body: bytes = b""
    # из строки заголовка Content-Length, не из общего списка
    content_length: Optional[int] = None
    session: Optional["ConnectionSession"] = field(default=None, repr=False, compare=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Первое значение по ключу, без учёта регистра (кроме метода)."""
        values = self.get_all(key)
        return values[0] if values else default

    def get_all(self, key: str) -> List[Any]:
        if key in METHODS:
            # метод берётся только из start line: параметр ?POST=... методом не считается
            return [self.path] if self.method == key else []
        key = key.lower()
        skip = 1 if self.method else 0
        return [v for k, v in self.headers[skip:] if k.lower() == key]

    @property
    def method(self) -> Optional[str]:
        if self.headers and self.headers[0][0] in METHODS:
            return self.headers[0][0]
        return None

    @property
    def path(self) -> Optional[str]:
        return self.headers[0][1] if self.method else None

    @property
    def is_complete(self) -> bool:
        return self.state is ParserState.COMPLETE

    def next_request(self) -> "Request":
        """
        Новый Request для следующего запроса на том же соединении.

        Всё, что пришло после конца текущего сообщения (pipelining),
        переезжает в буфер нового, cursor снова 0.
        """
        return Request(pending=bytearray(self.pending[self.cursor:]), session=self.session)


@dataclass
class Incomplete:
    """Нужно ещё данных."""


@dataclass
class Complete:
    request: Request


@dataclass
class Fatal:
    error: ParseError


ParseOutcome = Union[Incomplete, Complete, Fatal]


def _parse_content_length(value: str) -> int:
    try:
        length = int(value)
    except ValueError:
        raise MalformedHeader(f"Invalid Content-Length: {value!r}")
    if length < 0:
        raise MalformedHeader(f"Invalid Content-Length: {value!r}")
    return length


class RequestParser:
    """
    Конечный автомат разбора запроса.

    Использование:
        request.pending.extend(chunk)
        outcome = parser.advance(request)
        if isinstance(outcome, Complete): ...

    advance() никогда не блокируется и не кидает ParseError наружу —
    ошибки приходят как Fatal.
    """

    def __init__(self, max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES):
        self.max_request_bytes = max_request_bytes

    def advance(self, request: Request) -> ParseOutcome:
        if request.is_complete:
            return Complete(request)
        try:
            if len(request.pending) > self.max_request_bytes:
                raise RequestTooLarge(
                    f"Request exceeds {self.max_request_bytes} bytes"
                )
            return self._scan(request)
        except ParseError as e:
            return Fatal(e)

    def _delimiter(self, request: Request) -> bytes:
        if request.state is ParserState.READING_MULTIPART_BODY:
            return CRLF + b"--" + request.boundary.encode("latin-1")
        return CRLF

    def _scan(self, request: Request) -> ParseOutcome:
        buf = request.pending
        while True:
            if request.state is ParserState.READING_URLENCODED_BODY:
                return self._read_urlencoded(request)

            delimiter = self._delimiter(request)
            idx = buf.find(delimiter, request.cursor)
            if idx == -1:
                return Incomplete()

            if request.state is ParserState.READING_MULTIPART_BODY:
                done = self._read_multipart_part(request, idx, delimiter)
                if done is None:
                    return Incomplete()
                if done:
                    return self._complete(request)
                continue

            if idx == request.cursor:
                if not request.headers:
                    # пустые строки перед start line игнорируем (RFC 7230, 3.5)
                    request.cursor += len(CRLF)
                    continue
                outcome = self._end_of_headers(request)
                if outcome is not None:
                    return outcome
                continue

            line = bytes(buf[request.cursor:idx]).decode("latin-1")
            self._read_header_line(request, line)
            request.cursor = idx + len(CRLF)

    def _read_header_line(self, request: Request, line: str) -> None:
        if not request.headers:
            start = parse_start_line(line)
            if start is None:
                raise MalformedStartLine(f"Malformed request line: {line!r}")
            request.version = start[3]
            # query-параметры на разбор тела не влияют
            request.headers.extend(parse_header_line(line))
            return

        entries = parse_header_line(line)
        for key, value in entries:
            if key == "content-type":
                self._read_content_type(request, value)
            elif key == "content-length":
                length = _parse_content_length(value)
                if request.content_length not in (None, length):
                    raise MalformedHeader("Conflicting Content-Length headers")
                request.content_length = length
        request.headers.extend(entries)

    def _read_content_type(self, request: Request, value: str) -> None:
        media_type, params = parse_params(value)
        context = MEDIA_TYPES.get(media_type)
        if context is BodyContext.MULTIPART:
            boundary = params.get("boundary")
            if not boundary:
                raise MalformedHeader("multipart/form-data without boundary")
            request.boundary = boundary
        if context is not None:
            request.body_context = context

    def _end_of_headers(self, request: Request) -> Optional[ParseOutcome]:
        """Пустая строка на cursor — конец блока заголовков."""
        context = request.body_context

        if context is BodyContext.MULTIPART:
            # cursor оставляем на \r\n: вместе с первой строкой тела
            # это как раз разделитель \r\n--<boundary>
            request.state = ParserState.READING_MULTIPART_BODY
            return None

        request.cursor += len(CRLF)

        if context is BodyContext.URLENCODED:
            request.state = ParserState.READING_URLENCODED_BODY
            return self._read_urlencoded(request)

        # тела нет, но клиент мог прислать Content-Length (JSON и т.п.)
        length = request.content_length or 0
        if length:
            if len(request.pending) - request.cursor < length:
                # откатываемся на пустую строку и ждём тело
                request.cursor -= len(CRLF)
                return Incomplete()
            request.body = bytes(request.pending[request.cursor:request.cursor + length])
            request.cursor += length
        return self._complete(request)

    def _read_urlencoded(self, request: Request) -> ParseOutcome:
        length = request.content_length
        available = len(request.pending) - request.cursor
        if length is None:
            length = available
        elif available < length:
            return Incomplete()

        body = bytes(request.pending[request.cursor:request.cursor + length])
        request.body = body
        request.headers.extend(parse_query(body.decode("latin-1")))
        request.cursor += length
        return self._complete(request)

    def _read_multipart_part(self, request: Request, idx: int, delimiter: bytes) -> Optional[bool]:
        """
        Разбирает часть между cursor и разделителем.

        None — не хватает байт после разделителя, True — это был
        последний (--<boundary>--), False — читаем дальше.
        """
        buf = request.pending
        after = idx + len(delimiter)
        # после разделителя либо "--" (конец), либо "\r\n" (следующая часть)
        if len(buf) < after + 2:
            return None

        if idx > request.cursor:
            parsed = parse_multipart_field(bytes(buf[request.cursor:idx]))
            if parsed is not None:
                request.headers.append(parsed)

        if buf[after:after + 2] == b"--":
            end = after + 2
            if buf[end:end + 2] == CRLF:
                end += 2
            request.cursor = end
            return True

        request.cursor = after
        return False

    def _complete(self, request: Request) -> Complete:
        request.state = ParserState.COMPLETE
        return Complete(request)

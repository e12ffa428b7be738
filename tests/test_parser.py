"""
Инкрементальный парсер запросов.

Главное свойство: как ни режь байты на чанки, результат тот же.
"""
import pytest

from webserver.errors import MalformedHeader, MalformedStartLine, RequestTooLarge, UnsupportedAuthScheme
from webserver.utils.http import (
    BodyContext,
    Complete,
    Fatal,
    Incomplete,
    ParserState,
    Request,
    RequestParser,
)
from webserver.utils.multipart import MultipartField

from conftest import BOUNDARY


def feed(chunks, parser=None):
    """Скармливает чанки по одному, как пришли бы из сокета."""
    parser = parser or RequestParser()
    request = Request()
    outcome = None
    for i, chunk in enumerate(chunks):
        request.pending.extend(chunk)
        outcome = parser.advance(request)
        if i < len(chunks) - 1:
            assert isinstance(outcome, Incomplete), f"completed early at chunk {i}"
    return request, outcome


def snapshot(request):
    return request.headers, request.body, request.cursor, request.version


def split_at(data, *points):
    bounds = [0, *points, len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:])]


class TestSimpleRequests:

    def test_get(self, get_request):
        request, outcome = feed([get_request])

        assert isinstance(outcome, Complete)
        assert outcome.request is request
        assert request.method == "GET"
        assert request.path == "/api/users"
        assert request.version == "HTTP/1.1"
        assert request.headers == [
            ("GET", "/api/users"),
            ("page", "1"),
            ("limit", "10"),
            ("host", "localhost:8080"),
            ("user-agent", "pytest"),
            ("accept", "application/json"),
        ]
        assert request.body_context is BodyContext.NONE
        assert request.cursor == len(get_request)

    def test_lookup_is_case_insensitive_and_first_wins(self):
        raw = b"GET / HTTP/1.1\r\nX-Dup: first\r\nx-dup: second\r\n\r\n"
        request, _ = feed([raw])

        assert request.get("X-DUP") == "first"
        assert request.get_all("x-dup") == ["first", "second"]
        assert request.get("missing", "default") == "default"

    def test_headers_without_end_are_incomplete(self):
        request, outcome = feed([b"GET / HTTP/1.1\r\nHost: x\r\n"])

        assert isinstance(outcome, Incomplete)
        assert request.state is ParserState.READING_HEADERS
        # обе строки разобраны, пустой ещё нет
        assert request.cursor == len(b"GET / HTTP/1.1\r\nHost: x\r\n")

    def test_unterminated_line_does_not_advance(self):
        request, outcome = feed([b"GET / HTTP/1.1\r\nHo"])

        assert isinstance(outcome, Incomplete)
        assert request.cursor == len(b"GET / HTTP/1.1\r\n")
        assert request.headers == [("GET", "/")]

    def test_leading_empty_lines_are_ignored(self):
        request, outcome = feed([b"\r\n\r\nGET / HTTP/1.1\r\n\r\n"])
        assert isinstance(outcome, Complete)
        assert request.headers == [("GET", "/")]

    def test_raw_body_with_content_length(self):
        raw = b'PUT /data HTTP/1.1\r\nContent-Type: application/json\r\nContent-Length: 13\r\n\r\n{"a": [1, 2]}'
        request, outcome = feed(split_at(raw, len(raw) - 5))

        assert isinstance(outcome, Complete)
        assert request.body == b'{"a": [1, 2]}'
        assert request.body_context is BodyContext.NONE


class TestUrlencoded:

    def test_body_becomes_entries(self, urlencoded_request):
        request, outcome = feed([urlencoded_request])

        assert isinstance(outcome, Complete)
        assert request.body_context is BodyContext.URLENCODED
        assert request.get("name") == "John Smith"
        assert request.get("email") == "john@example.com"
        assert request.get("empty") == ""
        assert request.headers[-3:] == [
            ("name", "John Smith"),
            ("email", "john@example.com"),
            ("empty", ""),
        ]

    def test_waits_for_content_length(self, urlencoded_request):
        head_end = urlencoded_request.index(b"\r\n\r\n") + 4
        request, outcome = feed([urlencoded_request[:head_end + 3]])

        assert isinstance(outcome, Incomplete)
        assert request.state is ParserState.READING_URLENCODED_BODY

    def test_without_content_length_uses_available_bytes(self):
        raw = (
            b"POST /f HTTP/1.1\r\n"
            b"Content-Type: application/x-www-form-urlencoded; charset=UTF-8\r\n"
            b"\r\n"
            b"a=1&b=two+words"
        )
        request, outcome = feed([raw])

        assert isinstance(outcome, Complete)
        assert request.get("b") == "two words"


class TestMultipart:

    def test_fields(self, multipart_request):
        request, outcome = feed([multipart_request])

        assert isinstance(outcome, Complete)
        assert request.body_context is BodyContext.MULTIPART
        assert request.boundary == BOUNDARY

        title = request.get("title")
        upload = request.get("upload")
        empty = request.get("empty")
        assert isinstance(title, MultipartField)
        assert title.content == b"hello"
        assert upload.filename == "notes.txt"
        assert upload.content == b"line one\r\nline two"
        assert upload.content_type == "text/plain"
        assert empty.content == b""
        assert [k for k, _ in request.headers[-3:]] == ["title", "upload", "empty"]
        assert request.cursor == len(multipart_request)

    def test_quoted_boundary(self, multipart_body):
        raw = (
            b"POST /upload HTTP/1.1\r\n"
            + f'Content-Type: multipart/form-data; boundary="{BOUNDARY}"\r\n'.encode()
            + b"\r\n"
            + multipart_body
        )
        request, outcome = feed([raw])
        assert isinstance(outcome, Complete)
        assert request.get("title").content == b"hello"

    def test_missing_boundary_is_fatal(self):
        raw = b"POST / HTTP/1.1\r\nContent-Type: multipart/form-data\r\n\r\n"
        _, outcome = feed([raw])
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, MalformedHeader)

    def test_incomplete_until_end_marker(self, multipart_request):
        cut = multipart_request.rindex(b"--\r\n")
        request, outcome = feed([multipart_request[:cut]])

        assert isinstance(outcome, Incomplete)
        assert request.state is ParserState.READING_MULTIPART_BODY


class TestIncrementalEquivalence:

    @pytest.mark.parametrize("fixture", ["get_request", "urlencoded_request", "multipart_request"])
    def test_any_two_chunk_split(self, fixture, request):
        raw = request.getfixturevalue(fixture)
        whole, outcome = feed([raw])
        assert isinstance(outcome, Complete)

        for point in range(1, len(raw)):
            parsed, outcome = feed(split_at(raw, point))
            assert isinstance(outcome, Complete), f"split at {point}"
            assert snapshot(parsed) == snapshot(whole), f"split at {point}"

    @pytest.mark.parametrize("fixture", ["get_request", "urlencoded_request", "multipart_request"])
    def test_byte_by_byte(self, fixture, request):
        raw = request.getfixturevalue(fixture)
        whole, _ = feed([raw])

        chunks = [raw[i:i + 1] for i in range(len(raw))]
        parsed, outcome = feed(chunks)
        assert isinstance(outcome, Complete)
        assert snapshot(parsed) == snapshot(whole)

    def test_split_around_boundary_marker(self, multipart_request):
        whole, _ = feed([multipart_request])
        marker = f"\r\n--{BOUNDARY}".encode()
        start = multipart_request.index(marker, multipart_request.index(b"hello"))

        chunks = split_at(multipart_request, start + 1, start + 5, start + len(marker), start + len(marker) + 1)
        parsed, outcome = feed(chunks)
        assert isinstance(outcome, Complete)
        assert snapshot(parsed) == snapshot(whole)


class TestPipelining:

    def test_next_request_gets_leftover(self, get_request, urlencoded_request):
        request, outcome = feed([get_request + urlencoded_request])
        assert isinstance(outcome, Complete)
        assert request.path == "/api/users"

        follow_up = request.next_request()
        assert follow_up.cursor == 0
        assert bytes(follow_up.pending) == urlencoded_request

        outcome = RequestParser().advance(follow_up)
        assert isinstance(outcome, Complete)
        assert follow_up.get("name") == "John Smith"

    def test_late_crlf_after_multipart_is_ignored(self, multipart_request, get_request):
        cut = len(multipart_request) - 2
        request, outcome = feed([multipart_request[:cut]])
        assert isinstance(outcome, Complete)

        follow_up = request.next_request()
        follow_up.pending.extend(b"\r\n" + get_request)
        outcome = RequestParser().advance(follow_up)
        assert isinstance(outcome, Complete)
        assert follow_up.path == "/api/users"

    def test_advance_after_complete_is_stable(self, get_request):
        request, _ = feed([get_request])
        headers = list(request.headers)
        outcome = RequestParser().advance(request)
        assert isinstance(outcome, Complete)
        assert request.headers == headers


class TestFailures:

    def test_malformed_start_line(self):
        _, outcome = feed([b"HELLO THERE\r\n\r\n"])
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, MalformedStartLine)
        assert outcome.error.status_code == 500

    def test_start_line_must_come_first(self):
        _, outcome = feed([b"Host: example.com\r\nGET / HTTP/1.1\r\n\r\n"])
        assert isinstance(outcome.error, MalformedStartLine)

    def test_malformed_header(self):
        _, outcome = feed([b"GET / HTTP/1.1\r\nnot a header\r\n\r\n"])
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, MalformedHeader)

    def test_unsupported_auth(self):
        _, outcome = feed([b"GET / HTTP/1.1\r\nAuthorization: Digest abc\r\n\r\n"])
        assert isinstance(outcome.error, UnsupportedAuthScheme)

    def test_invalid_content_length(self):
        _, outcome = feed([b"POST / HTTP/1.1\r\nContent-Length: lots\r\n\r\n"])
        assert isinstance(outcome.error, MalformedHeader)

    def test_too_large(self):
        parser = RequestParser(max_request_bytes=64)
        raw = b"GET / HTTP/1.1\r\nX-Large: " + b"A" * 100
        _, outcome = feed([raw], parser)
        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, RequestTooLarge)
        assert outcome.error.status_code == 413


class TestParamsDoNotFrameBody:
    """Параметры из query живут в том же списке, но на разбор тела не влияют."""

    def test_query_content_type_keeps_body_context(self):
        raw = b"GET /?content-type=multipart%2Fform-data%3B+boundary%3Dx HTTP/1.1\r\nHost: a\r\n\r\n"
        request, outcome = feed([raw])

        assert isinstance(outcome, Complete)
        assert request.body_context is BodyContext.NONE
        assert request.boundary is None

    def test_query_content_length_is_not_a_header(self):
        request, outcome = feed([b"GET /?Content-Length=abc HTTP/1.1\r\nHost: a\r\n\r\n"])

        assert isinstance(outcome, Complete)
        assert request.content_length is None
        assert request.get("content-length") == "abc"

    def test_real_content_length_wins_over_query(self, urlencoded_request):
        raw = urlencoded_request.replace(b"POST /signup ", b"POST /signup?content-length=99999 ", 1)
        request, outcome = feed([raw])

        assert isinstance(outcome, Complete)
        assert request.get("name") == "John Smith"
        assert request.cursor == len(raw)

    def test_conflicting_content_length(self):
        raw = b"POST / HTTP/1.1\r\nContent-Length: 3\r\nContent-Length: 4\r\n\r\nabcd"
        _, outcome = feed([raw])

        assert isinstance(outcome, Fatal)
        assert isinstance(outcome.error, MalformedHeader)

    def test_method_key_is_only_the_start_line(self):
        request, _ = feed([b"GET /?POST=/admin&GET=/other HTTP/1.1\r\n\r\n"])

        assert request.get("GET") == "/"
        assert request.get_all("GET") == ["/"]
        assert request.get("POST") is None
        # как обычный параметр он по-прежнему доступен
        assert request.get("post") == "/admin"
        assert request.get_all("get") == ["/other"]

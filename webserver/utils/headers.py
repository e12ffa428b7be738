"""
Разбор одной строки заголовка.

Строка уже без \r\n. На выходе — список (key, value):
обычно одна пара, но query string раскрывается в несколько.

Никакого I/O, никакого состояния — только строки.
"""
import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, List, Tuple
from urllib.parse import parse_qsl

from webserver.errors import (
    BadCredentialsEncoding,
    MalformedHeader,
    UnsupportedAuthScheme,
)

Entry = Tuple[str, Any]

METHODS = ("GET", "HEAD", "POST", "PUT", "DELETE", "TRACE")

START_LINE_RE = re.compile(
    r"^(" + "|".join(METHODS) + r") ([^?\s]+)(?:\?(\S*))? (HTTP/\d+(?:\.\d+)?)$"
)
AUTHORIZATION_RE = re.compile(r"^authorization:[ \t]*(\S+)[ \t]+(\S+)[ \t]*$", re.IGNORECASE)
# token из RFC 7230: никаких пробелов и разделителей в имени
HEADER_RE = re.compile(r"^([!#$%&'*+.^_`|~0-9A-Za-z-]+):[ \t]*(.*?)[ \t]*$")


@dataclass(frozen=True)
class Authorization:
    scheme: str
    username: str
    password: str


def canonical_name(name: str) -> str:
    """Имена заголовков храним в lowercase — "Content-Type" == "content-type"."""
    return name.lower()


def parse_query(query: str) -> List[Entry]:
    """
    a=1&b=hello+world%21 -> [("a", "1"), ("b", "hello world!")]

    Пустые значения сохраняем: "flag=" -> ("flag", "").
    """
    if not query:
        return []
    return parse_qsl(query, keep_blank_values=True, encoding="utf-8")


def parse_start_line(line: str):
    """Возвращает (method, path, query, version) или None."""
    match = START_LINE_RE.match(line)
    if not match:
        return None
    return match.group(1), match.group(2), match.group(3) or "", match.group(4)


def parse_authorization(scheme: str, credentials: str) -> Authorization:
    if scheme.upper() != "BASIC":
        raise UnsupportedAuthScheme(f"Unsupported authorization scheme: {scheme}")
    try:
        decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise BadCredentialsEncoding(f"Invalid Basic credentials: {e}")

    username, sep, password = decoded.partition(":")
    if not sep:
        raise BadCredentialsEncoding("Basic credentials without ':' separator")
    return Authorization(scheme="BASIC", username=username, password=password)


def parse_header_line(line: str) -> List[Entry]:
    """
    Разбирает одну строку.

    GET /path?a=1 HTTP/1.1    -> [("GET", "/path"), ("a", "1")]
    Authorization: Basic ...  -> [("authorization", Authorization(...))]
    Host: example.com         -> [("host", "example.com")]

    Метод — единственный ключ в верхнем регистре,
    так его не спутать с заголовком.
    """
    start = parse_start_line(line)
    if start:
        method, path, query, _version = start
        return [(method, path)] + parse_query(query)

    match = AUTHORIZATION_RE.match(line)
    if match:
        return [("authorization", parse_authorization(match.group(1), match.group(2)))]

    match = HEADER_RE.match(line)
    if match:
        return [(canonical_name(match.group(1)), match.group(2))]

    raise MalformedHeader(f"Malformed header line: {line!r}")


def parse_params(value: str) -> Tuple[str, dict]:
    """
    'multipart/form-data; boundary="abc"' -> ("multipart/form-data", {"boundary": "abc"})

    Используется и для Content-Type, и для Content-Disposition.
    """
    main, *rest = value.split(";")
    params = {}
    for part in rest:
        key, sep, val = part.strip().partition("=")
        if not sep:
            continue
        val = val.strip()
        if len(val) >= 2 and val[0] == val[-1] == '"':
            val = val[1:-1]
        params[key.strip().lower()] = val
    return main.strip().lower(), params

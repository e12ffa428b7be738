"""
Разбор одного поля multipart/form-data.

На вход — байты между двумя разделителями \r\n--<boundary>:

    \r\n
    Content-Disposition: form-data; name="file"; filename="a.txt"\r\n
    Content-Type: text/plain\r\n
    \r\n
    <содержимое>
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from webserver.utils.headers import Entry, parse_header_line, parse_params

PART_HEADERS_END = b"\r\n\r\n"


@dataclass
class MultipartField:
    """Поле формы: содержимое + атрибуты из под-заголовков."""
    name: str
    content: bytes
    filename: Optional[str] = None
    headers: List[Entry] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> Optional[str]:
        for key, value in self.headers:
            if key == "content-type":
                return value
        return None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def parse_multipart_field(span: bytes) -> Optional[Tuple[str, MultipartField]]:
    """
    Возвращает (name, MultipartField) или None.

    None — если нет Content-Disposition с name (артефакты вокруг
    разделителей, preamble и т.п.). Это не ошибка.
    Битые под-заголовки — MalformedHeader, как и в основном блоке.
    """
    head, sep, content = span.partition(PART_HEADERS_END)
    if not sep:
        return None

    headers: List[Entry] = []
    for raw_line in head.split(b"\r\n"):
        if not raw_line:
            continue
        # браузеры шлют имена файлов в UTF-8 как есть
        headers.extend(parse_header_line(raw_line.decode("utf-8", errors="replace")))

    disposition = next((v for k, v in headers if k == "content-disposition"), None)
    if disposition is None:
        return None

    _kind, attributes = parse_params(disposition)
    name = attributes.get("name")
    if name is None:
        return None

    return name, MultipartField(
        name=name,
        content=bytes(content),
        filename=attributes.get("filename"),
        headers=headers,
        attributes=attributes,
    )

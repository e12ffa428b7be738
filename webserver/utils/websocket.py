"""
Кодек фреймов WebSocket (RFC 6455).

     0               1               2               3
    +-+-+-+-+-------+-+-------------+-------------------------------+
    |F|R|R|R| opcode|M| Payload len |    Extended payload length    |
    |I|S|S|S|  (4)  |A|     (7)     |             (16/64)           |
    |N|V|V|V|       |S|             |   (if payload len==126/127)   |
    +-+-+-+-+-------+-+-------------+ - - - - - - - - - - - - - - - +
    |   Masking-key (если MASK=1)   |          Payload Data         |
    +-------------------------------+-------------------------------+

Декодер неблокирующий: если фрейм пришёл не целиком — возвращает None,
ничего не съедая из буфера.
"""
import base64
import hashlib
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from webserver.errors import MessageTooBig, WebSocketProtocolViolation

WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"


class Opcode(IntEnum):
    CONTINUATION = 0
    TEXT = 1
    BINARY = 2
    CLOSE = 8
    PING = 9
    PONG = 10


def opcode_kind(value: int) -> str:
    """4 бита покрывают 0–15, так что "неизвестных" значений нет."""
    if value in (0, 1, 2, 8, 9, 10):
        return Opcode(value).name.lower()
    if 3 <= value <= 7:
        return "non-control-reserved"
    if 11 <= value <= 15:
        return "control-reserved"
    return "invalid"


@dataclass
class Frame:
    fin: bool
    opcode: int
    payload: bytes
    masked: bool = False
    masking_key: Optional[bytes] = None

    @property
    def is_control(self) -> bool:
        return self.opcode >= 8


@dataclass
class Message:
    """Собранное сообщение (все фрагменты склеены)."""
    opcode: int
    payload: bytes

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8")


def accept_key(key: str) -> str:
    """Sec-WebSocket-Accept = base64(sha1(key + GUID))."""
    digest = hashlib.sha1((key.strip() + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def apply_mask(data: bytes, key: bytes) -> bytes:
    """XOR с ключом по кругу. Одна и та же операция маскирует и снимает маску."""
    if not data:
        return b""
    # XOR целым числом быстрее побайтового цикла на больших payload'ах
    repeated = (key * (len(data) // 4 + 1))[:len(data)]
    mixed = int.from_bytes(data, "big") ^ int.from_bytes(repeated, "big")
    return mixed.to_bytes(len(data), "big")


def encode_frame(
    payload: bytes,
    opcode: int = Opcode.TEXT,
    fin: bool = True,
    mask: Optional[bytes] = None,
) -> bytes:
    """
    Собирает фрейм.

    Сервер никогда не маскирует — mask нужен только чтобы
    изображать клиента (в тестах и т.п.).
    """
    first = (0x80 if fin else 0) | (opcode & 0x0F)
    mask_bit = 0x80 if mask is not None else 0
    length = len(payload)

    if length <= 125:
        header = struct.pack("!BB", first, mask_bit | length)
    elif length <= 0xFFFF:
        header = struct.pack("!BBH", first, mask_bit | 126, length)
    else:
        header = struct.pack("!BBQ", first, mask_bit | 127, length)

    if mask is not None:
        if len(mask) != 4:
            raise ValueError("Masking key must be 4 bytes")
        return header + mask + apply_mask(payload, mask)
    return header + payload


def decode_frame(
    buf: bytes,
    offset: int = 0,
    require_mask: bool = True,
    max_payload: Optional[int] = None,
) -> Optional[Tuple[Frame, int]]:
    """
    Пытается прочитать один фрейм с позиции offset.

    Возвращает (frame, новая позиция) или None, если байт не хватает.
    Нарушения протокола — WebSocketProtocolViolation.
    Длина больше max_payload — MessageTooBig, не дожидаясь самих байт.
    """
    available = len(buf) - offset
    if available < 2:
        return None

    first, second = buf[offset], buf[offset + 1]
    fin = bool(first & 0x80)
    if first & 0x70:
        raise WebSocketProtocolViolation("Non-zero reserved bits")

    opcode = first & 0x0F
    kind = opcode_kind(opcode)
    if kind.endswith("reserved") or kind == "invalid":
        raise WebSocketProtocolViolation(f"Reserved opcode {opcode:#x}")

    masked = bool(second & 0x80)
    if require_mask and not masked:
        # клиент обязан маскировать (RFC 6455, 5.1)
        raise WebSocketProtocolViolation("Unmasked client frame")

    pos = offset + 2
    length = second & 0x7F
    if length == 126:
        if len(buf) < pos + 2:
            return None
        (length,) = struct.unpack_from("!H", buf, pos)
        pos += 2
    elif length == 127:
        if len(buf) < pos + 8:
            return None
        (length,) = struct.unpack_from("!Q", buf, pos)
        pos += 8

    if max_payload is not None and length > max_payload:
        raise MessageTooBig(f"Frame of {length} bytes exceeds {max_payload}")

    masking_key = None
    if masked:
        if len(buf) < pos + 4:
            return None
        masking_key = bytes(buf[pos:pos + 4])
        pos += 4

    if len(buf) < pos + length:
        return None

    payload = bytes(buf[pos:pos + length])
    if masking_key is not None:
        payload = apply_mask(payload, masking_key)

    frame = Frame(fin=fin, opcode=opcode, payload=payload, masked=masked, masking_key=masking_key)
    return frame, pos + length


class FrameAssembler:
    """
    Состояние WebSocket-соединения на стороне чтения.

    Копит сырые байты, режет их на фреймы, склеивает фрагменты.
    feed() возвращает готовые сообщения и управляющие фреймы
    в порядке прихода.
    """

    def __init__(self, require_mask: bool = True, max_message_bytes: Optional[int] = None):
        self.require_mask = require_mask
        self.max_message_bytes = max_message_bytes
        self._fragments_size = 0
        self._buffer = bytearray()
        self._fragments: List[bytes] = []
        self._fragment_opcode: Optional[int] = None

    def feed(self, data: bytes) -> List[Message]:
        self._buffer.extend(data)
        messages: List[Message] = []
        offset = 0
        try:
            while True:
                decoded = decode_frame(
                    self._buffer, offset, self.require_mask, self.max_message_bytes
                )
                if decoded is None:
                    break
                frame, offset = decoded
                message = self._on_frame(frame)
                if message is not None:
                    messages.append(message)
        finally:
            del self._buffer[:offset]
        return messages

    def _on_frame(self, frame: Frame) -> Optional[Message]:
        # управляющие фреймы могут влезать между фрагментами
        if frame.is_control:
            if not frame.fin:
                raise WebSocketProtocolViolation("Fragmented control frame")
            return Message(frame.opcode, frame.payload)

        if frame.opcode == Opcode.CONTINUATION:
            if self._fragment_opcode is None:
                raise WebSocketProtocolViolation("Continuation without initial fragment")
        elif self._fragment_opcode is not None:
            raise WebSocketProtocolViolation("New message before previous one finished")
        else:
            self._fragment_opcode = frame.opcode

        self._fragments.append(frame.payload)
        self._fragments_size += len(frame.payload)
        if self.max_message_bytes is not None and self._fragments_size > self.max_message_bytes:
            raise MessageTooBig(
                f"Fragmented message exceeds {self.max_message_bytes} bytes"
            )
        if not frame.fin:
            return None

        message = Message(self._fragment_opcode, b"".join(self._fragments))
        self._fragments = []
        self._fragments_size = 0
        self._fragment_opcode = None
        return message


def close_payload(code: int, reason: str = "") -> bytes:
    return struct.pack("!H", code) + reason.encode("utf-8")

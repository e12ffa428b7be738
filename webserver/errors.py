"""
Иерархия ошибок сервера.

У каждой ошибки есть status_code — какой ответ получит клиент,
если до отправки ответа вообще дойдёт.
"""
from typing import Optional


class WebServerError(Exception):
    """Базовая ошибка. По умолчанию — 500."""
    status_code = 500

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class ParseError(WebServerError):
    """Ошибки разбора запроса — не ретраятся, соединение закрывается."""


class MalformedStartLine(ParseError):
    pass


class MalformedHeader(ParseError):
    pass


class UnsupportedAuthScheme(ParseError):
    pass


class BadCredentialsEncoding(ParseError):
    pass


class RequestTooLarge(ParseError):
    status_code = 413


class NoHandlerMatched(WebServerError):
    """Ни один matcher не подошёл. Нормальная ситуация, не краш."""


class HandlerActionFailed(WebServerError):
    """Action упал — ловим на границе dispatch."""


class WebSocketProtocolViolation(WebServerError):
    """
    Нарушение RFC 6455: ненулевые RSV-биты, немаскированный фрейм
    от клиента, зарезервированный opcode.

    close_code — код для CLOSE-фрейма (1002 = protocol error).
    """
    close_code = 1002


class MessageTooBig(WebSocketProtocolViolation):
    """Фрейм или собранное сообщение больше limits.max_message_bytes."""
    close_code = 1009

"""
Обработка одного клиентского соединения.

ConnectionSession — владелец буфера и Request'а соединения:
- читаем чанки из сокета
- докидываем их в pending-буфер и двигаем парсер
- готовый запрос отдаём в dispatch
- решаем: keep-alive, закрыть или перейти в WebSocket
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from webserver.config import ServerConfig
from webserver.errors import (
    NoHandlerMatched,
    WebServerError,
    WebSocketProtocolViolation,
)
from webserver.handlers import KEEP_ALIVE, Disposition, HandlerRegistry
from webserver.logger import log_request
from webserver.responses import format_response_head, send_error
from webserver.timeouts import with_timeout
from webserver.utils.http import Complete, Fatal, Incomplete, Request, RequestParser
from webserver.utils.websocket import (
    FrameAssembler,
    Message,
    Opcode,
    accept_key,
    close_payload,
    encode_frame,
)

logger = logging.getLogger("webserver")

MessageHandler = Callable[["ConnectionSession", Message], Union[Any, Awaitable[Any]]]


class SessionState(Enum):
    PLAIN_HTTP = "plain-http"
    WEBSOCKET = "websocket"
    CLOSING = "closing"


class ConnectionSession:
    """
    Состояние одного соединения.

    Парсинг защищён asyncio.Lock: пока идёт разбор (и dispatch),
    новые байты только дописываются в буфер — текущий проход
    их подхватит. Больше одного парсинга на соединение не бывает.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        registry: HandlerRegistry,
        parser: RequestParser,
        config: ServerConfig,
        connection_id: str = "-",
    ):
        self.reader = reader
        self.writer = writer
        self.registry = registry
        self.parser = parser
        self.config = config
        self.connection_id = connection_id
        self.peer = writer.get_extra_info("peername")

        self.state = SessionState.PLAIN_HTTP
        self.request = Request(session=self)
        self.response_started = False
        self.last_status: Optional[int] = None

        self._parse_lock = asyncio.Lock()
        self._assembler: Optional[FrameAssembler] = None
        self._on_message: Optional[MessageHandler] = None

    @property
    def is_closing(self) -> bool:
        return self.state is SessionState.CLOSING

    # --- запись -------------------------------------------------------

    def begin_response(self, status: int) -> None:
        self.response_started = True
        self.last_status = status

    def write(self, data: bytes) -> None:
        self.writer.write(data)

    async def drain(self) -> None:
        await with_timeout(self.writer.drain(), self.config.timeouts.write, "writing response")

    # --- основной цикл -------------------------------------------------

    async def run(self) -> None:
        """Читает сокет, пока соединение не закроется с какой-либо стороны."""
        chunk_size = self.config.limits.read_chunk_bytes
        try:
            while not self.is_closing:
                chunk = await with_timeout(
                    self.reader.read(chunk_size),
                    self.config.timeouts.read,
                    "reading request",
                )
                if not chunk:
                    logger.debug(f"[{self.peer}] Remote end closed the connection")
                    break
                await self.data_received(chunk)
        except TimeoutError as e:
            logger.warning(f"[{self.peer}] {e}")
        except ConnectionError as e:
            logger.warning(f"[{self.peer}] Connection error: {e}")
        except Exception as e:
            logger.exception(f"[{self.peer}] Unexpected error: {e}")
            if not self.response_started and self.state is SessionState.PLAIN_HTTP:
                await self._send_quietly(500, "Internal Server Error")
        finally:
            await self.close()

    async def data_received(self, data: bytes) -> None:
        if self.is_closing:
            return
        if self.state is SessionState.WEBSOCKET:
            await self._websocket_received(data)
            return

        self.request.pending.extend(data)
        if self._parse_lock.locked():
            # текущий проход увидит эти байты сам
            return
        async with self._parse_lock:
            await self._drive_parser()

    async def _drive_parser(self) -> None:
        while self.state is SessionState.PLAIN_HTTP:
            outcome = self.parser.advance(self.request)

            if isinstance(outcome, Incomplete):
                return

            if isinstance(outcome, Fatal):
                error = outcome.error
                logger.warning(f"[{self.peer}] {type(error).__name__}: {error}")
                await self._report(error)
                self.state = SessionState.CLOSING
                return

            assert isinstance(outcome, Complete)
            request = outcome.request
            keep_alive = await self._dispatch(request)

            if self.state is SessionState.WEBSOCKET:
                leftover = bytes(request.pending[request.cursor:])
                if leftover:
                    await self._websocket_received(leftover)
                return

            if not keep_alive:
                self.state = SessionState.CLOSING
                return

            # keep-alive: готовимся к следующему запросу
            self.request = request.next_request()
            self.response_started = False
            self.last_status = None

    async def _dispatch(self, request: Request) -> bool:
        """Выполняет ровно один action. Возвращает: оставлять ли соединение."""
        policy = self.config.policy
        with log_request(logger, request.method, request.path) as log:
            result = await self.registry.dispatch(request)
            log.handler = result.handler_index

            if result.error is not None:
                log.error = type(result.error).__name__
                # action начал ответ и упал: что ушло клиенту, неизвестно
                ambiguous = self.response_started
                await self._report(result.error, close=policy.close_on_error)
                keep_alive = not policy.close_on_error and not ambiguous
            else:
                keep_alive = result.keep_alive

            log.status = self.last_status
        return keep_alive

    async def _report(self, error: WebServerError, close: bool = True) -> None:
        """
        Best-effort ответ об ошибке.

        Если ответ уже начат — ничего не дописываем, просто закроемся.
        """
        if self.response_started:
            return
        status = error.status_code
        if isinstance(error, NoHandlerMatched):
            status = self.config.policy.unmatched_status
        message = str(error)
        if error.detail:
            message = f"{message}: {error.detail}"
        await self._send_quietly(status, message, close)

    async def _send_quietly(self, status: int, message: str, close: bool = True) -> None:
        try:
            await send_error(self, status, message, close)
        except (ConnectionError, TimeoutError) as e:
            # клиент мог уже отвалиться
            logger.debug(f"[{self.peer}] Failed to send {status}: {e}")

    # --- WebSocket -------------------------------------------------------

    async def upgrade(self, request: Request, on_message: MessageHandler) -> Disposition:
        """
        Handshake и переход в режим WebSocket.

        Вызывается из action: return await upgrade_websocket(request, on_echo)
        """
        key = request.get("sec-websocket-key")
        if not key:
            raise WebSocketProtocolViolation("Missing Sec-WebSocket-Key")

        self.begin_response(101)
        self.write(format_response_head(101, [
            ("Upgrade", "websocket"),
            ("Connection", "Upgrade"),
            ("Sec-WebSocket-Accept", accept_key(key)),
        ]))
        await self.drain()

        self.state = SessionState.WEBSOCKET
        self._assembler = FrameAssembler(
            require_mask=True,
            max_message_bytes=self.config.limits.max_message_bytes,
        )
        self._on_message = on_message
        logger.debug(f"[{self.peer}] Upgraded to WebSocket")
        return KEEP_ALIVE

    async def send_message(self, data: Union[str, bytes], opcode: Optional[int] = None) -> None:
        if opcode is None:
            opcode = Opcode.TEXT if isinstance(data, str) else Opcode.BINARY
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.write(encode_frame(data, opcode))
        await self.drain()

    async def _websocket_received(self, data: bytes) -> None:
        try:
            messages = self._assembler.feed(data)
        except WebSocketProtocolViolation as e:
            logger.warning(f"[{self.peer}] WebSocket protocol violation: {e}")
            await self._close_websocket(e.close_code, str(e))
            return

        for message in messages:
            if self.is_closing:
                return
            if message.opcode == Opcode.PING:
                await self.send_message(message.payload, Opcode.PONG)
            elif message.opcode == Opcode.PONG:
                continue
            elif message.opcode == Opcode.CLOSE:
                # эхо CLOSE с тем же кодом, потом закрываемся
                self.write(encode_frame(message.payload[:2], Opcode.CLOSE))
                await self.drain()
                self.state = SessionState.CLOSING
            else:
                await self._deliver(message)

    async def _deliver(self, message: Message) -> None:
        try:
            result = self._on_message(self, message)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[{self.peer}] WebSocket message handler failed: {e}")
            await self._close_websocket(1011, "Internal error")

    async def _close_websocket(self, code: int, reason: str) -> None:
        try:
            self.write(encode_frame(close_payload(code, reason[:120]), Opcode.CLOSE))
            await self.drain()
        except (ConnectionError, TimeoutError):
            pass
        self.state = SessionState.CLOSING

    # --- закрытие ------------------------------------------------------

    async def close(self) -> None:
        """Закрывает соединение. Request и буфер просто выбрасываем."""
        self.state = SessionState.CLOSING
        if self.writer.is_closing():
            return
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def upgrade_websocket(request: Request, on_message: MessageHandler) -> Disposition:
    """Хелпер для action: переводит соединение запроса в WebSocket."""
    return await request.session.upgrade(request, on_message)

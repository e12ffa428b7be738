"""
TCP-сервер для приёма клиентских соединений.

Использует asyncio.start_server() — низкоуровневый, но простой API.
Каждое соединение обслуживается своей корутиной, она же —
единственный владелец ConnectionSession.
"""
import asyncio
import dataclasses
import logging
import ssl
from typing import Any, Dict, Optional, Sequence, Set, Tuple, Union

from webserver.client_handler import ConnectionSession
from webserver.config import ServerConfig
from webserver.handlers import Action, HandlerRegistry
from webserver.logger import generate_trace_id, set_trace_id
from webserver.utils.http import Request, RequestParser

logger = logging.getLogger("webserver")

Handlers = Union[HandlerRegistry, Sequence[Tuple[Any, Action]]]


def create_ssl_context(config: ServerConfig) -> Optional[ssl.SSLContext]:
    if config.tls is None:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(config.tls.certfile, config.tls.keyfile)
    return context


class Server:
    """
    Сервер: обработчики, listener и живые соединения.

    Соединения принадлежат своему Server'у — глобального
    реестра нет, stop() закрывает только свои.
    """

    def __init__(self, handlers: Handlers, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig.default()
        if isinstance(handlers, HandlerRegistry):
            self.registry = handlers
        else:
            self.registry = HandlerRegistry(handlers)
        self.parser = RequestParser(self.config.limits.max_request_bytes)
        # семафор для ограничения одновременных клиентов
        self._client_semaphore = asyncio.Semaphore(self.config.limits.max_connections)
        self._server: Optional[asyncio.Server] = None
        self.sessions: Dict[str, ConnectionSession] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def requests(self) -> Dict[str, Request]:
        """connection id -> текущий Request соединения."""
        return {cid: session.request for cid, session in self.sessions.items()}

    @property
    def port(self) -> Optional[int]:
        """Реальный порт — важно, если слушаем на 0."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> "Server":
        """
        Начинает слушать порт и сразу возвращается.

        Для блокирующего режима — serve_forever().
        """
        self._server = await asyncio.start_server(
            self._handle_client_wrapper,
            self.config.listen_host,
            self.config.listen_port,
            ssl=create_ssl_context(self.config),
        )

        scheme = "https" if self.config.tls else "http"
        logger.info(f"Server started on {scheme}://{self.config.listen_host}:{self.port}")
        logger.info(f"Handlers registered: {len(self.registry)}")
        return self

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        # serve_forever() блокирует до вызова close()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        """Закрывает listener и все живые соединения."""
        if self._server is None:
            return
        logger.info("Stopping server...")
        self._server.close()
        for session in list(self.sessions.values()):
            await session.close()
        # stop() может прийти из самого обработчика: себя не ждём
        pending = [t for t in self._tasks if t is not asyncio.current_task()]
        await asyncio.gather(*pending, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None
        logger.info("Server stopped")

    async def _handle_client_wrapper(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Обёртка над ConnectionSession с проверкой лимита.

        Если семафор locked() — все слоты заняты, сразу отдаём 503.
        Это лучше чем вешать клиента в очередь на неопределённое время.
        """
        connection_id = generate_trace_id()
        set_trace_id(connection_id)
        client_addr = writer.get_extra_info("peername")

        if self._client_semaphore.locked():
            logger.warning(f"Connection rejected from {client_addr}: limit exceeded")
            try:
                writer.write(
                    b"HTTP/1.1 503 Service Unavailable\r\n"
                    b"Content-Length: 0\r\n"
                    b"Connection: close\r\n"
                    b"\r\n"
                )
                await writer.drain()
            except ConnectionError:
                pass
            finally:
                writer.close()
            return

        async with self._client_semaphore:
            session = ConnectionSession(
                reader,
                writer,
                self.registry,
                self.parser,
                self.config,
                connection_id,
            )
            self.sessions[connection_id] = session
            task = asyncio.current_task()
            self._tasks.add(task)
            logger.debug(f"Connection from {client_addr}")
            try:
                await session.run()
            finally:
                self.sessions.pop(connection_id, None)
                self._tasks.discard(task)

    @property
    def active_connections(self) -> int:
        """Для отладки."""
        return len(self.sessions)


async def start(
    handlers: Handlers,
    port: Optional[int] = None,
    config: Optional[ServerConfig] = None,
) -> Server:
    """
    Регистрирует обработчики и начинает слушать.

        server = await start([(("GET", "^/$"), index)], 8080)
        ...
        await stop(server)
    """
    config = config or ServerConfig.default()
    if port is not None:
        config = dataclasses.replace(config, listen_port=port)
    server = Server(handlers, config)
    return await server.start()


async def stop(server: Server) -> None:
    await server.stop()

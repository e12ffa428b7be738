#!/usr/bin/env python3
"""
Точка входа: раздаёт файлы из каталога + echo по WebSocket.

Запуск:
    python -m webserver.main --root ./public
    python -m webserver.main --config config.yaml
"""
import argparse
import asyncio
import logging
import signal
from pathlib import Path
from urllib.parse import unquote

from webserver.client_handler import ConnectionSession, upgrade_websocket
from webserver.config import ServerConfig
from webserver.handlers import KEEP_ALIVE, HandlerRegistry
from webserver.logger import setup_logger
from webserver.responses import (
    in_directory,
    send_directory_listing,
    send_error,
    send_file,
)
from webserver.server import Server
from webserver.utils.http import Request
from webserver.utils.websocket import Message


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Embedded HTTP/WebSocket server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        help="Path to YAML config file",
    )
    parser.add_argument(
        "-H", "--host",
        type=str,
        default="127.0.0.1",
        help="Listen host",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=8080,
        help="Listen port",
    )
    parser.add_argument(
        "-r", "--root",
        type=str,
        default=".",
        help="Directory to serve",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Logging level",
    )
    return parser.parse_args()


def load_config(args: argparse.Namespace) -> ServerConfig:
    """Загружает конфигурацию из файла или собирает из аргументов."""
    if args.config and Path(args.config).exists():
        return ServerConfig.from_yaml(args.config)

    config = ServerConfig.default()
    config.listen_host = args.host
    config.listen_port = args.port
    config.log_level = args.log_level
    config.static.root = args.root
    return config


async def echo(session: ConnectionSession, message: Message) -> None:
    await session.send_message(message.payload, message.opcode)


def build_handlers(config: ServerConfig) -> HandlerRegistry:
    """
    Обработчики CLI:
    - websocket_path — echo
    - GET — файлы и листинги каталогов из root
    """
    root = Path(config.static.root).resolve()
    registry = HandlerRegistry()

    def is_websocket(request: Request) -> bool:
        return (
            request.method == "GET"
            and request.path == config.static.websocket_path
            and str(request.get("upgrade", "")).lower() == "websocket"
        )

    async def websocket_action(request: Request):
        return await upgrade_websocket(request, echo)

    async def static_action(request: Request):
        session = request.session
        relative = unquote(request.path).lstrip("/")
        target = root / relative
        if not in_directory(root, target):
            await send_error(session, 403, "Forbidden", close=False)
        elif target.is_dir():
            await send_directory_listing(session, target, request.path)
        else:
            await send_file(session, target)
        return KEEP_ALIVE

    registry.add(is_websocket, websocket_action)
    registry.add(("GET", "^/"), static_action)
    return registry


async def shutdown(server: Server, sig: signal.Signals) -> None:
    """Graceful shutdown при получении сигнала."""
    logging.getLogger("webserver").info(f"Received {sig.name}, shutting down...")
    await server.stop()

    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()

    await asyncio.gather(*tasks, return_exceptions=True)


async def main() -> None:
    args = parse_args()
    config = load_config(args)

    setup_logger(config.log_level)
    logger = logging.getLogger("webserver")
    logger.debug(f"Config loaded: {config}")

    server = Server(build_handlers(config), config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(server, s)),
        )

    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        logger.info("Server shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

"""
Конфигурация сервера.

Все настройки описаны как dataclasses — это проще Pydantic
и не тянет лишние зависимости.
"""
from dataclasses import dataclass, field
from typing import Optional

import yaml


@dataclass
class TimeoutConfig:
    """
    Таймауты на чтение/запись.

    Храним в миллисекундах (так удобнее в конфиге),
    но properties возвращают секунды для asyncio.wait_for().
    read_ms = None — ждём клиента сколько угодно.
    """
    read_ms: Optional[int] = None
    write_ms: int = 15000

    @property
    def read(self) -> Optional[float]:
        return self.read_ms / 1000 if self.read_ms else None

    @property
    def write(self) -> float:
        return self.write_ms / 1000


@dataclass
class LimitsConfig:
    max_connections: int = 1000
    max_request_bytes: int = 1024 * 1024
    # WebSocket: и один фрейм, и собранное из фрагментов сообщение
    max_message_bytes: int = 1024 * 1024
    read_chunk_bytes: int = 16 * 1024


@dataclass
class PolicyConfig:
    """
    Что делать с соединением после ошибки.

    close_on_error=False — после 404/500 от dispatch соединение
    остаётся открытым для следующих запросов. Ошибки парсинга
    закрывают его всегда.
    """
    close_on_error: bool = True
    unmatched_status: int = 500


@dataclass
class TlsConfig:
    certfile: str
    keyfile: Optional[str] = None


@dataclass
class StaticConfig:
    """Только для CLI: раздача файлов и echo-websocket."""
    root: str = "."
    websocket_path: str = "/ws"


@dataclass
class ServerConfig:
    """
    Корневой конфиг.

    Можно создать через from_yaml() или default() для разработки.
    """
    listen_host: str = "127.0.0.1"
    listen_port: int = 8080
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    tls: Optional[TlsConfig] = None
    static: StaticConfig = field(default_factory=StaticConfig)
    log_level: str = "info"

    @classmethod
    def from_yaml(cls, path: str) -> "ServerConfig":
        """
        Парсит YAML-конфиг.

        Формат см. в config.example.yaml
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        # listen может быть "127.0.0.1:8080" или просто "0.0.0.0"
        listen = str(data.get("listen", "127.0.0.1:8080"))
        if ":" in listen:
            host, port = listen.rsplit(":", 1)  # rsplit на случай IPv6
            listen_host = host
            listen_port = int(port)
        else:
            listen_host = listen
            listen_port = 8080

        timeouts_data = data.get("timeouts", {})
        timeouts = TimeoutConfig(
            read_ms=timeouts_data.get("read_ms"),
            write_ms=timeouts_data.get("write_ms", 15000),
        )

        limits_data = data.get("limits", {})
        limits = LimitsConfig(
            max_connections=limits_data.get("max_connections", 1000),
            max_request_bytes=limits_data.get("max_request_bytes", 1024 * 1024),
            max_message_bytes=limits_data.get("max_message_bytes", 1024 * 1024),
            read_chunk_bytes=limits_data.get("read_chunk_bytes", 16 * 1024),
        )

        policy_data = data.get("policy", {})
        policy = PolicyConfig(
            close_on_error=policy_data.get("close_on_error", True),
            unmatched_status=policy_data.get("unmatched_status", 500),
        )

        tls = None
        tls_data = data.get("tls")
        if tls_data:
            tls = TlsConfig(certfile=tls_data["certfile"], keyfile=tls_data.get("keyfile"))

        static_data = data.get("static", {})
        static = StaticConfig(
            root=static_data.get("root", "."),
            websocket_path=static_data.get("websocket_path", "/ws"),
        )

        return cls(
            listen_host=listen_host,
            listen_port=listen_port,
            timeouts=timeouts,
            limits=limits,
            policy=policy,
            tls=tls,
            static=static,
            log_level=data.get("logging", {}).get("level", "info"),
        )

    @classmethod
    def default(cls) -> "ServerConfig":
        """Дефолтный конфиг для локальной разработки."""
        return cls()

"""
Настройка логирования с поддержкой trace_id.

Каждое соединение получает короткий trace_id, который автоматически
добавляется во все логи через ContextVar + Filter.
"""
import logging
import time
import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

# trace_id хранится в contextvars: каждое соединение обслуживает
# своя задача asyncio, так что значение не протекает между ними
trace_id_var: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


def generate_trace_id() -> str:
    """
    Генерирует короткий trace_id.

    Берём первые 8 символов UUID — достаточно для отладки,
    не захламляет логи.
    """
    return uuid.uuid4().hex[:8]


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    trace_id_var.set(trace_id)


class TraceIdFilter(logging.Filter):
    """
    Добавляет trace_id в каждую запись лога.

    Если trace_id не установлен — ставит "-".
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = trace_id_var.get() or "-"
        return True


@dataclass
class RequestLog:
    """
    Данные для access-лога.

    Заполняется по ходу dispatch и выводится в finally.
    """
    trace_id: str
    method: str
    path: str
    handler: Optional[int] = None
    status: Optional[int] = None
    duration_ms: float = 0
    error: str = ""


def setup_logger(level: str = "info") -> logging.Logger:
    """
    Настраивает логгер "webserver".

    Формат: 2025-01-15 12:30:45 | INFO | [abc12345] message
    """
    logger = logging.getLogger("webserver")
    logger.setLevel(getattr(logging, level.upper()))

    # чистим старые хэндлеры если есть (при перезапуске)
    logger.handlers.clear()

    handler = logging.StreamHandler()
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | [%(trace_id)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    handler.setFormatter(formatter)
    handler.addFilter(TraceIdFilter())
    logger.addHandler(handler)
    return logger


@contextmanager
def log_request(logger: logging.Logger, method: Optional[str], path: Optional[str]):
    """
    Контекст для измерения времени обработки запроса.

    Использование:
        with log_request(logger, "GET", "/api") as log:
            log.handler = 0
            log.status = 200
        # автоматически залогирует с duration
    """
    start = time.perf_counter()
    log = RequestLog(
        trace_id=get_trace_id() or "-",
        method=method or "-",
        path=path or "-",
    )

    try:
        yield log
    finally:
        log.duration_ms = (time.perf_counter() - start) * 1000
        handler = "-" if log.handler is None else f"#{log.handler}"
        status = "-" if log.status is None else log.status
        suffix = f" | {log.error}" if log.error else ""
        logger.info(
            f"{log.method} {log.path} -> handler {handler} | "
            f"{status} | {log.duration_ms:.2f}ms{suffix}"
        )

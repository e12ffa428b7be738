"""
Утилиты для работы с таймаутами.

asyncio.wait_for() кидает asyncio.TimeoutError без деталей,
тут мы оборачиваем его с нормальным сообщением.
"""
import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


async def with_timeout(
    aw: Awaitable[T],
    timeout: Optional[float],
    operation: str = ""
) -> T:
    """
    Ожидание чтения/записи сессии с понятной ошибкой.

        chunk = await with_timeout(
            reader.read(config.limits.read_chunk_bytes),
            config.timeouts.read,      # None, если read_ms не задан
            "reading request",
        )

    Клиент молчит дольше read_ms — ConnectionSession.run() ловит
    "Timeout during reading request after 60.0s", пишет warning
    и закрывает соединение. Для drain() то же самое с write_ms.
    """
    try:
        return await asyncio.wait_for(aw, timeout=timeout)
    except asyncio.TimeoutError:
        raise TimeoutError(f"Timeout during {operation} after {timeout}s")

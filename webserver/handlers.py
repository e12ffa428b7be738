"""
Реестр обработчиков и dispatch.

Обработчик — пара (matcher, action). Matcher бывает двух видов:
    Predicate(fn)              — fn(request) -> bool
    HeaderPattern(key, regex)  — у запроса есть key и значение матчится regex

Правила:
- побеждает первый подходящий (порядок регистрации важен)
- ровно один action на запрос
- упавший action не роняет соединение — ловим тут
"""
import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Pattern, Sequence, Tuple, Union

from webserver.errors import HandlerActionFailed, NoHandlerMatched, WebServerError
from webserver.utils.http import Request

logger = logging.getLogger("webserver")


class Disposition(Enum):
    """Что action хочет сделать с соединением после ответа."""
    CLOSE = "close"
    KEEP_ALIVE = "keep-alive"


KEEP_ALIVE = Disposition.KEEP_ALIVE

Action = Callable[[Request], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class Predicate:
    fn: Callable[[Request], bool]

    def matches(self, request: Request) -> bool:
        return bool(self.fn(request))


@dataclass(frozen=True)
class HeaderPattern:
    key: str
    pattern: Pattern

    def matches(self, request: Request) -> bool:
        value = request.get(self.key)
        if value is None:
            return False
        # search, а не match: паттерн не заякорен
        return self.pattern.search(str(value)) is not None


Matcher = Union[Predicate, HeaderPattern]


def as_matcher(value: Any) -> Matcher:
    """
    Приводит то, что передал пользователь, к Matcher.

        lambda r: ...          -> Predicate
        ("GET", r"^/api")      -> HeaderPattern
        Predicate/HeaderPattern — как есть
    """
    if isinstance(value, (Predicate, HeaderPattern)):
        return value
    if isinstance(value, tuple) and len(value) == 2:
        key, pattern = value
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        return HeaderPattern(key, pattern)
    if callable(value):
        return Predicate(value)
    raise TypeError(f"Unsupported matcher: {value!r}")


@dataclass(frozen=True)
class Handler:
    matcher: Matcher
    action: Action


@dataclass
class DispatchResult:
    """
    Итог dispatch'а.

    handler_index — какой обработчик сработал (None если никакой),
    error — NoHandlerMatched / HandlerActionFailed или None.
    """
    keep_alive: bool = False
    handler_index: Optional[int] = None
    error: Optional[WebServerError] = None


class HandlerRegistry:
    """
    Упорядоченный список обработчиков.

    После старта сервера только читается — lock не нужен.
    """

    def __init__(self, handlers: Sequence[Tuple[Any, Action]] = ()):
        self.handlers: List[Handler] = []
        for matcher, action in handlers:
            self.add(matcher, action)

    def add(self, matcher: Any, action: Action) -> None:
        self.handlers.append(Handler(as_matcher(matcher), action))

    def __len__(self) -> int:
        return len(self.handlers)

    def find(self, request: Request) -> Optional[int]:
        for index, handler in enumerate(self.handlers):
            if handler.matcher.matches(request):
                return index
        return None

    async def dispatch(self, request: Request) -> DispatchResult:
        """Находит первый подходящий обработчик и выполняет его action."""
        try:
            index = self.find(request)
        except Exception as e:
            # упавший predicate считаем ошибкой обработчика
            logger.exception(f"Matcher failed: {e}")
            return DispatchResult(error=HandlerActionFailed("Matcher failed", detail=repr(e)))

        if index is None:
            return DispatchResult(
                error=NoHandlerMatched(f"No handler matched {request.method} {request.path}")
            )

        action = self.handlers[index].action
        try:
            result = action(request)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Handler #{index} failed: {e}")
            return DispatchResult(
                handler_index=index,
                error=HandlerActionFailed(f"Handler #{index} failed", detail=repr(e)),
            )

        return DispatchResult(keep_alive=result is KEEP_ALIVE, handler_index=index)

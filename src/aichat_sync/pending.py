"""Single-flight bookkeeping for in-flight async operations."""

import functools
import logging
from collections.abc import Callable
from typing import Any, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class PendingOperations:
    """Set of operation keys currently in flight. Used for dedup only, never persisted.

    Each ``add`` hands out an owner token. Releasing with a token only removes
    the key while that acquisition still holds it, so a call abandoned by
    ``clear()`` cannot release a key taken again after the clear.
    """

    def __init__(self) -> None:
        self._keys: dict[str, object] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: str) -> object:
        token = object()
        self._keys[key] = token
        return token

    def discard(self, key: str, token: Optional[object] = None) -> None:
        if token is None or self._keys.get(key) is token:
            self._keys.pop(key, None)

    def clear(self) -> None:
        self._keys.clear()

    def snapshot(self) -> list[str]:
        return sorted(self._keys)


def single_flight(key: Union[str, Callable[..., str]]) -> Callable[[F], F]:
    """Skip a coroutine method while another call with the same key is running.

    The decorated method's instance must expose a ``pending`` attribute
    holding a :class:`PendingOperations`. ``key`` is either a literal or a
    callable receiving the method's arguments (without ``self``). A skipped
    call returns None. The key is always released, even when the call raises.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self, *args: Any, **kwargs: Any) -> Any:
            op = key(*args, **kwargs) if callable(key) else key
            pending: PendingOperations = self.pending
            if op in pending:
                logger.debug("Skipping %s: already in flight", op)
                return None
            token = pending.add(op)
            try:
                return await func(self, *args, **kwargs)
            finally:
                pending.discard(op, token)

        return wrapper  # type: ignore[return-value]

    return decorator

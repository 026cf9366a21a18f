"""Async access to the synchronous ChatRepository with a hard timeout.

Every repository call runs in a worker thread and is abandoned after
``timeout`` seconds. Timeouts and driver errors surface as
``TransientStoreFailure`` so request and connection handlers never hang on
the document store.
"""
import asyncio
import logging
from functools import partial
from typing import Any, Callable

from chatrelay.errors import ChatError, TransientStoreFailure

from .base import ChatRepository

logger = logging.getLogger(__name__)


class StoreGateway:
    """Runs repository calls off the event loop under a timeout."""

    def __init__(self, repository: ChatRepository, timeout: float = 5.0) -> None:
        self.repository = repository
        self.timeout = timeout

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        name = getattr(fn, "__name__", "call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(fn, *args, **kwargs)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("[Store] %s timed out after %.1fs", name, self.timeout)
            raise TransientStoreFailure(f"Document store timed out during {name}") from exc
        except ChatError:
            raise
        except Exception as exc:
            logger.error("[Store] %s failed: %s", name, exc)
            raise TransientStoreFailure(f"Document store failed during {name}") from exc

from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from psycopg import OperationalError

from tillguard.logging import get_logger, sanitize_error_message
from tillguard.service.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_STORE_TIMEOUT_SECONDS = 5.0


async def run_bounded(
    func: Callable[..., T],
    *args: Any,
    timeout: float = DEFAULT_STORE_TIMEOUT_SECONDS,
    operation: str | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking store call in a worker thread with a deadline.

    A timeout or a driver failure becomes :class:`StoreUnavailableError`;
    callers doing validity checks treat that as "not valid".
    """
    label = operation or getattr(func, "__name__", "store_call")
    call = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout)
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=label, timeout=timeout)
        raise StoreUnavailableError(detail={"operation": label})
    except (OSError, RuntimeError, OperationalError) as exc:
        logger.error("store_call_failed", operation=label, error=sanitize_error_message(str(exc)))
        raise StoreUnavailableError(detail={"operation": label}) from exc

import asyncio

from sqlalchemy.exc import InterfaceError, OperationalError

from medquiz.core.logging import DOMAIN_CONTENT, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_CONTENT)

TRANSIENT_DB_ERRORS: tuple[type[Exception], ...] = (
    TimeoutError,
    ConnectionError,
    asyncio.TimeoutError,
    OperationalError,
    InterfaceError,
)


async def retry_with_backoff(
    async_func,
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 0.2,
    retryable_errors: tuple[type[Exception], ...] = TRANSIENT_DB_ERRORS,
):
    last_exception = None
    for attempt in range(max(1, max_retries)):
        try:
            return await async_func()
        except retryable_errors as exc:  # type: ignore[misc]
            last_exception = exc
            if attempt == max_retries - 1:
                break
            delay = base_delay_seconds * (2**attempt)
            logger.warning("Transient failure (attempt %s/%s), retrying in %.2fs: %s", attempt + 1, max_retries, delay, exc)
            await asyncio.sleep(delay)
    if last_exception:
        raise last_exception

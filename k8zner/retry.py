import asyncio
import logging

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

logger = logging.getLogger(__name__)


#: Errors that indicate a transient problem talking to a remote service
TRANSIENT_ERRORS = (httpx.TransportError, ConnectionError, asyncio.TimeoutError)


async def _sleep(seconds):
    await asyncio.sleep(seconds)


def _log_retry(level, message):
    def before_sleep(retry_state):
        logger.log(
            level,
            message,
            retry_state.attempt_number,
            retry_state.retry_object.stop.max_attempt_number,
            retry_state.next_action.sleep,
            retry_state.outcome.exception()
        )
    return before_sleep


async def retry_transient(
    func,
    *args,
    retries = 5,
    initial_delay = 1,
    max_delay = 30,
    multiplier = 2,
    errors = TRANSIENT_ERRORS,
    **kwargs
):
    """
    Awaits the given coroutine function, retrying with exponential backoff when it
    raises one of the given transient errors.

    Any other error is raised immediately, as is the final transient error once the
    retries are exhausted.
    """
    retrying = AsyncRetrying(
        stop = stop_after_attempt(retries + 1),
        wait = wait_exponential(
            multiplier = initial_delay,
            exp_base = multiplier,
            max = max_delay
        ),
        retry = retry_if_exception_type(errors),
        before_sleep = _log_retry(
            logging.WARNING,
            "transient error (attempt %d of %d, retrying in %.1fs): %s"
        ),
        sleep = _sleep,
        reraise = True
    )
    return await retrying(func, *args, **kwargs)


async def retry_fixed(func, *args, attempts, delay, errors = (Exception,), **kwargs):
    """
    Awaits the given coroutine function up to the given number of attempts with a
    fixed delay between them, returning the first successful result.

    The error from the last attempt is raised if no attempt succeeds. Cancellation
    is never retried, and interrupts the delay between attempts immediately.
    """
    retrying = AsyncRetrying(
        stop = stop_after_attempt(attempts),
        wait = wait_fixed(delay),
        retry = retry_if_exception_type(errors),
        before_sleep = _log_retry(
            logging.INFO,
            "attempt %d of %d failed (retrying in %.1fs): %s"
        ),
        sleep = _sleep,
        reraise = True
    )
    return await retrying(func, *args, **kwargs)

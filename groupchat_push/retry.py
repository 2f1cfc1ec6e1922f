import asyncio
import logging
from typing import Awaitable, Callable, Optional

import tenacity
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .context import FanoutContext
from .errors import ContextTimeout, PushError, RetryableFailure
from .schemas import DeliveryOutcome, RetryPolicy

logger = logging.getLogger(__name__)


class RetryController:
    """
    Wraps a single delivery with bounded exponential backoff.

    Only RetryableFailure is retried. The wait before attempt n (n >= 2) is
    base_backoff * 2^(n-2), and a wait that would run past the context
    deadline ends the delivery with ContextTimeout instead.
    """

    def __init__(self, policy: RetryPolicy, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.policy = policy
        self._sleep = sleep

    def _deadline_sleep(self, ctx: FanoutContext) -> Callable[[float], Awaitable[None]]:
        async def sleep(seconds: float) -> None:
            if seconds > ctx.remaining():
                raise ContextTimeout(f"deadline elapses before retry backoff of {seconds:.3f}s")
            await self._sleep(seconds)
        return sleep

    async def attempt(self, ctx: FanoutContext, token: str,
                      fn: Callable[[], Awaitable[None]]) -> DeliveryOutcome:
        """
        Run fn until it succeeds, fails fatally, or attempts are exhausted.

        Args:
            ctx: Context carrying the fan-out deadline
            token: The device token being delivered to, for the outcome
            fn: One delivery attempt; raises PushError on failure

        Returns:
            DeliveryOutcome holding the number of attempts and, on failure,
            the last error
        """
        attempts = 0
        error: Optional[PushError] = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.base_backoff, exp_base=2),
            retry=retry_if_exception_type(RetryableFailure),
            sleep=self._deadline_sleep(ctx),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await fn()
        except PushError as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected error delivering to token {token}: {str(e)}")
            error = PushError(str(e))

        if error is not None and error.retryable:
            logger.warning(f"Giving up on token {token} after {attempts} attempts: {str(error)}")

        return DeliveryOutcome(token=token, attempts=attempts, error=error)

    @staticmethod
    def _log_retry(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.info(f"Retrying delivery in {wait:.2f}s (attempt {retry_state.attempt_number}): {str(exc)}")

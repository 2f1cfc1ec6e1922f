import asyncio
import logging
from typing import List, Optional, Sequence

from . import batcher, token_validator
from .batcher import BadgeCounter
from .config import Settings
from .context import FanoutContext
from .errors import ErrorKind
from .fcm_client import FCMClient
from .rate_limiter import RateLimiter
from .retry import RetryController
from .schemas import AggregateReport, BatchResult, Notification

logger = logging.getLogger(__name__)


class FanoutOrchestrator:
    """
    Delivers one notification to many device tokens.

    Tokens are validated, split into gateway-sized batches, and each batch
    runs as its own task. Inside a batch every token goes through the retry
    controller, and every attempt waits on the shared rate limiter before
    the network call. Batch results are merged by a single aggregator as
    they complete.
    """

    def __init__(self,
                 client: FCMClient,
                 rate_limiter: RateLimiter,
                 retry_controller: RetryController,
                 badge_counter: Optional[BadgeCounter] = None,
                 batch_size: int = batcher.DEFAULT_BATCH_SIZE):
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_controller = retry_controller
        self.badge_counter = badge_counter
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, settings: Settings, client: FCMClient,
                      badge_counter: Optional[BadgeCounter] = None) -> "FanoutOrchestrator":
        return cls(
            client=client,
            rate_limiter=RateLimiter(settings.requests_per_second),
            retry_controller=RetryController(settings.retry_policy),
            badge_counter=badge_counter,
            batch_size=settings.fcm_batch_size,
        )

    async def send_group_message(self,
                                 ctx: FanoutContext,
                                 notification: Notification,
                                 tokens: Sequence[str],
                                 group_id: Optional[str] = None,
                                 reader_id: Optional[str] = None) -> AggregateReport:
        """
        Fan a notification out to every token.

        Args:
            ctx: Context carrying the deadline for the whole fan-out
            notification: The notification shared by every batch
            tokens: Device tokens to deliver to
            group_id: Group the message belongs to, for the badge count
            reader_id: User whose unread count becomes the badge

        Returns:
            AggregateReport: Merged per-token results. Delivery failures are
            recorded here and never raised.

        Raises:
            ContextTimeout: If ctx carries no deadline
        """
        ctx.require_deadline()

        report = AggregateReport()
        valid, invalid = token_validator.partition(tokens)
        report.invalid_tokens.update(invalid)
        if invalid:
            logger.warning(f"Discarded {len(invalid)} malformed device tokens")

        notification = await self._apply_badge(notification, group_id, reader_id, report)
        report.badge_count = notification.badge_count

        batches = batcher.split(valid, self.batch_size)
        if batches:
            logger.info(f"Sending notification to {len(valid)} tokens in {len(batches)} batches")

        tasks = [
            asyncio.create_task(self._run_batch(ctx, notification, batch))
            for batch in batches
        ]
        for completed in asyncio.as_completed(tasks):
            report.merge(await completed)

        logger.info(
            f"Message sending complete. Success: {report.success_count}, "
            f"Failure: {report.failure_count}, Invalid Tokens: {len(report.invalid_tokens)}"
        )
        return report

    async def _apply_badge(self, notification: Notification, group_id: Optional[str],
                           reader_id: Optional[str], report: AggregateReport) -> Notification:
        if self.badge_counter is None or not group_id or not reader_id:
            return notification
        try:
            badge = await self.badge_counter.count(group_id, reader_id)
        except Exception as e:
            logger.error(f"Error computing badge count for group {group_id}: {str(e)}")
            report.errors.append(f"badge count lookup failed: {str(e)}")
            return notification
        return notification.with_badge(badge)

    async def _run_batch(self, ctx: FanoutContext, notification: Notification,
                         batch: List[str]) -> BatchResult:
        result = BatchResult()
        try:
            await self._deliver_batch(ctx, notification, batch, result)
        except Exception as e:
            result.unprocessed_count = len(batch) - result.processed_count
            logger.error(f"Batch aborted with {result.unprocessed_count} tokens left: {str(e)}")
        return result

    async def _deliver_batch(self, ctx: FanoutContext, notification: Notification,
                             batch: List[str], result: BatchResult) -> None:
        for index, token in enumerate(batch):
            outcome = await self.retry_controller.attempt(
                ctx, token, lambda token=token: self._deliver(ctx, token, notification)
            )
            result.record(outcome)

            if outcome.kind == ErrorKind.NOT_REGISTERED:
                logger.info(f"Invalid token found: {token}")
            elif not outcome.ok:
                logger.warning(f"Delivery to token {token} failed: {str(outcome.error)}")

            if outcome.kind == ErrorKind.CONTEXT_TIMEOUT:
                result.unprocessed_count = len(batch) - index - 1
                logger.warning(f"Deadline reached, abandoning {result.unprocessed_count} tokens in batch")
                break

    async def _deliver(self, ctx: FanoutContext, token: str, notification: Notification) -> None:
        await self.rate_limiter.acquire(ctx)
        await self.client.send(ctx, token, notification)

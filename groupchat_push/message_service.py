import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from .batcher import BadgeCounter
from .config import Settings, settings as default_settings
from .context import FanoutContext
from .dispatcher import NotificationDispatcher, log_report
from .fanout import FanoutOrchestrator
from .schemas import AggregateReport, GroupMessage, Notification, RecipientToken
from .stores import MessageStore, TokenStore

logger = logging.getLogger(__name__)


class MessageService:
    """
    Message-creation flow for group chats.

    Persists the message, then hands push delivery to the background
    dispatcher. Message creation succeeds as soon as persistence does;
    delivery results only show up in the logs and in token pruning.
    """

    def __init__(self,
                 message_store: MessageStore,
                 token_store: TokenStore,
                 orchestrator: FanoutOrchestrator,
                 settings: Optional[Settings] = None):
        self.message_store = message_store
        self.token_store = token_store
        self.orchestrator = orchestrator
        self.badge_counter = BadgeCounter(message_store)
        self.settings = settings or default_settings
        self.dispatcher = NotificationDispatcher(
            workers=self.settings.dispatcher_workers,
            queue_size=self.settings.dispatcher_queue_size,
            result_sink=self.handle_report,
        )
        logger.info("MessageService initialized")

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop(drain=True)

    @staticmethod
    def validate_message(message: GroupMessage) -> None:
        if not message.content:
            raise ValueError("message content cannot be empty")
        if not message.senderId:
            raise ValueError("invalid sender ID")
        if not message.groupId:
            raise ValueError("invalid group ID")

    async def create_group_message(self, message: GroupMessage) -> GroupMessage:
        """
        Store a group message and schedule its push notifications.

        Args:
            message: The message to create

        Returns:
            GroupMessage: The stored message

        Raises:
            ValueError: If the message is invalid
            Exception: Any persistence error from the message store
        """
        self.validate_message(message)
        await self.message_store.create_message(message)

        # Token lookup or scheduling problems never fail message creation
        try:
            tokens = await self.token_store.get_group_member_tokens(message.groupId)
        except Exception as e:
            logger.error(f"Error fetching device tokens for group {message.groupId}: {str(e)}")
            return message

        recipients = [t for t in tokens if t.user_id != message.senderId]
        if not recipients:
            logger.info(f"No recipients to notify for message {message.messageId}")
            return message

        try:
            accepted = self.dispatcher.submit(
                message.messageId,
                lambda: self.deliver(message, recipients),
            )
        except RuntimeError as e:
            logger.error(f"Error scheduling push notifications for message {message.messageId}: {str(e)}")
            return message
        if accepted:
            logger.info(f"Scheduled push notifications for message {message.messageId} to {len(recipients)} devices")
        return message

    def build_notification(self, message: GroupMessage) -> Notification:
        content = message.content
        limit = self.settings.max_notification_content_length
        if len(content) > limit:
            content = content[:limit] + '...'

        return Notification(
            title=f"New message from {message.display_sender}",
            body=content,
            sound=self.settings.notification_sound,
            data={
                'groupId': message.groupId,
                'messageId': message.messageId,
                'senderId': message.senderId,
                'senderName': message.display_sender,
                'timestamp': int(message.timestamp.timestamp()),
                'type': 'group_message',
            },
        )

    async def deliver(self, message: GroupMessage, recipients: List[RecipientToken]) -> AggregateReport:
        """
        Deliver a message's notification to every recipient device.

        Each recipient's badge is their own unread count. Recipients that
        end up with the same badge are sent as one fan-out, so large groups
        still go out in gateway-sized batches. All fan-outs share one
        deadline and the process-wide rate limiter.
        """
        ctx = FanoutContext.with_timeout(self.settings.fanout_timeout_seconds)
        notification = self.build_notification(message)

        by_user: Dict[str, List[str]] = OrderedDict()
        for recipient in recipients:
            by_user.setdefault(recipient.user_id, []).append(recipient.token)

        errors: List[str] = []
        badges = await self.recipient_badges(message.groupId, list(by_user), notification.badge_count, errors)

        by_badge: Dict[int, List[str]] = OrderedDict()
        for user_id, tokens in by_user.items():
            by_badge.setdefault(badges[user_id], []).extend(tokens)

        reports = await asyncio.gather(*(
            self.orchestrator.send_group_message(ctx, notification.with_badge(badge), tokens)
            for badge, tokens in by_badge.items()
        ))
        if not reports:
            return AggregateReport(errors=errors)

        combined = reports[0].model_copy(deep=True)
        for report in reports[1:]:
            combined.merge(report)
        combined.errors.extend(errors)
        return combined

    async def recipient_badges(self, group_id: str, user_ids: List[str], default: int,
                               errors: List[str]) -> Dict[str, int]:
        """
        Look up each recipient's unread count, a bounded number at a time.

        A failed lookup leaves that recipient on the default badge and is
        appended to errors.
        """
        semaphore = asyncio.Semaphore(self.settings.badge_lookup_concurrency)

        async def lookup(user_id: str) -> int:
            async with semaphore:
                try:
                    return await self.badge_counter.count(group_id, user_id)
                except Exception as e:
                    logger.error(f"Error computing badge count for user {user_id} in group {group_id}: {str(e)}")
                    errors.append(f"badge count lookup failed for {user_id}: {str(e)}")
                    return default

        counts = await asyncio.gather(*(lookup(user_id) for user_id in user_ids))
        return dict(zip(user_ids, counts))

    async def handle_report(self, job_id: str, report: AggregateReport) -> None:
        """Result sink: log the report and prune tokens the gateway rejected."""
        await log_report(job_id, report)

        if not report.invalid_tokens:
            return
        try:
            removed = await self.token_store.remove_tokens(report.invalid_tokens)
            logger.info(f"Pruned {removed} invalid device tokens after fan-out {job_id}")
        except Exception as e:
            logger.error(f"Error removing invalid tokens after fan-out {job_id}: {str(e)}")

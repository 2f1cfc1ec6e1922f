import logging
from typing import List, Sequence

from .stores import MessageStore

logger = logging.getLogger(__name__)

# FCM allows up to 500 tokens per multicast request
DEFAULT_BATCH_SIZE = 500


def split(tokens: Sequence[str], max_batch_size: int = DEFAULT_BATCH_SIZE) -> List[List[str]]:
    """
    Partition tokens into consecutive batches of at most max_batch_size.

    Input order is preserved and every token lands in exactly one batch.
    """
    if max_batch_size < 1:
        raise ValueError("max_batch_size must be at least 1")
    return [list(tokens[i:i + max_batch_size]) for i in range(0, len(tokens), max_batch_size)]


class BadgeCounter:
    """Computes the unread badge shown on a group member's devices."""

    def __init__(self, message_store: MessageStore):
        self.message_store = message_store

    async def count(self, group_id: str, user_id: str) -> int:
        """
        Count the group's messages newer than the user's last read time.

        Args:
            group_id: The group the message was posted to
            user_id: The user whose last read time anchors the count

        Returns:
            int: The unread message count
        """
        last_read = await self.message_store.get_last_read_time(group_id, user_id)
        unread = await self.message_store.count_unread_messages(group_id, last_read)
        logger.debug(f"Badge for user {user_id} in group {group_id}: {unread} (last read {last_read.isoformat()})")
        return unread

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Protocol, Sequence

import google.cloud.firestore
from firebase_admin.firestore import FieldFilter

from .schemas import GroupMessage, RecipientToken

logger = logging.getLogger(__name__)

# Firestore accepts at most 30 values in an 'in' filter
FIRESTORE_IN_LIMIT = 30


class MessageStore(Protocol):
    async def get_last_read_time(self, group_id: str, user_id: str) -> datetime:
        ...

    async def count_unread_messages(self, group_id: str, since: datetime) -> int:
        ...

    async def create_message(self, message: GroupMessage) -> None:
        ...


class TokenStore(Protocol):
    async def get_group_member_tokens(self, group_id: str) -> List[RecipientToken]:
        ...

    async def remove_tokens(self, tokens: Iterable[str]) -> int:
        ...


def _chunks(values: Sequence[str], size: int = FIRESTORE_IN_LIMIT) -> Iterable[List[str]]:
    for i in range(0, len(values), size):
        yield list(values[i:i + size])


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


class FirestoreMessageStore:
    """
    Message store over the conversations collection.

    Messages live in conversations/{groupId}/messages and each member's read
    position in conversations/{groupId}/user_stats/{userId}.lastReadAt.
    """

    def __init__(self, firestore_db: google.cloud.firestore.Client):
        self.db = firestore_db

    def _conversation(self, group_id: str):
        return self.db.collection('conversations').document(group_id)

    async def get_last_read_time(self, group_id: str, user_id: str) -> datetime:
        """
        Get when the user last read the group.

        Returns:
            datetime: The last read time, or now if the user never read the group
        """
        stats_ref = self._conversation(group_id).collection('user_stats').document(user_id)
        stats = await asyncio.to_thread(stats_ref.get)

        if not stats.exists:
            return datetime.now(timezone.utc)

        last_read = stats.to_dict().get('lastReadAt')
        if last_read is None:
            return datetime.now(timezone.utc)
        return _as_datetime(last_read)

    async def count_unread_messages(self, group_id: str, since: datetime) -> int:
        messages_ref = self._conversation(group_id).collection('messages')
        query = messages_ref.where(filter=FieldFilter('timestamp', '>', since))
        results = await asyncio.to_thread(query.count(alias='unread').get)
        if not results or not results[0]:
            return 0
        return int(results[0][0].value)

    async def create_message(self, message: GroupMessage) -> None:
        message_ref = self._conversation(message.groupId).collection('messages').document(message.messageId)
        await asyncio.to_thread(message_ref.set, {
            'messageId': message.messageId,
            'senderId': message.senderId,
            'senderName': message.display_sender,
            'content': message.content,
            'messageType': message.messageType,
            'timestamp': message.timestamp,
            'readBy': [message.senderId],
        })
        logger.info(f"Stored message {message.messageId} in group {message.groupId}")


class FirestoreTokenStore:
    """Device tokens from the device_tokens collection, one document per registration."""

    def __init__(self, firestore_db: google.cloud.firestore.Client):
        self.db = firestore_db

    async def get_group_member_tokens(self, group_id: str) -> List[RecipientToken]:
        """
        Get the active device tokens of every participant of a group.

        Returns:
            List of RecipientToken, empty if the group does not exist
        """
        conversation = await asyncio.to_thread(
            self.db.collection('conversations').document(group_id).get
        )
        if not conversation.exists:
            logger.warning(f"Conversation {group_id} not found, no tokens to fetch")
            return []

        participants = conversation.to_dict().get('participants', [])
        tokens: List[RecipientToken] = []

        for chunk in _chunks(participants):
            query = self.db.collection('device_tokens').where(filter=FieldFilter('userId', 'in', chunk))
            token_docs = await asyncio.to_thread(lambda: list(query.stream()))
            for token_doc in token_docs:
                token_data = token_doc.to_dict()
                token = token_data.get('token')
                user_id = token_data.get('userId')
                if not token or not user_id or token_data.get('isActive', True) is False:
                    continue
                tokens.append(RecipientToken(user_id=user_id, token=token))

        return tokens

    async def remove_tokens(self, tokens: Iterable[str]) -> int:
        """
        Delete device token documents the gateway reported as invalid.

        Returns:
            int: Number of documents removed
        """
        removed = 0
        for chunk in _chunks(sorted(set(tokens))):
            query = self.db.collection('device_tokens').where(filter=FieldFilter('token', 'in', chunk))
            token_docs = await asyncio.to_thread(lambda: list(query.stream()))
            for token_doc in token_docs:
                await asyncio.to_thread(token_doc.reference.delete)
                removed += 1
                logger.info(f"Removed invalid token: {token_doc.id}")
        return removed

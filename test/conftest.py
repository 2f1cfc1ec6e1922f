import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import httpx
import pytest
import pytest_asyncio

from groupchat_push.context import FanoutContext
from groupchat_push.fcm_client import FCMClient, StaticCredentialProvider
from groupchat_push.rate_limiter import RateLimiter
from groupchat_push.retry import RetryController
from groupchat_push.schemas import GroupMessage, Notification, RecipientToken, RetryPolicy

PROJECT_ID = "demo-project"
SEND_URL = f"https://fcm.googleapis.com/v1/projects/{PROJECT_ID}/messages:send"


def make_tokens(count: int, prefix: str = "token") -> List[str]:
    return [f"{prefix}_{i:05d}" for i in range(count)]


class FakeGateway:
    """
    Stands in for the FCM endpoint.

    Each token can be scripted with a list of status codes that are served
    in order; once the script runs out, and for unscripted tokens, the
    gateway answers 200.
    """

    def __init__(self):
        self.scripts: Dict[str, List[int]] = {}
        self.requests: List[httpx.Request] = []
        self.calls: Dict[str, int] = defaultdict(int)

    def script(self, token: str, *statuses: int) -> None:
        self.scripts[token] = list(statuses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)
        token = body["message"]["token"]
        self.calls[token] += 1

        pending = self.scripts.get(token)
        status = pending.pop(0) if pending else 200
        if status == 200:
            return httpx.Response(200, json={"name": f"projects/{PROJECT_ID}/messages/{len(self.requests)}"})
        return httpx.Response(status, json={"error": {"code": status, "message": f"scripted {status}", "status": "SCRIPTED"}})

    @property
    def total_calls(self) -> int:
        return len(self.requests)

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]


class FakeMessageStore:
    def __init__(self, message_times: Optional[Iterable[datetime]] = None):
        self.last_read: Dict[tuple, datetime] = {}
        self.message_times = list(message_times or [])
        self.created: List[GroupMessage] = []
        self.fail_reads = False

    async def get_last_read_time(self, group_id: str, user_id: str) -> datetime:
        if self.fail_reads:
            raise RuntimeError("table store unavailable")
        return self.last_read.get((group_id, user_id), datetime.now(timezone.utc))

    async def count_unread_messages(self, group_id: str, since: datetime) -> int:
        return sum(1 for t in self.message_times if t > since)

    async def create_message(self, message: GroupMessage) -> None:
        self.created.append(message)


class FakeTokenStore:
    def __init__(self, tokens: Optional[List[RecipientToken]] = None):
        self.tokens = tokens or []
        self.removed: List[str] = []
        self.fail_lookup = False

    async def get_group_member_tokens(self, group_id: str) -> List[RecipientToken]:
        if self.fail_lookup:
            raise RuntimeError("token lookup failed")
        return list(self.tokens)

    async def remove_tokens(self, tokens: Iterable[str]) -> int:
        tokens = list(tokens)
        self.removed.extend(tokens)
        return len(tokens)


class SleepRecorder:
    """Replaces asyncio.sleep so backoff waits are observed, not waited out."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(gateway):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    fcm = FCMClient(
        project_id=PROJECT_ID,
        credentials=StaticCredentialProvider("test-server-key"),
        http_client=http_client,
    )
    yield fcm
    await http_client.aclose()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def rate_limiter():
    return RateLimiter(requests_per_second=1_000_000)


@pytest.fixture
def retry_controller(sleeps):
    return RetryController(RetryPolicy(max_attempts=3, base_backoff=0.5), sleep=sleeps)


@pytest.fixture
def ctx():
    return FanoutContext.with_timeout(30)


@pytest.fixture
def notification():
    return Notification(
        title="New message from Alice",
        body="See you at 7",
        sound="default",
        data={"groupId": "group-1", "messageId": "msg-1", "type": "group_message"},
    )


@pytest.fixture
def message_store():
    now = datetime.now(timezone.utc)
    return FakeMessageStore(message_times=[now - timedelta(minutes=m) for m in range(1, 6)])

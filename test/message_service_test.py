import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import FakeMessageStore, FakeTokenStore
from groupchat_push.config import Settings
from groupchat_push.fanout import FanoutOrchestrator
from groupchat_push.message_service import MessageService
from groupchat_push.schemas import GroupMessage, RecipientToken


@pytest.fixture
def settings():
    return Settings(
        dispatcher_workers=1,
        dispatcher_queue_size=10,
        fanout_timeout_seconds=30,
        max_notification_content_length=20,
    )


@pytest.fixture
def token_store():
    return FakeTokenStore([
        RecipientToken(user_id="alice", token="alice_phone"),
        RecipientToken(user_id="bob", token="bob_phone"),
        RecipientToken(user_id="bob", token="bob_tablet"),
        RecipientToken(user_id="carol", token="carol_phone"),
    ])


@pytest_asyncio.fixture
async def service(client, rate_limiter, retry_controller, message_store, token_store, settings):
    orchestrator = FanoutOrchestrator(client, rate_limiter, retry_controller)
    service = MessageService(message_store, token_store, orchestrator, settings)
    await service.start()
    yield service
    await service.stop()


def _message(**overrides):
    fields = {"groupId": "group-1", "senderId": "alice", "senderName": "Alice", "content": "See you at 7"}
    fields.update(overrides)
    return GroupMessage(**fields)


def _badges_by_token(gateway):
    return {
        body["message"]["token"]: body["message"]["apns"]["payload"]["aps"]["badge"]
        for body in gateway.bodies()
    }


@pytest.mark.asyncio
async def test_message_is_stored_and_pushed_to_everyone_but_the_sender(service, gateway, message_store):
    message = await service.create_group_message(_message())
    await service.stop()

    assert message_store.created == [message]
    assert set(gateway.calls) == {"bob_phone", "bob_tablet", "carol_phone"}

    body = gateway.bodies()[0]["message"]
    assert body["notification"] == {"title": "New message from Alice", "body": "See you at 7"}
    assert body["data"]["type"] == "group_message"
    assert body["data"]["groupId"] == "group-1"
    assert body["data"]["senderId"] == "alice"
    assert body["data"]["timestamp"] == str(int(message.timestamp.timestamp()))


@pytest.mark.asyncio
async def test_each_recipient_gets_their_own_badge(service, gateway, message_store):
    now = datetime.now(timezone.utc)
    message_store.last_read[("group-1", "bob")] = now - timedelta(minutes=10)
    message_store.last_read[("group-1", "carol")] = now - timedelta(minutes=2, seconds=30)

    await service.create_group_message(_message())
    await service.stop()

    assert _badges_by_token(gateway) == {"bob_phone": 5, "bob_tablet": 5, "carol_phone": 2}


@pytest.mark.asyncio
async def test_unregistered_tokens_are_pruned(service, gateway, token_store):
    gateway.script("carol_phone", 404)

    await service.create_group_message(_message())
    await service.stop()

    assert token_store.removed == ["carol_phone"]


@pytest.mark.asyncio
async def test_token_lookup_failure_still_creates_message(service, gateway, message_store, token_store):
    token_store.fail_lookup = True

    message = await service.create_group_message(_message())
    await service.stop()

    assert message_store.created == [message]
    assert gateway.total_calls == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{"content": ""}, {"senderId": ""}, {"groupId": ""}])
async def test_invalid_message_is_rejected(service, message_store, overrides):
    with pytest.raises(ValueError):
        await service.create_group_message(_message(**overrides))
    assert message_store.created == []


@pytest.mark.asyncio
async def test_long_content_is_truncated(service):
    notification = service.build_notification(_message(content="x" * 50))
    assert notification.body == "x" * 20 + "..."
    assert notification.sound == "default"


@pytest.mark.asyncio
async def test_deliver_merges_recipient_reports(service, gateway):
    recipients = [
        RecipientToken(user_id="bob", token="bob_phone"),
        RecipientToken(user_id="carol", token="carol_phone"),
        RecipientToken(user_id="dave", token="not a token"),
    ]

    report = await service.deliver(_message(), recipients)

    assert report.success_count == 2
    # bob and carol share a badge of 0, so both go out in one batch
    assert report.batch_count == 1
    assert report.badge_count == 0
    assert report.invalid_tokens == {"not a token"}


@pytest.mark.asyncio
async def test_single_recipient_report_keeps_its_badge(service, gateway, message_store):
    message_store.last_read[("group-1", "bob")] = datetime.now(timezone.utc) - timedelta(minutes=10)

    report = await service.deliver(_message(), [RecipientToken(user_id="bob", token="bob_phone")])

    assert _badges_by_token(gateway) == {"bob_phone": 5}
    assert report.badge_count == 5


@pytest.mark.asyncio
async def test_differing_badges_clear_the_report_badge(service, message_store, token_store):
    message_store.last_read[("group-1", "bob")] = datetime.now(timezone.utc) - timedelta(minutes=10)

    report = await service.deliver(_message(), token_store.tokens[1:])

    assert report.success_count == 3
    assert report.badge_count is None


class CountingOrchestrator(FanoutOrchestrator):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    async def send_group_message(self, ctx, notification, tokens, group_id=None, reader_id=None):
        self.calls.append((notification.badge_count, list(tokens)))
        return await super().send_group_message(ctx, notification, tokens, group_id, reader_id)


@pytest.mark.asyncio
async def test_recipients_sharing_a_badge_are_batched_together(client, rate_limiter, retry_controller,
                                                                message_store, token_store, settings, gateway):
    message_store.last_read[("group-1", "carol")] = datetime.now(timezone.utc) - timedelta(minutes=10)
    recipients = [RecipientToken(user_id=f"user{n}", token=f"user{n}_phone") for n in range(40)]
    recipients.append(RecipientToken(user_id="carol", token="carol_phone"))
    orchestrator = CountingOrchestrator(client, rate_limiter, retry_controller)
    service = MessageService(message_store, token_store, orchestrator, settings)

    report = await service.deliver(_message(), recipients)

    assert sorted((badge, len(tokens)) for badge, tokens in orchestrator.calls) == [(0, 40), (5, 1)]
    assert report.success_count == 41
    assert _badges_by_token(gateway)["carol_phone"] == 5


class SlowMessageStore(FakeMessageStore):
    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def get_last_read_time(self, group_id, user_id):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return await super().get_last_read_time(group_id, user_id)


@pytest.mark.asyncio
async def test_badge_lookups_are_capped(client, rate_limiter, retry_controller, token_store):
    store = SlowMessageStore()
    settings = Settings(badge_lookup_concurrency=3)
    service = MessageService(store, token_store, FanoutOrchestrator(client, rate_limiter, retry_controller), settings)

    badges = await service.recipient_badges("group-1", [f"user{n}" for n in range(12)], 0, [])

    assert len(badges) == 12
    assert store.peak == 3


@pytest.mark.asyncio
async def test_failed_badge_lookup_is_reported(service, gateway, message_store, token_store):
    message_store.fail_reads = True

    report = await service.deliver(_message(), token_store.tokens[1:])

    assert report.success_count == 3
    assert report.badge_count == 0
    assert len(report.errors) == 2
    assert all(e.startswith("badge count lookup failed") for e in report.errors)


@pytest.mark.asyncio
async def test_message_is_created_when_dispatcher_is_not_running(client, rate_limiter, retry_controller,
                                                                 message_store, token_store, settings, gateway):
    service = MessageService(message_store, token_store,
                             FanoutOrchestrator(client, rate_limiter, retry_controller), settings)

    message = await service.create_group_message(_message())

    assert message_store.created == [message]
    assert gateway.total_calls == 0

import pytest

from groupchat_push.errors import InvalidMessageError, InvalidPriorityError, MessageTooBigError
from groupchat_push.payload import (
    AndroidOverride,
    ApnsOverride,
    PayloadOptions,
    Platform,
    build_message,
    platform_overrides,
)
from groupchat_push.schemas import Notification


def test_build_message_has_common_block_and_both_platforms(notification):
    body = build_message("tok_1", notification.with_badge(4), PayloadOptions(
        android_channel_id="support_group_messages",
        android_click_action="OPEN_GROUP_CHAT",
        default_sound="default",
    ))
    message = body["message"]

    assert message["token"] == "tok_1"
    assert message["notification"] == {"title": "New message from Alice", "body": "See you at 7"}
    assert message["data"]["groupId"] == "group-1"

    assert message["android"] == {
        "priority": "HIGH",
        "notification": {
            "click_action": "OPEN_GROUP_CHAT",
            "channel_id": "support_group_messages",
            "sound": "default",
        },
    }
    assert message["apns"]["headers"] == {"apns-priority": "10"}
    assert message["apns"]["payload"]["aps"] == {
        "alert": {"title": "New message from Alice", "body": "See you at 7"},
        "badge": 4,
        "sound": "default",
    }


def test_normal_priority_maps_to_each_platform():
    body = build_message("tok", Notification(title="t", priority="normal"))
    assert body["message"]["android"]["priority"] == "NORMAL"
    assert body["message"]["apns"]["headers"]["apns-priority"] == "5"


def test_overrides_are_tagged_per_platform(notification):
    overrides = platform_overrides(notification, PayloadOptions())
    assert [o.platform for o in overrides] == [Platform.ANDROID, Platform.APNS]
    assert isinstance(overrides[0], AndroidOverride)
    assert isinstance(overrides[1], ApnsOverride)


def test_empty_data_is_omitted():
    body = build_message("tok", Notification(body="hi"))
    assert "data" not in body["message"]


def test_title_or_body_required():
    with pytest.raises(InvalidMessageError):
        build_message("tok", Notification())


def test_unknown_priority_is_rejected():
    with pytest.raises(InvalidPriorityError):
        build_message("tok", Notification(title="t", priority="urgent"))


def test_oversized_message_is_rejected():
    with pytest.raises(MessageTooBigError):
        build_message("tok", Notification(title="t", body="x" * 5000))


def test_notification_data_values_become_strings():
    n = Notification(title="t", data={"timestamp": 1700000000, "count": 3})
    assert n.data == {"timestamp": "1700000000", "count": "3"}

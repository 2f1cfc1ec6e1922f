"""
FCM HTTP v1 message construction.

A message carries one common block (token, notification, data) and one
override per target platform. Each override is its own model tagged by
``platform`` and renders only the fields that platform understands, so the
Android and APNs specifics never share a struct.
"""
import json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .errors import InvalidMessageError, InvalidPriorityError, MessageTooBigError
from .schemas import Notification, NotificationPriority

# FCM rejects messages whose payload exceeds 4KB
MAX_MESSAGE_BYTES = 4096


class Platform(str, Enum):
    ANDROID = "android"
    APNS = "apns"


class AndroidOverride(BaseModel):
    platform: Literal[Platform.ANDROID] = Platform.ANDROID
    priority: NotificationPriority = NotificationPriority.HIGH
    click_action: Optional[str] = None
    channel_id: Optional[str] = None
    sound: Optional[str] = None

    def render(self, notification: Notification) -> Dict[str, Any]:
        android_notification = {}
        if self.click_action:
            android_notification["click_action"] = self.click_action
        if self.channel_id:
            android_notification["channel_id"] = self.channel_id
        if self.sound:
            android_notification["sound"] = self.sound

        config: Dict[str, Any] = {"priority": self.priority.value.upper()}
        if android_notification:
            config["notification"] = android_notification
        return config


class ApnsOverride(BaseModel):
    platform: Literal[Platform.APNS] = Platform.APNS
    priority: NotificationPriority = NotificationPriority.HIGH
    sound: Optional[str] = None

    def render(self, notification: Notification) -> Dict[str, Any]:
        aps: Dict[str, Any] = {
            "alert": {
                "title": notification.title,
                "body": notification.body,
            },
            "badge": notification.badge_count,
        }
        if self.sound:
            aps["sound"] = self.sound
        return {
            # 10 delivers immediately, 5 lets the device batch for power
            "headers": {"apns-priority": "10" if self.priority == NotificationPriority.HIGH else "5"},
            "payload": {"aps": aps},
        }


PlatformOverride = Union[AndroidOverride, ApnsOverride]


class PayloadOptions(BaseModel):
    """Fixed per-deployment extras applied to every message"""
    android_channel_id: Optional[str] = None
    android_click_action: Optional[str] = None
    default_sound: Optional[str] = None


def resolve_priority(notification: Notification) -> NotificationPriority:
    if notification.priority is None or notification.priority == "":
        return NotificationPriority.HIGH
    try:
        return NotificationPriority(notification.priority)
    except ValueError:
        raise InvalidPriorityError(f"invalid notification priority {notification.priority!r}")


def validate_notification(notification: Notification) -> None:
    """
    Raises:
        InvalidMessageError: If neither title nor body is present
        InvalidPriorityError: If the priority is not "high" or "normal"
    """
    if notification is None:
        raise InvalidMessageError("notification is missing")
    if not notification.title and not notification.body:
        raise InvalidMessageError("either title or body must be present")
    resolve_priority(notification)


def platform_overrides(notification: Notification, options: PayloadOptions) -> List[PlatformOverride]:
    priority = resolve_priority(notification)
    sound = notification.sound or options.default_sound
    return [
        AndroidOverride(
            priority=priority,
            click_action=options.android_click_action,
            channel_id=options.android_channel_id,
            sound=sound,
        ),
        ApnsOverride(priority=priority, sound=sound),
    ]


def build_message(token: str, notification: Notification,
                  options: Optional[PayloadOptions] = None) -> Dict[str, Any]:
    """
    Build the request body for messages:send addressed to a single token.

    Raises:
        InvalidMessageError, InvalidPriorityError: If the notification is invalid
        MessageTooBigError: If the encoded message exceeds the gateway limit
    """
    options = options or PayloadOptions()
    validate_notification(notification)

    message: Dict[str, Any] = {
        "token": token,
        "notification": {
            "title": notification.title,
            "body": notification.body,
        },
    }
    if notification.data:
        message["data"] = dict(notification.data)

    for override in platform_overrides(notification, options):
        message[override.platform.value] = override.render(notification)

    body = {"message": message}
    size = len(json.dumps(body).encode("utf-8"))
    if size > MAX_MESSAGE_BYTES:
        raise MessageTooBigError(f"message is {size} bytes, limit is {MAX_MESSAGE_BYTES}")
    return body

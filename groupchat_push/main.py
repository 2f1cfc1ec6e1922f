import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .fanout import FanoutOrchestrator
from .fcm_client import FCMClient, StaticCredentialProvider
from .firebase import FirebaseApp, FirebaseCredentialProvider
from .logging_config import setup_logging
from .message_service import MessageService
from .payload import PayloadOptions
from .schemas import GroupMessage
from .stores import FirestoreMessageStore, FirestoreTokenStore

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = ('new_message', 'group_message')


async def process_event_line(service: MessageService, line: str) -> bool:
    """
    Handle one new_message event read as a JSON line.

    Returns:
        bool: True if the message was created, False if the event was skipped
    """
    line = line.strip()
    if not line:
        return False

    try:
        event_data = json.loads(line)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in event: {str(e)}")
        return False

    if not isinstance(event_data, dict):
        logger.error("Event must be a JSON object")
        return False

    event_type = event_data.get('event') or event_data.get('eventType')
    if event_type not in SUPPORTED_EVENTS:
        logger.warning(f"Unknown event type: {event_type}")
        return False

    try:
        message = GroupMessage.model_validate(event_data)
        await service.create_group_message(message)
    except (ValidationError, ValueError) as e:
        logger.error(f"Missing or invalid fields in message event: {str(e)}")
        return False
    except Exception as e:
        logger.error(f"Error creating group message: {str(e)}")
        return False

    return True


def build_service(settings: Settings, firebase: FirebaseApp, client: FCMClient) -> MessageService:
    firestore_db = firebase.get_firestore_db()
    message_store = FirestoreMessageStore(firestore_db)
    token_store = FirestoreTokenStore(firestore_db)
    orchestrator = FanoutOrchestrator.from_settings(settings, client)
    return MessageService(message_store, token_store, orchestrator, settings)


def build_client(settings: Settings, firebase: FirebaseApp) -> FCMClient:
    if settings.fcm_server_key:
        credentials = StaticCredentialProvider(settings.fcm_server_key)
    else:
        credentials = FirebaseCredentialProvider(firebase.credential)

    return FCMClient(
        project_id=settings.fcm_project_id or firebase.project_id,
        credentials=credentials,
        endpoint=settings.fcm_endpoint,
        request_timeout=settings.fcm_request_timeout_seconds,
        payload_options=PayloadOptions(
            android_channel_id=settings.android_channel_id,
            android_click_action=settings.android_click_action,
            default_sound=settings.notification_sound,
        ),
    )


async def run(settings: Optional[Settings] = None) -> int:
    """
    Read new_message events from stdin until EOF or a shutdown signal.

    stdin must be a pipe, e.g. the output of a queue consumer.
    """
    settings = settings or default_settings
    loop = asyncio.get_running_loop()

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    firebase = FirebaseApp(settings)
    async with build_client(settings, firebase) as client:
        service = build_service(settings, firebase, client)
        await service.start()

        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

        processed = 0
        stop_task = asyncio.create_task(stop.wait())
        try:
            while not stop.is_set():
                read_task = asyncio.create_task(reader.readline())
                done, _ = await asyncio.wait({read_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
                if read_task not in done:
                    read_task.cancel()
                    logger.info("Shutdown signal received, finishing queued notifications...")
                    break
                line = read_task.result()
                if not line:
                    logger.info("End of input, finishing queued notifications...")
                    break
                if await process_event_line(service, line.decode('utf-8')):
                    processed += 1
        finally:
            stop_task.cancel()
            await service.stop()

    logger.info(f"Group push service shut down gracefully after {processed} messages")
    return 0


def main() -> int:
    """Main entry point for the application."""
    setup_logging()
    logger.info(f"Starting group push service in {default_settings.environment} environment")

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Service stopped by keyboard interrupt")
        return 0
    except Exception as e:
        logger.critical(f"Fatal error in group push service: {str(e)}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

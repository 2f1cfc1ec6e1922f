import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import firebase_admin
import google.cloud.firestore
from firebase_admin import credentials, firestore

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def load_service_account(cert_json: Optional[str]) -> Dict[str, Any]:
    """
    Parse the service account JSON held in FIREBASE_SECRET.

    The secret is sometimes stored double-encoded, so a string result is
    decoded a second time.
    """
    if not cert_json:
        raise ValueError("Firebase secret not configured")
    cert_dict = json.loads(cert_json)
    if isinstance(cert_dict, str):
        cert_dict = json.loads(cert_dict)
    return cert_dict


class FirebaseApp:
    """Process-wide Firebase app, shared by the Firestore stores and the FCM credential provider."""
    _instance = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super(FirebaseApp, cls).__new__(cls)
            cls._instance.initialized = False
        return cls._instance

    def __init__(self, settings: Optional[Settings] = None):
        if self.initialized:
            return
        settings = settings or default_settings
        self.db_url = settings.firebase_db_url
        self.app = None
        self.credential = None
        self.project_id = None
        self.firestore_db = None
        self.connect(settings.firebase_secret)
        self.initialized = True

    def connect(self, cert_json: Optional[str]) -> None:
        try:
            # Try to get the existing default app
            self.app = firebase_admin.get_app()
            self.credential = self.app.credential
            logger.info("Retrieved existing Firebase app")
        except ValueError:
            cert_dict = load_service_account(cert_json)
            self.credential = credentials.Certificate(cert_dict)
            self.app = firebase_admin.initialize_app(
                credential=self.credential,
                options={"databaseURL": self.db_url},
            )
            logger.info(f"Firebase app initialized. App name: {self.app.name}")
        self.project_id = self.app.project_id
        self.firestore_db = firestore.client(self.app)

    def get_firestore_db(self) -> google.cloud.firestore.Client:
        return self.firestore_db


class FirebaseCredentialProvider:
    """
    Issues OAuth2 bearer tokens for FCM from the Firebase service account.

    Tokens are cached and refreshed shortly before they expire. Refreshing
    blocks on an HTTP call inside google-auth, so it runs in a worker thread.
    """

    REFRESH_MARGIN = timedelta(minutes=5)

    def __init__(self, credential: credentials.Base):
        self._credential = credential
        self._token: Optional[str] = None
        self._expiry: Optional[datetime] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if self._token is None:
            return False
        if self._expiry is None:
            return True
        return datetime.now(timezone.utc) + self.REFRESH_MARGIN < self._expiry

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token
        async with self._lock:
            if not self._is_fresh():
                info = await asyncio.to_thread(self._credential.get_access_token)
                self._token = info.access_token
                expiry = info.expiry
                if expiry is not None and expiry.tzinfo is None:
                    # google-auth reports naive UTC datetimes
                    expiry = expiry.replace(tzinfo=timezone.utc)
                self._expiry = expiry
                logger.info("Refreshed FCM access token")
        return self._token

import asyncio
import json
import logging
from typing import Optional, Protocol

import httpx

from . import token_validator
from .context import FanoutContext
from .errors import (
    AuthenticationError,
    ContextTimeout,
    InvalidMessageError,
    NetworkError,
    NotRegisteredError,
    ServerError,
    UnexpectedStatusError,
)
from .payload import PayloadOptions, build_message
from .schemas import Notification

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class CredentialProvider(Protocol):
    async def get_token(self) -> str:
        ...


class StaticCredentialProvider:
    """Serves a pre-issued bearer token"""

    def __init__(self, token: str):
        if not token:
            raise ValueError("bearer token is required")
        self._token = token

    async def get_token(self) -> str:
        return self._token


def _error_detail(response: httpx.Response) -> str:
    """Pull the gateway's error message out of a JSON error body."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        return error.get("message") or error.get("status") or response.text
    return response.text


def handle_response(response: httpx.Response) -> None:
    """
    Map a gateway response to success or a classified PushError.

    Raises:
        InvalidMessageError: 400
        AuthenticationError: 401
        NotRegisteredError: 404
        ServerError: 429 and any 5xx
        UnexpectedStatusError: Any other non-200 status
    """
    status = response.status_code
    if status == 200:
        return

    detail = _error_detail(response)
    if status == 400:
        raise InvalidMessageError(detail, status_code=status)
    if status == 401:
        raise AuthenticationError(detail, status_code=status)
    if status == 404:
        raise NotRegisteredError(detail, status_code=status)
    if status == 429 or status >= 500:
        raise ServerError(detail, status_code=status)
    raise UnexpectedStatusError(f"unexpected status code {status}: {detail}", status_code=status)


class FCMClient:
    """
    Firebase Cloud Messaging HTTP v1 client.

    Issues exactly one messages:send request per call to send(). It never
    retries or rate limits on its own; the fan-out engine wraps each call
    with both.
    """

    def __init__(self,
                 project_id: str,
                 credentials: CredentialProvider,
                 http_client: Optional[httpx.AsyncClient] = None,
                 endpoint: str = DEFAULT_ENDPOINT,
                 request_timeout: float = 10.0,
                 payload_options: Optional[PayloadOptions] = None):
        if not project_id:
            raise ValueError("project ID is required")
        self.project_id = project_id
        self.credentials = credentials
        self.url = endpoint.format(project_id=project_id)
        self.request_timeout = request_timeout
        self.payload_options = payload_options or PayloadOptions()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        logger.info(f"FCM client initialized for project {project_id}")

    async def __aenter__(self) -> "FCMClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def send(self, ctx: FanoutContext, token: str, notification: Notification) -> None:
        """
        Send a notification to a single device token.

        Args:
            ctx: Context carrying the deadline; a context without one is rejected
            token: Device registration token
            notification: The notification to deliver

        Raises:
            ContextTimeout: If ctx has no deadline, or it elapses during the call
            InvalidTokenError: If the token is malformed (no request is made)
            PushError: Classified gateway or transport failure
        """
        ctx.require_deadline()
        token_validator.validate(token)
        body = build_message(token, notification, self.payload_options)
        await self._post(ctx, body)

    async def _post(self, ctx: FanoutContext, body: dict) -> None:
        ctx.check()
        bearer = await self.credentials.get_token()
        headers = {
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }

        remaining = ctx.remaining()
        try:
            response = await asyncio.wait_for(
                self._http.post(
                    self.url,
                    json=body,
                    headers=headers,
                    timeout=min(self.request_timeout, remaining),
                ),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            raise ContextTimeout("context deadline exceeded during request")
        except httpx.TimeoutException as e:
            if ctx.expired:
                raise ContextTimeout("context deadline exceeded during request")
            raise NetworkError(f"request timed out: {str(e)}")
        except httpx.TransportError as e:
            raise NetworkError(f"error sending request: {str(e)}")

        handle_response(response)

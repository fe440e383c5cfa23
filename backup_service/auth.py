"""
Module providing bearer tokens for the remote API.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from .config import BackupConfig, TOKEN_URL
from .errors import AuthError

logger = logging.getLogger(__name__)

# Refresh this many seconds before the reported expiry.
EXPIRY_SLACK_SECONDS = 60


class CredentialProvider:
    """Supplies the current bearer token."""

    async def get_token(self) -> str:
        raise NotImplementedError

    async def refresh(self, stale_token: str) -> str:
        """Return a token to use after ``stale_token`` was rejected.

        Raises:
            AuthError: If no replacement token can be obtained
        """
        raise NotImplementedError


class StaticTokenProvider(CredentialProvider):
    """A pre-issued token that cannot be refreshed."""

    def __init__(self, token: str):
        if not token:
            raise ValueError("token cannot be empty")
        self._token = token

    async def get_token(self) -> str:
        return self._token

    async def refresh(self, stale_token: str) -> str:
        raise AuthError("Access token was rejected and no refresh token is configured",
                        status_code=401)


class RefreshTokenProvider(CredentialProvider):
    """Exchanges a long-lived refresh token for short-lived access tokens."""

    def __init__(self, app_key: str, app_secret: str, refresh_token: str,
                 http_client: httpx.AsyncClient, token_url: str = TOKEN_URL,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the provider.

        Args:
            app_key: OAuth client id
            app_secret: OAuth client secret
            refresh_token: Refresh token issued to the app
            http_client: Client used for the token exchange
            token_url: OAuth token endpoint
            clock: Monotonic time source, used for expiry
        """
        self._app_key = app_key
        self._app_secret = app_secret
        self._refresh_token = refresh_token
        self._http = http_client
        self._token_url = token_url
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_valid(self) -> bool:
        if self._token is None:
            return False
        return self._expires_at is None or self._clock() < self._expires_at

    async def get_token(self) -> str:
        async with self._lock:
            if not self._is_valid():
                await self._exchange()
            return self._token

    async def refresh(self, stale_token: str) -> str:
        async with self._lock:
            # Another upload may already have replaced the stale token.
            if self._token != stale_token and self._is_valid():
                return self._token
            await self._exchange()
            return self._token

    async def _exchange(self) -> None:
        logger.debug("Exchanging refresh token for access token")
        try:
            response = await self._http.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
                auth=(self._app_key, self._app_secret),
            )
        except httpx.HTTPError as e:
            raise AuthError("Token exchange failed", body=str(e)) from e

        if response.status_code != 200:
            raise AuthError("Token exchange failed", status_code=response.status_code,
                            body=response.text)

        try:
            payload = response.json()
            token = payload["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError("Token exchange returned no access_token",
                            status_code=response.status_code, body=response.text) from e

        expires_in = payload.get("expires_in")
        self._token = token
        self._expires_at = (
            self._clock() + max(float(expires_in) - EXPIRY_SLACK_SECONDS, 0)
            if expires_in is not None else None
        )
        logger.info("Obtained access token")


def create_credential_provider(config: BackupConfig,
                               http_client: httpx.AsyncClient) -> CredentialProvider:
    """Pick the credential provider the configuration describes.

    A refresh token wins over a static token since it survives expiry.
    """
    if config.has_refresh_credentials:
        return RefreshTokenProvider(
            app_key=config.app_key,
            app_secret=config.app_secret,
            refresh_token=config.refresh_token,
            http_client=http_client,
            token_url=config.token_url,
        )
    return StaticTokenProvider(config.token)

"""
OAuth2 authorization-code helper.

The interactive part (opening a browser, catching the redirect) belongs to
the host application, so it is injected as an `authorizer` callable that gets
the namespace and config and returns the authorization code. Token exchange
and refresh happen here and the results land in the credential store under
`{namespace}_access_token`, `{namespace}_refresh_token`, `{namespace}_expires_at`.
"""

import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from src.signal_hub.credentials import CredentialStore
from src.signal_hub.errors import (
    AuthExpiredError,
    ConfigurationError,
    CredentialsRevokedError,
    ProviderAPIError,
)
from src.signal_hub.http_client import HttpClient
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import OAuthConfig

log = get_logger(__name__)

Authorizer = Callable[[str, OAuthConfig], Union[str, Awaitable[str]]]


@dataclass
class OAuthResult:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None  # epoch seconds


class OAuthHelper:
    def __init__(
        self,
        credentials: CredentialStore,
        http: Optional[HttpClient] = None,
        authorizer: Optional[Authorizer] = None,
    ):
        self.credentials = credentials
        self.http = http or HttpClient(service="oauth")
        self.authorizer = authorizer

    async def start(self, namespace: str, config: OAuthConfig) -> Dict[str, str]:
        if not config.client_id:
            raise ConfigurationError(f"{namespace}: OAuth client id is not configured")
        if self.authorizer is None:
            raise ConfigurationError("OAuth authorization is not available in this environment")
        code = self.authorizer(namespace, config)
        if inspect.isawaitable(code):
            code = await code
        if not code:
            raise ConfigurationError(f"{namespace}: authorization was cancelled")
        return {"code": code}

    async def exchange(self, namespace: str, code: str, config: OAuthConfig) -> OAuthResult:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": config.client_id,
        }
        if config.redirect_uri:
            payload["redirect_uri"] = config.redirect_uri
        body = await self.http.post_form(config.token_url, data=payload)
        result = self._store(namespace, body)
        log.info("oauth_exchanged", namespace=namespace)
        return result

    async def refresh(self, namespace: str, config: OAuthConfig) -> OAuthResult:
        refresh_token = self.credentials.get_secret(f"{namespace}_refresh_token")
        if not refresh_token:
            raise CredentialsRevokedError(f"{namespace}: no refresh token stored")
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
        }
        try:
            body = await self.http.post_form(config.token_url, data=payload)
        except AuthExpiredError as e:
            raise CredentialsRevokedError(f"{namespace}: refresh token rejected") from e
        except ProviderAPIError as e:
            # invalid_grant comes back as 400
            if e.status == 400:
                raise CredentialsRevokedError(f"{namespace}: refresh token rejected") from e
            raise
        result = self._store(namespace, body, fallback_refresh=refresh_token)
        log.info("oauth_refreshed", namespace=namespace)
        return result

    def clear(self, namespace: str):
        for suffix in ("access_token", "refresh_token", "expires_at"):
            self.credentials.delete_secret(f"{namespace}_{suffix}")

    def _store(self, namespace: str, body: Dict[str, Any], fallback_refresh: Optional[str] = None) -> OAuthResult:
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise ProviderAPIError(f"{namespace}: token response missing access_token")
        refresh_token = body.get("refresh_token") or fallback_refresh
        expires_at = None
        if body.get("expires_in") is not None:
            expires_at = time.time() + float(body["expires_in"])

        self.credentials.set_secret(f"{namespace}_access_token", access_token)
        if refresh_token:
            self.credentials.set_secret(f"{namespace}_refresh_token", refresh_token)
        if expires_at is not None:
            self.credentials.set_secret(f"{namespace}_expires_at", str(expires_at))
        return OAuthResult(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)

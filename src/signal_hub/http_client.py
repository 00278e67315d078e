import asyncio
from typing import Any, Dict, Optional

import requests

from src.signal_hub.errors import AuthExpiredError, NetworkError, ProviderAPIError, RateLimitedError
from src.signal_hub.logging_setup import get_logger

log = get_logger(__name__)

DEFAULT_TIMEOUT = 15.0


class HttpClient:
    """
    Thin requests wrapper shared by providers.

    Maps transport and status failures onto the provider error hierarchy so
    the orchestrator can tell an expired token (401) from a flaky network.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, service: str = "remote"):
        self.timeout = timeout
        self.service = service

    def request(self, method: str, url: str, **kwargs) -> Any:
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = requests.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Request to {self.service} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot connect to {self.service}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Error communicating with {self.service}: {e}") from e

        status = response.status_code
        if status == 401:
            raise AuthExpiredError(f"{self.service} authentication expired")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_after = None
            raise RateLimitedError(f"{self.service} rate limit exceeded", retry_after=retry_after)
        if status >= 400:
            log.warning("http_error", service=self.service, status=status, url=url)
            raise ProviderAPIError(f"{self.service} API error: {status} {response.reason}", status=status)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderAPIError(f"{self.service} returned invalid JSON", status=status) from e

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        return await asyncio.to_thread(self.request, "GET", url, params=params, headers=headers)

    async def post_form(self, url: str, data: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Any:
        return await asyncio.to_thread(self.request, "POST", url, data=data, headers=headers)

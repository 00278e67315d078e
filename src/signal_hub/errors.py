"""
Error taxonomy for the signal hub.

Provider errors are caught at the orchestrator boundary and turned into
`last_error` text plus a `sync_failed` event. Configuration errors are raised
straight to the caller of `connect()` and are never retried.
"""


class SignalHubError(Exception):
    """Base class for all signal hub errors."""
    pass


class ConfigurationError(SignalHubError):
    """Missing client id, unavailable auth mechanism, bad settings."""
    pass


class PluginNotFoundError(SignalHubError):
    def __init__(self, provider_id: str):
        super().__init__(f"Plugin {provider_id} not found")
        self.provider_id = provider_id


class AlreadyConnectedError(SignalHubError):
    pass


class ProviderError(SignalHubError):
    """A provider call failed (auth, network, remote API)."""
    pass


class AuthExpiredError(ProviderError):
    """Stored credentials were rejected; a token refresh may fix it."""
    pass


class NetworkError(ProviderError):
    pass


class RateLimitedError(NetworkError):
    """HTTP 429. Retried on the next scheduled tick like any network error."""

    def __init__(self, message: str, retry_after: float = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderAPIError(ProviderError):
    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class CredentialsRevokedError(SignalHubError):
    """The refresh grant is gone; the user has to reconnect."""
    pass


class PersistenceError(SignalHubError):
    pass

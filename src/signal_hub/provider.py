"""
Provider interface.

A provider is a stateless-ish connector: it knows how to authenticate against
one upstream service, pull data newer than a timestamp and normalize it into
Signals. Everything stateful (enabled/connected flags, timeline, timers) lives
in the registry and orchestrator; the only state a provider touches directly is
its credentials.

Providers that allow several accounts (`multi_instance`) take an `instance_id`
on every call and keep their credentials under instance-scoped keys.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from src.signal_hub.credentials import CredentialStore
from src.signal_hub.errors import ConfigurationError, CredentialsRevokedError
from src.signal_hub.http_client import HttpClient
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import (
    AccountInfo,
    AuthType,
    Domain,
    OAuthConfig,
    PluginKey,
    Signal,
    SignalType,
    SyncSchedule,
)
from src.signal_hub.oauth import OAuthHelper
from src.signal_hub.persistence import PersistenceGateway
from src.signal_hub.wellness import (
    WellnessActivity,
    WellnessRecovery,
    WellnessSleep,
    WellnessStrain,
    wellness_to_signals,
)

log = get_logger(__name__)

CATEGORIES = ("health-fitness", "productivity", "context")


class Provider(ABC):
    """Capability descriptor plus the connect/sync contract."""

    id: str = ""
    name: str = ""
    description: str = ""
    icon: str = ""
    domains: List[Domain] = []
    category: str = "context"
    auth_type: AuthType = AuthType.NONE
    capabilities: FrozenSet[SignalType] = frozenset()
    sync_schedule: SyncSchedule = SyncSchedule()
    multi_instance: bool = False
    supports_account_info: bool = False

    def __init__(
        self,
        credentials: CredentialStore,
        gateway: Optional[PersistenceGateway] = None,
        http: Optional[HttpClient] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        if self.category not in CATEGORIES:
            raise ConfigurationError(f"{self.id}: unknown category {self.category}")
        self.credentials = credentials
        self.gateway = gateway
        self.http = http or HttpClient(service=self.name or self.id)
        self.settings = dict(settings or {})

    @property
    def oauth_config(self) -> Optional[OAuthConfig]:
        return None

    # --- credentials ---

    def secret_namespace(self, instance_id: Optional[str] = None) -> str:
        if instance_id:
            return f"{self.id}_{instance_id}"
        return self.id

    def secret_key(self, name: str, instance_id: Optional[str] = None) -> str:
        return f"{self.secret_namespace(instance_id)}_{name}"

    def get_secret(self, name: str, instance_id: Optional[str] = None) -> Optional[str]:
        return self.credentials.get_secret(self.secret_key(name, instance_id))

    def access_token(self, instance_id: Optional[str] = None) -> str:
        token = self.get_secret("access_token", instance_id)
        if not token:
            raise ConfigurationError(f"{self.name} is not connected")
        return token

    # --- lifecycle ---

    def is_connected(self, instance_id: Optional[str] = None) -> bool:
        if self.auth_type == AuthType.NONE:
            return True
        return bool(self.get_secret("access_token", instance_id))

    async def connect(self, instance_id: Optional[str] = None):
        """Auth handshake. Providers without auth have nothing to do."""
        return None

    async def disconnect(self, instance_id: Optional[str] = None):
        return None

    @abstractmethod
    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        pass

    async def get_last_sync(self, instance_id: Optional[str] = None) -> Optional[datetime]:
        if self.gateway is None:
            return None
        key = PluginKey(self.id, instance_id).storage_key
        state = await asyncio.to_thread(self.gateway.get_plugin_state, key)
        return state.last_sync if state else None

    async def get_account_info(self, instance_id: Optional[str] = None) -> Optional[AccountInfo]:
        return None

    async def refresh_credentials(self, instance_id: Optional[str] = None) -> bool:
        """Return True when fresh credentials were obtained."""
        return False

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "domains": [d.value for d in self.domains],
            "category": self.category,
            "auth_type": self.auth_type.value,
            "capabilities": sorted(c.value for c in self.capabilities),
            "multi_instance": self.multi_instance,
            "supports_account_info": self.supports_account_info,
        }


class OAuthProvider(Provider):
    """
    Provider authenticated through the OAuth helper. Subclasses set
    `auth_url`, `token_url` and `scopes`; the client id comes from settings or
    the credential store (`{provider}_client_id`).
    """

    auth_type = AuthType.OAUTH2
    auth_url: str = ""
    token_url: str = ""
    scopes: List[str] = []

    def __init__(self, credentials: CredentialStore, oauth: Optional[OAuthHelper] = None, **kwargs):
        super().__init__(credentials, **kwargs)
        self.oauth = oauth or OAuthHelper(credentials)

    @property
    def oauth_config(self) -> OAuthConfig:
        client_id = self.settings.get("client_id") or self.credentials.get_secret(f"{self.id}_client_id") or ""
        return OAuthConfig(
            auth_url=self.auth_url,
            token_url=self.token_url,
            client_id=client_id,
            scopes=list(self.scopes),
            redirect_uri=self.settings.get("redirect_uri"),
        )

    async def connect(self, instance_id: Optional[str] = None):
        config = self.oauth_config
        if not config.client_id:
            raise ConfigurationError(
                f"{self.name} client ID not configured. Set {self.id}_client_id in credentials."
            )
        namespace = self.secret_namespace(instance_id)
        try:
            result = await self.oauth.start(namespace, config)
            await self.oauth.exchange(namespace, result["code"], config)
        except Exception:
            self.oauth.clear(namespace)
            raise
        log.info("provider_authorized", provider=self.id, instance=instance_id)

    async def disconnect(self, instance_id: Optional[str] = None):
        self.oauth.clear(self.secret_namespace(instance_id))

    async def refresh_credentials(self, instance_id: Optional[str] = None) -> bool:
        namespace = self.secret_namespace(instance_id)
        if not self.get_secret("refresh_token", instance_id):
            raise CredentialsRevokedError(f"{self.name}: no refresh token stored")
        await self.oauth.refresh(namespace, self.oauth_config)
        return True

    def token_expired(self, instance_id: Optional[str] = None) -> bool:
        expires_at = self.get_secret("expires_at", instance_id)
        if not expires_at:
            return False
        try:
            return float(expires_at) <= time.time()
        except ValueError:
            return False

    def auth_headers(self, instance_id: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token(instance_id)}"}


class WellnessProvider(OAuthProvider):
    """
    Wearable provider. Subclasses implement the four normalized getters;
    sync fetches them concurrently and converts to signals.
    """

    category = "health-fitness"
    domains = [Domain.HEALTH, Domain.SPORT]

    @abstractmethod
    async def get_recovery(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[WellnessRecovery]:
        pass

    @abstractmethod
    async def get_sleep(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[WellnessSleep]:
        pass

    async def get_strain(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[WellnessStrain]:
        return []

    @abstractmethod
    async def get_activities(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[WellnessActivity]:
        pass

    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        recovery, sleep, strain, activities = await asyncio.gather(
            self.get_recovery(since, instance_id),
            self.get_sleep(since, instance_id),
            self.get_strain(since, instance_id),
            self.get_activities(since, instance_id),
        )
        return wellness_to_signals(self.id, recovery, sleep, strain, activities)

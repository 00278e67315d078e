"""
Signal hub bootstrap.

Wires the configuration into a ready-to-run hub: credential store, persistence
gateway, providers, registry, orchestrator and entity graph.

Usage:
    hub = SignalHub(load_config())
    await hub.start()
    ...
    await hub.stop()
"""

import asyncio
from typing import Any, Dict, List, Optional

from src.signal_hub.credentials import CredentialStore, FileCredentialStore, InMemoryCredentialStore
from src.signal_hub.entity_graph import EntityGraph
from src.signal_hub.events import EventBus
from src.signal_hub.http_client import HttpClient
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import AuthType, PluginKey
from src.signal_hub.oauth import Authorizer, OAuthHelper
from src.signal_hub.orchestrator import SyncOrchestrator
from src.signal_hub.persistence import InMemoryGateway, PersistenceGateway
from src.signal_hub.provider import Provider
from src.signal_hub.providers.apple_health_provider import AppleHealthProvider, HealthKitBridge
from src.signal_hub.providers.google_provider import GoogleProvider
from src.signal_hub.providers.oura_provider import OuraProvider
from src.signal_hub.providers.time_provider import TimeProvider
from src.signal_hub.providers.weather_provider import WeatherProvider
from src.signal_hub.providers.whoop_provider import WhoopProvider
from src.signal_hub.registry import PluginRegistry
from src.signal_hub.sql_persistence import SQLAlchemyGateway

log = get_logger(__name__)

DEFAULT_PLUGINS = ["time", "weather"]


def build_credentials(config: Dict[str, Any]) -> CredentialStore:
    path = config.get("secrets_path")
    if path:
        return FileCredentialStore(path)
    return InMemoryCredentialStore()


def build_gateway(config: Dict[str, Any]) -> PersistenceGateway:
    persistence = config.get("persistence") or {}
    if persistence.get("backend") == "sqlite":
        return SQLAlchemyGateway(persistence.get("sqlite_url") or "sqlite:///signal_hub.db")
    return InMemoryGateway()


def _oauth_settings(config: Dict[str, Any], provider_id: str) -> Dict[str, Any]:
    section = config.get(provider_id) or {}
    return {k: section[k] for k in ("client_id", "redirect_uri") if section.get(k)}


def build_providers(
    config: Dict[str, Any],
    credentials: CredentialStore,
    gateway: PersistenceGateway,
    http: HttpClient,
    oauth: OAuthHelper,
    healthkit_bridge: Optional[HealthKitBridge] = None,
) -> List[Provider]:
    location = (config.get("weather") or {}).get("location")
    common = {"gateway": gateway, "http": http}
    return [
        TimeProvider(credentials, settings={"location": location}, **common),
        WeatherProvider(credentials, settings={"location": location}, **common),
        GoogleProvider(credentials, oauth=oauth, settings=_oauth_settings(config, "google"), **common),
        WhoopProvider(credentials, oauth=oauth, settings=_oauth_settings(config, "whoop"), **common),
        OuraProvider(credentials, oauth=oauth, settings=_oauth_settings(config, "oura"), **common),
        AppleHealthProvider(credentials, bridge=healthkit_bridge, **common),
    ]


class SignalHub:
    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        credentials: Optional[CredentialStore] = None,
        gateway: Optional[PersistenceGateway] = None,
        event_bus: Optional[EventBus] = None,
        oauth_authorizer: Optional[Authorizer] = None,
        healthkit_bridge: Optional[HealthKitBridge] = None,
        providers: Optional[List[Provider]] = None,
    ):
        self.config = config or {}
        sync_config = self.config.get("sync") or {}
        self.credentials = credentials or build_credentials(self.config)
        self.gateway = gateway or build_gateway(self.config)
        self.event_bus = event_bus or EventBus()
        self.http = HttpClient(timeout=float((self.config.get("http") or {}).get("timeout", 15)))
        self.oauth = OAuthHelper(self.credentials, http=self.http, authorizer=oauth_authorizer)
        self.registry = PluginRegistry(max_events=sync_config.get("max_events", 100))
        self.orchestrator = SyncOrchestrator(
            self.registry,
            gateway=self.gateway,
            event_bus=self.event_bus,
            sync_on_wake=sync_config.get("sync_on_wake", True),
        )
        self.entity_graph = EntityGraph()
        self.registry.subscribe("signals_changed", lambda _topic, fresh: self.entity_graph.ingest_signals(fresh))
        if providers is None:
            providers = build_providers(
                self.config, self.credentials, self.gateway, self.http, self.oauth, healthkit_bridge
            )
        self.providers = providers
        self.default_plugins = list(self.config.get("default_plugins", DEFAULT_PLUGINS))
        self._initialized = False

    async def initialize(self):
        """Register providers, restore saved state and turn on the defaults on first run."""
        for provider in self.providers:
            self.registry.register(provider)

        saved = await asyncio.to_thread(self.gateway.get_all_plugin_states)
        for storage_key, state in saved.items():
            provider = self.registry.get(state.provider_id)
            if provider is None:
                log.warning("saved_state_unknown_provider", plugin=storage_key)
                continue
            if state.connected and provider.auth_type != AuthType.NONE and not provider.is_connected(state.instance_id):
                # credentials were lost since the last run
                state = state.merged({"connected": False})
            if state.settings and not provider.multi_instance:
                provider.settings.update(state.settings)
            self.registry.set_state(state)

        defaults = []
        for provider_id in self.default_plugins:
            if self.registry.get(provider_id) is None:
                log.warning("default_plugin_unknown", plugin=provider_id)
                continue
            key = PluginKey(provider_id)
            if key.storage_key not in saved:
                state = self.registry.update_state(provider_id, {"enabled": True, "connected": True})
                await asyncio.to_thread(self.gateway.set_plugin_state, key.storage_key, state)
            defaults.append(key)

        self._initialized = True
        log.info("hub_initialized", providers=len(self.providers), restored=len(saved))

        if (self.config.get("sync") or {}).get("sync_on_start", True):
            ready = [
                k for k in defaults
                if self.registry.get_state(k.provider_id).enabled and self.registry.get_state(k.provider_id).connected
            ]
            await self.orchestrator.sync_many(ready)

    async def start(self):
        if not self._initialized:
            await self.initialize()
        await self.orchestrator.start()

    async def stop(self):
        await self.orchestrator.stop()

    def available_integrations(self) -> List[Dict[str, Any]]:
        """Providers that need a user-initiated connection, for settings screens."""
        return [p.describe() for p in self.registry.get_all() if p.auth_type != AuthType.NONE]

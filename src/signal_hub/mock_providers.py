import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from src.signal_hub.credentials import CredentialStore, InMemoryCredentialStore
from src.signal_hub.errors import AuthExpiredError, CredentialsRevokedError, NetworkError
from src.signal_hub.models import AccountInfo, AuthType, Domain, Signal, SignalType, SyncSchedule, utcnow
from src.signal_hub.provider import Provider


class MockProvider(Provider):
    """
    Scriptable in-memory provider for tests and local runs.

    `fail_times` makes the next N syncs raise NetworkError, `expire_auth`
    makes the next sync raise AuthExpiredError (a successful refresh clears
    it unless `stays_expired` is set), and `delay` slows every sync down so
    concurrent triggers can overlap.
    """

    def __init__(
        self,
        provider_id: str = "mock",
        credentials: Optional[CredentialStore] = None,
        auth_type: AuthType = AuthType.API_KEY,
        multi_instance: bool = False,
        schedule: Optional[SyncSchedule] = None,
        delay: float = 0.0,
        signals_per_sync: int = 1,
        refresh_succeeds: bool = True,
        stays_expired: bool = False,
        **kwargs,
    ):
        self.id = provider_id
        self.name = provider_id.title()
        self.description = f"Mock {provider_id} provider"
        self.domains = [Domain.PERSONAL]
        self.category = "context"
        self.auth_type = auth_type
        self.capabilities = frozenset({SignalType.EVENT})
        self.multi_instance = multi_instance
        self.supports_account_info = multi_instance
        self.sync_schedule = schedule or SyncSchedule(type="fixed", interval_ms=60 * 1000, sync_on_connect=True)
        super().__init__(credentials or InMemoryCredentialStore(), **kwargs)
        self.delay = delay
        self.signals_per_sync = signals_per_sync
        self.refresh_succeeds = refresh_succeeds
        self.stays_expired = stays_expired
        self.fail_times = 0
        self.expire_auth = 0
        self.connect_error: Optional[Exception] = None
        self.sync_calls: List[Optional[str]] = []
        self.since_calls: List[Optional[datetime]] = []
        self.refresh_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0

    async def connect(self, instance_id: Optional[str] = None):
        if self.connect_error is not None:
            raise self.connect_error
        self.credentials.set_secret(self.secret_key("access_token", instance_id), "mock-token")

    async def disconnect(self, instance_id: Optional[str] = None):
        self.credentials.delete_secret(self.secret_key("access_token", instance_id))

    async def refresh_credentials(self, instance_id: Optional[str] = None) -> bool:
        self.refresh_calls += 1
        if not self.refresh_succeeds:
            raise CredentialsRevokedError(f"{self.id}: refresh token revoked")
        if not self.stays_expired:
            self.expire_auth = 0
        return True

    async def get_account_info(self, instance_id: Optional[str] = None) -> Optional[AccountInfo]:
        if not self.supports_account_info:
            return None
        return AccountInfo(id=f"{instance_id}@example.com", label=f"Account {instance_id}")

    async def sync(self, since: Optional[datetime], instance_id: Optional[str] = None) -> List[Signal]:
        self.sync_calls.append(instance_id)
        self.since_calls.append(since)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.expire_auth:
                raise AuthExpiredError(f"{self.name} authentication expired")
            if self.fail_times:
                self.fail_times -= 1
                raise NetworkError(f"{self.name} unreachable")
            signals = []
            base = utcnow()
            for _ in range(self.signals_per_sync):
                self._counter += 1
                signals.append(Signal(
                    id=f"{self.id}-{instance_id or 'default'}-{self._counter}",
                    source=self.id,
                    type=SignalType.EVENT,
                    timestamp=base + timedelta(milliseconds=self._counter),
                    domain=Domain.PERSONAL,
                    data={"n": self._counter, "instance": instance_id},
                ))
            return signals
        finally:
            self.in_flight -= 1

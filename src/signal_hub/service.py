from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from src.signal_hub.config import load_config
from src.signal_hub.errors import (
    AlreadyConnectedError,
    ConfigurationError,
    PersistenceError,
    PluginNotFoundError,
    SignalHubError,
)
from src.signal_hub.hub import SignalHub
from src.signal_hub.logging_setup import configure_logging, get_logger
from src.signal_hub.models import (
    CapacityImpact,
    Domain,
    Signal,
    SignalType,
    SyncOutcome,
    ensure_aware,
)
from src.signal_hub import views

ERROR_STATUS = {
    PluginNotFoundError: 404,
    AlreadyConnectedError: 409,
    ConfigurationError: 400,
    PersistenceError: 503,
}


class PluginTarget(BaseModel):
    instance_id: Optional[str] = None


class SignalIn(BaseModel):
    id: str
    source: str
    type: SignalType
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    domain: Optional[Domain] = None
    entity_ids: List[str] = Field(default_factory=list)
    capacity_impact: Optional[Dict[str, Any]] = None

    def to_signal(self) -> Signal:
        return Signal(
            id=self.id,
            source=self.source,
            type=self.type,
            timestamp=ensure_aware(self.timestamp),
            data=dict(self.data),
            domain=self.domain,
            entity_ids=list(self.entity_ids),
            capacity_impact=CapacityImpact.from_dict(self.capacity_impact),
        )


class SignalBatch(BaseModel):
    signals: List[SignalIn]


def outcome_to_dict(outcome: SyncOutcome) -> Dict[str, Any]:
    return {
        "plugin_key": outcome.plugin_key,
        "success": outcome.success,
        "signal_count": len(outcome.signals),
        "error": outcome.error,
        "duration_ms": outcome.duration_ms,
        "retried": outcome.retried,
    }


def build_app(hub: SignalHub) -> FastAPI:
    log = get_logger("service")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await hub.start()
        log.info("hub_started")
        try:
            yield
        finally:
            await hub.stop()
            log.info("hub_stopped")

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(SignalHubError)
    async def hub_error(request: Request, exc: SignalHubError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        log.warning("request_failed", path=request.url.path, status=status, error=str(exc))
        return JSONResponse(status_code=status, content={"error": str(exc), "type": type(exc).__name__})

    def plugin_view(provider_id: str) -> Dict[str, Any]:
        provider = hub.registry.require(provider_id)
        view = provider.describe()
        view["states"] = [s.to_dict() for s in hub.registry.get_instances(provider_id)]
        return view

    @app.get("/health")
    def health():
        return {"status": "ok", "running": hub.orchestrator.running}

    @app.get("/plugins")
    def list_plugins():
        return [plugin_view(p.id) for p in hub.registry.get_all()]

    @app.get("/integrations")
    def integrations():
        return hub.available_integrations()

    @app.get("/plugins/{provider_id}")
    def get_plugin(provider_id: str):
        return plugin_view(provider_id)

    @app.post("/plugins/{provider_id}/enable")
    async def enable(provider_id: str, body: Optional[PluginTarget] = None):
        states = await hub.orchestrator.enable(provider_id, body.instance_id if body else None)
        return [s.to_dict() for s in states]

    @app.post("/plugins/{provider_id}/disable")
    async def disable(provider_id: str, body: Optional[PluginTarget] = None):
        states = await hub.orchestrator.disable(provider_id, body.instance_id if body else None)
        return [s.to_dict() for s in states]

    @app.post("/plugins/{provider_id}/connect")
    async def connect(provider_id: str):
        instance_id = await hub.orchestrator.connect(provider_id)
        state = hub.registry.get_state(provider_id, instance_id)
        return {"instance_id": instance_id, "state": state.to_dict() if state else None}

    @app.post("/plugins/{provider_id}/disconnect")
    async def disconnect(provider_id: str, body: Optional[PluginTarget] = None):
        instance_id = body.instance_id if body else None
        await hub.orchestrator.disconnect(provider_id, instance_id)
        return {"status": "disconnected", "provider_id": provider_id, "instance_id": instance_id}

    @app.post("/plugins/{provider_id}/sync")
    async def sync_plugin(provider_id: str, body: Optional[PluginTarget] = None):
        outcome = await hub.orchestrator.sync_plugin(provider_id, body.instance_id if body else None)
        return outcome_to_dict(outcome)

    @app.post("/sync")
    async def sync_all():
        outcomes = await hub.orchestrator.sync_all()
        return {key: outcome_to_dict(o) for key, o in outcomes.items()}

    @app.post("/wake")
    async def wake():
        outcomes = await hub.orchestrator.on_wake()
        return {key: outcome_to_dict(o) for key, o in outcomes.items()}

    @app.get("/signals")
    async def get_signals(
        source: Optional[str] = None,
        type: Optional[SignalType] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ):
        found = await asyncio.to_thread(
            hub.gateway.get_signals, source, type, ensure_aware(since) if since else None, limit
        )
        return [s.to_dict() for s in found]

    async def ingest(signals: List[Signal]) -> Dict[str, int]:
        added = hub.registry.add_signals(signals)
        await asyncio.to_thread(hub.gateway.add_signals, signals)
        log.info("signals_ingested", received=len(signals), new=added)
        return {"received": len(signals), "new": added}

    @app.post("/signals")
    async def add_signal(body: SignalIn):
        return await ingest([body.to_signal()])

    @app.post("/signals/batch")
    async def add_signals(body: SignalBatch):
        return await ingest([s.to_signal() for s in body.signals])

    @app.get("/events")
    def events():
        return [e.to_dict() for e in hub.registry.events]

    @app.get("/context/agenda")
    def agenda():
        return {"agenda": views.format_agenda_for_context(hub.registry.signals)}

    @app.get("/context/capacity")
    def capacity():
        signals = hub.registry.signals
        impact = views.wellness_capacity(signals)
        return {
            "capacity": impact.to_dict() if impact else None,
            "summary": views.format_wellness_for_context(signals),
        }

    @app.get("/entities/path")
    def entity_path(from_id: str, to_id: str, max_depth: int = 4):
        path = hub.entity_graph.find_path(from_id, to_id, max_depth=max_depth)
        if path is None:
            return {"path": None}
        return {"path": [e.id for e in path]}

    return app


def main():
    config = load_config()
    configure_logging(config.get("log_file"), config.get("log_level", "INFO"))
    log = get_logger("service")
    app = build_app(SignalHub(config))
    log.info("starting_service", host=config.get("host"), port=config["port"])
    uvicorn.run(app, host=config.get("host", "127.0.0.1"), port=config["port"])


if __name__ == "__main__":
    main()

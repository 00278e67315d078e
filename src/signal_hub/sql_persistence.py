import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import BigInteger, Boolean, Column, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from src.signal_hub.errors import PersistenceError
from src.signal_hub.logging_setup import get_logger
from src.signal_hub.models import CapacityImpact, Domain, PluginState, Signal, SignalType
from src.signal_hub.persistence import PersistenceGateway

log = get_logger(__name__)

Base = declarative_base()


class SignalRow(Base):
    __tablename__ = "signals"
    id = Column(String, primary_key=True)
    source = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=False, index=True)  # epoch ms
    domain = Column(String, nullable=True)
    entity_ids = Column(Text, nullable=True)       # JSON list
    data = Column(Text, nullable=False)            # JSON object
    capacity_impact = Column(Text, nullable=True)  # JSON object


class PluginStateRow(Base):
    __tablename__ = "plugin_state"
    plugin_id = Column(String, primary_key=True)  # storage key
    enabled = Column(Boolean, default=False, nullable=False)
    connected = Column(Boolean, default=False, nullable=False)
    last_sync = Column(BigInteger, nullable=True)  # epoch ms
    last_error = Column(Text, nullable=True)
    settings = Column(Text, nullable=True)         # JSON object
    account_id = Column(String, nullable=True)
    account_label = Column(String, nullable=True)


def _to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class SQLAlchemyGateway(PersistenceGateway):
    """
    SQLite (or any SQLAlchemy URL) mirror of the registry. Writes replace
    existing rows by primary key.
    """

    def __init__(self, db_url: str = "sqlite:///signal_hub.db"):
        kwargs = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(db_url, **kwargs)
        self.Session = sessionmaker(bind=self.engine)
        Base.metadata.create_all(self.engine)
        log.info("sql_gateway_ready", url=self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session_scope(self):
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- Plugin state ---

    @staticmethod
    def _state_from_row(row: PluginStateRow) -> PluginState:
        provider_id, sep, instance_id = row.plugin_id.partition(":")
        return PluginState(
            provider_id=provider_id,
            instance_id=instance_id if sep else None,
            enabled=bool(row.enabled),
            connected=bool(row.connected),
            last_sync=_from_ms(row.last_sync),
            last_error=row.last_error,
            settings=json.loads(row.settings) if row.settings else {},
            account_id=row.account_id,
            account_label=row.account_label,
        )

    def get_plugin_state(self, key: str) -> Optional[PluginState]:
        with self.session_scope() as session:
            row = session.get(PluginStateRow, key)
            return self._state_from_row(row) if row else None

    def set_plugin_state(self, key: str, state: PluginState):
        with self.session_scope() as session:
            session.merge(PluginStateRow(
                plugin_id=key,
                enabled=state.enabled,
                connected=state.connected,
                last_sync=_to_ms(state.last_sync),
                last_error=state.last_error,
                settings=json.dumps(state.settings),
                account_id=state.account_id,
                account_label=state.account_label,
            ))

    def delete_plugin_state(self, key: str):
        with self.session_scope() as session:
            session.query(PluginStateRow).filter(PluginStateRow.plugin_id == key).delete()

    def get_all_plugin_states(self) -> Dict[str, PluginState]:
        with self.session_scope() as session:
            return {row.plugin_id: self._state_from_row(row) for row in session.query(PluginStateRow).all()}

    # --- Signals ---

    @staticmethod
    def _row_from_signal(signal: Signal) -> SignalRow:
        return SignalRow(
            id=signal.id,
            source=signal.source,
            type=signal.type.value,
            timestamp=_to_ms(signal.timestamp),
            domain=signal.domain.value if signal.domain else None,
            entity_ids=json.dumps(list(signal.entity_ids)) if signal.entity_ids else None,
            data=json.dumps(signal.data, default=str),
            capacity_impact=json.dumps(signal.capacity_impact.to_dict()) if signal.capacity_impact else None,
        )

    @staticmethod
    def _signal_from_row(row: SignalRow) -> Signal:
        return Signal(
            id=row.id,
            source=row.source,
            type=SignalType(row.type),
            timestamp=_from_ms(row.timestamp),
            domain=Domain(row.domain) if row.domain else None,
            entity_ids=json.loads(row.entity_ids) if row.entity_ids else [],
            data=json.loads(row.data) if row.data else {},
            capacity_impact=CapacityImpact.from_dict(json.loads(row.capacity_impact)) if row.capacity_impact else None,
        )

    def add_signal(self, signal: Signal):
        with self.session_scope() as session:
            session.merge(self._row_from_signal(signal))

    def add_signals(self, signals: List[Signal]):
        with self.session_scope() as session:
            for signal in signals:
                session.merge(self._row_from_signal(signal))

    def get_signals(self, source=None, type=None, since=None, limit=100) -> List[Signal]:
        with self.session_scope() as session:
            query = session.query(SignalRow)
            if source:
                query = query.filter(SignalRow.source == source)
            if type:
                query = query.filter(SignalRow.type == SignalType(type).value)
            if since:
                query = query.filter(SignalRow.timestamp > _to_ms(since))
            rows = query.order_by(SignalRow.timestamp.desc()).limit(limit).all()
            return [self._signal_from_row(row) for row in rows]

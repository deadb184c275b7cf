# functions/session_store.py
"""
Keyed persistence for extraction sessions.

Two interchangeable stores implement the same small surface:

- InMemorySessionStore: process-local dict, used by tests, the CLI and
  single-worker deployments.
- SqlSessionStore: SQLAlchemy table `cv_processing_sessions`, usable with
  sqlite (tests, local runs) or PostgreSQL (production).

Stores only persist and return `Session` objects. Liveness (TTL, active
flag), step-name validation and duplicate-step rejection are the
service's job; the service serializes read-modify-write sequences with
the per-session lock returned by `lock_for` and drops locks of dead ids
with `discard_lock`.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from schemas.session_schema import Session, StepResult

logger = structlog.get_logger(__name__).bind(module="session_store")


class SessionStore(Protocol):
    def insert(self, session: Session) -> None: ...

    def get(self, session_id: str) -> Optional[Session]: ...

    def add_step(self, session_id: str, step: StepResult, now: datetime) -> Optional[Session]: ...

    def delete(self, session_id: str) -> bool: ...

    def delete_expired(self, now: datetime) -> int: ...

    def lock_for(self, session_id: str) -> threading.Lock: ...

    def discard_lock(self, session_id: str) -> None: ...


class _SessionLocks:
    """Per-session locks, created on demand and dropped with the session."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def discard(self, session_id: str) -> None:
        with self._guard:
            self._locks.pop(session_id, None)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """Dict-backed store. Returned sessions are copies; mutate only through the store."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._session_locks = _SessionLocks()

    def insert(self, session: Session) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise KeyError(f"Session already exists: {session.session_id}")
            self._sessions[session.session_id] = session.model_copy(deep=True)

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session is not None else None

    def add_step(self, session_id: str, step: StepResult, now: datetime) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.steps[step.step_name.value] = step.model_copy(deep=True)
            session.current_step = step.step_name.value
            session.updated_at = now
            return session.model_copy(deep=True)

    def delete(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        self._session_locks.discard(session_id)
        return removed is not None

    def delete_expired(self, now: datetime) -> int:
        with self._lock:
            dead = [sid for sid, s in self._sessions.items() if not s.is_live(now)]
            for sid in dead:
                del self._sessions[sid]
        for sid in dead:
            self._session_locks.discard(sid)
        return len(dead)

    def lock_for(self, session_id: str) -> threading.Lock:
        return self._session_locks.get(session_id)

    def discard_lock(self, session_id: str) -> None:
        self._session_locks.discard(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------

Base = declarative_base()


class CVProcessingSessionRow(Base):
    __tablename__ = "cv_processing_sessions"

    id = Column(String(64), primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    cv_text = Column(Text, nullable=False)
    session_data = Column(JSON, default=dict)
    step_count = Column(Integer, default=0)
    current_step = Column(String(50), nullable=True)
    processing_metadata = Column(JSON, default=dict)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, index=True, nullable=False)


def _to_db_time(value: datetime) -> datetime:
    # naive UTC in the database; sqlite drops tzinfo anyway
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _row_to_session(row: CVProcessingSessionRow) -> Session:
    steps_raw: Dict[str, Any] = (row.session_data or {}).get("steps", {})
    steps = {name: StepResult.model_validate(payload) for name, payload in steps_raw.items()}
    return Session(
        session_id=row.id,
        user_id=row.user_id,
        raw_text=row.cv_text,
        metadata=dict(row.processing_metadata or {}),
        created_at=_from_db_time(row.created_at),
        updated_at=_from_db_time(row.updated_at),
        expires_at=_from_db_time(row.expires_at),
        is_active=bool(row.is_active),
        current_step=row.current_step,
        steps=steps,
    )


def _dump_steps(session: Session) -> Dict[str, Any]:
    return {"steps": {name: s.model_dump(mode="json") for name, s in session.steps.items()}}


def create_sql_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine for the session table; in-memory sqlite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
        db_path = database_url.split("sqlite:///", 1)[-1]
        if db_path:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, echo=echo, connect_args=connect_args)
    return create_engine(database_url, echo=echo, pool_pre_ping=True, pool_recycle=300)


class SqlSessionStore:
    """SQLAlchemy-backed store over the `cv_processing_sessions` table."""

    def __init__(self, database_url: str | None = None, *, engine: Engine | None = None, echo: bool = False):
        if engine is None:
            if not database_url:
                raise ValueError("SqlSessionStore needs a database_url or an engine")
            engine = create_sql_engine(database_url, echo=echo)
        self.engine = engine
        self._session_maker = sessionmaker(bind=engine, expire_on_commit=False)
        self._session_locks = _SessionLocks()
        Base.metadata.create_all(engine)
        logger.info("sql_session_store_ready", dialect=engine.dialect.name)

    def insert(self, session: Session) -> None:
        row = CVProcessingSessionRow(
            id=session.session_id,
            user_id=session.user_id,
            cv_text=session.raw_text,
            session_data=_dump_steps(session),
            step_count=session.step_count,
            current_step=session.current_step,
            processing_metadata=dict(session.metadata),
            is_active=session.is_active,
            created_at=_to_db_time(session.created_at),
            updated_at=_to_db_time(session.updated_at),
            expires_at=_to_db_time(session.expires_at),
        )
        with self._session_maker.begin() as db:
            db.add(row)

    def get(self, session_id: str) -> Optional[Session]:
        with self._session_maker() as db:
            row = db.get(CVProcessingSessionRow, session_id)
            return _row_to_session(row) if row is not None else None

    def add_step(self, session_id: str, step: StepResult, now: datetime) -> Optional[Session]:
        with self._session_maker.begin() as db:
            row = db.execute(
                select(CVProcessingSessionRow)
                .where(CVProcessingSessionRow.id == session_id)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return None

            steps = dict((row.session_data or {}).get("steps", {}))
            steps[step.step_name.value] = step.model_dump(mode="json")
            # reassign so the JSON column is flagged dirty
            row.session_data = {"steps": steps}
            row.step_count = len(steps)
            row.current_step = step.step_name.value
            row.updated_at = _to_db_time(now)
            db.flush()
            return _row_to_session(row)

    def delete(self, session_id: str) -> bool:
        with self._session_maker.begin() as db:
            result = db.execute(
                delete(CVProcessingSessionRow).where(CVProcessingSessionRow.id == session_id)
            )
        self._session_locks.discard(session_id)
        return bool(result.rowcount)

    def delete_expired(self, now: datetime) -> int:
        cutoff = _to_db_time(now)
        with self._session_maker.begin() as db:
            dead = db.execute(
                select(CVProcessingSessionRow.id).where(
                    (CVProcessingSessionRow.expires_at <= cutoff)
                    | (CVProcessingSessionRow.is_active.is_(False))
                )
            ).scalars().all()
            if dead:
                db.execute(delete(CVProcessingSessionRow).where(CVProcessingSessionRow.id.in_(dead)))
        for sid in dead:
            self._session_locks.discard(sid)
        return len(dead)

    def lock_for(self, session_id: str) -> threading.Lock:
        return self._session_locks.get(session_id)

    def discard_lock(self, session_id: str) -> None:
        self._session_locks.discard(session_id)

    def dispose(self) -> None:
        self.engine.dispose()


def build_session_store(session_cfg: Dict[str, Any]) -> SessionStore:
    """Build the store named by `session.store` (memory | sql)."""
    kind = str(session_cfg.get("store", "memory")).strip().lower()
    if kind == "memory":
        return InMemorySessionStore()
    if kind == "sql":
        return SqlSessionStore(session_cfg.get("database_url") or "sqlite:///./local_data/cv_sessions.db")
    raise ValueError(f"Unsupported session store: {kind}")


__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "SqlSessionStore",
    "CVProcessingSessionRow",
    "create_sql_engine",
    "build_session_store",
]

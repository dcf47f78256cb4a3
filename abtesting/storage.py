"""Persistence port for experiment state, plus the adapters we ship.

The core only ever calls `load()` and `save(snapshot)`. Storage errors
(OSError, SQLAlchemyError, ...) are not caught here; retries, batching and
so on are the adapter's business, not the core's.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from abtesting.config import Settings
from abtesting.database import init_db, make_engine, make_session_factory
from abtesting.errors import SnapshotError
from abtesting.models import SnapshotRecord
from abtesting.schemas import Snapshot

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    def load(self) -> Optional[Snapshot]:
        """Return the saved snapshot, or None if nothing was saved yet"""
        ...

    def save(self, snapshot: Snapshot) -> None:
        ...


def derive_assignments(snapshot: Snapshot) -> Dict[str, Dict[str, str]]:
    """user_id -> test_id -> variant_id, rebuilt from the participant lists"""
    assignments: Dict[str, Dict[str, str]] = {}
    for test_id, participants in snapshot.participants.items():
        for p in participants:
            assignments.setdefault(p.user_id, {})[test_id] = p.variant_id
    return assignments


def check_snapshot(snapshot: Snapshot) -> Snapshot:
    """
    Reject snapshots that would break aggregation later on.

    Checks referential integrity (participants/events point at known
    experiments and variants), one participant per (user, test), exactly one
    control per experiment, and that the assignments index agrees with the
    participants. An empty assignments index is rebuilt.
    """
    for test_id, experiment in snapshot.tests.items():
        if experiment.id != test_id:
            raise SnapshotError(f"Experiment stored under '{test_id}' has id '{experiment.id}'")
        controls = [v for v in experiment.variants if v.is_control]
        if len(controls) != 1:
            raise SnapshotError(f"Experiment '{test_id}' has {len(controls)} control variants")

    for test_id, participants in snapshot.participants.items():
        experiment = snapshot.tests.get(test_id)
        if experiment is None:
            raise SnapshotError(f"Participants reference unknown experiment '{test_id}'")
        seen = set()
        for p in participants:
            if p.test_id != test_id:
                raise SnapshotError(
                    f"Participant {p.user_id} filed under '{test_id}' belongs to '{p.test_id}'"
                )
            if experiment.get_variant(p.variant_id) is None:
                raise SnapshotError(
                    f"Participant {p.user_id} in '{test_id}' has unknown variant '{p.variant_id}'"
                )
            if p.user_id in seen:
                raise SnapshotError(f"Duplicate participant {p.user_id} in '{test_id}'")
            seen.add(p.user_id)

    for event in snapshot.events:
        experiment = snapshot.tests.get(event.test_id)
        if experiment is None:
            raise SnapshotError(f"Event {event.id} references unknown experiment '{event.test_id}'")
        if experiment.get_variant(event.variant_id) is None:
            raise SnapshotError(f"Event {event.id} references unknown variant '{event.variant_id}'")

    derived = derive_assignments(snapshot)
    if not snapshot.assignments:
        snapshot.assignments = derived
    elif snapshot.assignments != derived:
        raise SnapshotError("Assignments index does not match participant records")

    return snapshot


def parse_snapshot(raw) -> Snapshot:
    """Parse + validate a snapshot document (str or bytes of JSON)."""
    try:
        snapshot = Snapshot.model_validate_json(raw)
    except PydanticValidationError as exc:
        raise SnapshotError(f"Malformed snapshot: {exc}") from exc
    return check_snapshot(snapshot)


class MemorySnapshotStore:
    """Keeps the serialized document in memory (tests, ephemeral deployments)"""

    def __init__(self, payload: Optional[str] = None):
        self.payload = payload
        self.save_count = 0

    def load(self) -> Optional[Snapshot]:
        if self.payload is None:
            return None
        return parse_snapshot(self.payload)

    def save(self, snapshot: Snapshot) -> None:
        self.payload = snapshot.model_dump_json()
        self.save_count += 1


class JsonFileSnapshotStore:
    """One JSON file per deployment, replaced atomically on save"""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[Snapshot]:
        if not self.path.exists():
            return None
        return parse_snapshot(self.path.read_text(encoding="utf-8"))

    def save(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(snapshot.model_dump_json())
            os.replace(tmp_path, self.path)
        except BaseException:
            # don't leave half-written temp files around; the error still propagates
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class SqlSnapshotStore:
    """Snapshot document stored as a row per deployment via SQLAlchemy"""

    def __init__(self, database_url: str, deployment: str = "default", timeout: float = 5.0):
        self.deployment = deployment
        self.engine = make_engine(database_url, timeout)
        self.SessionLocal = make_session_factory(self.engine)
        init_db(self.engine)

    def load(self) -> Optional[Snapshot]:
        db = self.SessionLocal()
        try:
            record = db.query(SnapshotRecord).filter(
                SnapshotRecord.deployment == self.deployment
            ).first()
            if record is None:
                return None
            payload = record.payload
        finally:
            db.close()
        return parse_snapshot(payload)

    def save(self, snapshot: Snapshot) -> None:
        payload = snapshot.model_dump_json()
        db = self.SessionLocal()
        try:
            record = db.query(SnapshotRecord).filter(
                SnapshotRecord.deployment == self.deployment
            ).first()
            if record is None:
                db.add(SnapshotRecord(deployment=self.deployment, payload=payload))
            else:
                record.payload = payload
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()


def snapshot_store_from_settings(settings: Settings) -> SnapshotStore:
    """Build the adapter named by SNAPSHOT_BACKEND"""
    backend = settings.snapshot_backend.lower()
    if backend == "memory":
        return MemorySnapshotStore()
    if backend == "json":
        return JsonFileSnapshotStore(settings.snapshot_path)
    if backend == "sql":
        return SqlSnapshotStore(
            settings.database_url,
            deployment=settings.deployment_name,
            timeout=settings.store_timeout,
        )
    raise ValueError(f"Unknown SNAPSHOT_BACKEND: {settings.snapshot_backend}")

"""In-memory experiment state with per-experiment locking.

An ExperimentStore is built by the caller and passed to every service
function (like a DB session in the routers). Its lifecycle is explicit:
open() loads from the persistence adapter, flush() saves, close() flushes.
Participant and event writes go through record_write(), which saves once
`flush_every` writes are pending or `flush_interval` seconds have passed
since the last save (write-behind; flush_every=1 saves every write).

Locking: every experiment has its own RLock. Writers hold it for the whole
read-modify-write; nothing locks across experiments, so two experiments
never wait on each other. Saves are serialized by a separate flush lock so
an older snapshot can never overwrite a newer one.
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from fastapi import Request

from abtesting.config import settings
from abtesting.errors import NotFoundError, ValidationError
from abtesting.schemas import Event, Experiment, ExperimentStatus, Participant, Snapshot
from abtesting.storage import SnapshotStore, check_snapshot, derive_assignments
from abtesting.utils.cache import ResultsCache

logger = logging.getLogger(__name__)


class ExperimentStore:
    def __init__(
        self,
        backend: Optional[SnapshotStore] = None,
        cache_max_size: Optional[int] = None,
        cache_ttl: Optional[int] = None,
        flush_every: Optional[int] = None,
        flush_interval: Optional[float] = None,
    ):
        self.backend = backend
        self.flush_every = max(1, flush_every if flush_every is not None else settings.flush_every)
        # seconds; 0 disables the time bound
        self.flush_interval = flush_interval if flush_interval is not None else settings.flush_interval
        # held across to_snapshot() + save() so saves land in snapshot order
        self._flush_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending_writes = 0
        self._last_flush = time.monotonic()
        self.results_cache = ResultsCache(
            max_size=cache_max_size or settings.cache_max_size,
            ttl=cache_ttl or settings.cache_ttl,
        )
        # guards the dicts below when experiments are added or listed
        self._registry_lock = threading.Lock()
        self._experiments: Dict[str, Experiment] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._participants: Dict[str, Dict[str, Participant]] = {}
        self._events: Dict[str, List[Event]] = {}
        self._versions: Dict[str, int] = {}

    # Lifecycle

    @classmethod
    def open(cls, backend: Optional[SnapshotStore], **kwargs) -> "ExperimentStore":
        """Build a store and load whatever the backend has saved"""
        store = cls(backend, **kwargs)
        store.load()
        return store

    def load(self):
        if self.backend is None:
            return
        snapshot = self.backend.load()
        if snapshot is None:
            logger.info("No saved snapshot found, starting with an empty store")
            return
        self.restore(snapshot)

    def restore(self, snapshot: Snapshot):
        """Replace all in-memory state with the snapshot's contents"""
        check_snapshot(snapshot)

        events_by_test: Dict[str, List[Event]] = {test_id: [] for test_id in snapshot.tests}
        for event in snapshot.events:
            events_by_test[event.test_id].append(event)

        with self._registry_lock:
            self._experiments = dict(snapshot.tests)
            self._locks = {test_id: threading.RLock() for test_id in snapshot.tests}
            self._participants = {
                test_id: {p.user_id: p for p in snapshot.participants.get(test_id, [])}
                for test_id in snapshot.tests
            }
            self._events = events_by_test
            self._versions = {test_id: 0 for test_id in snapshot.tests}
        self.results_cache.clear()

        logger.info(
            f"Loaded snapshot: {len(snapshot.tests)} experiments, "
            f"{sum(len(p) for p in snapshot.participants.values())} participants, "
            f"{len(snapshot.events)} events"
        )

    def to_snapshot(self) -> Snapshot:
        """Consistent copy of every experiment, taken one experiment lock at a time"""
        tests: Dict[str, Experiment] = {}
        participants: Dict[str, List[Participant]] = {}
        events: List[Event] = []
        for test_id in self.experiment_ids():
            with self.lock(test_id):
                tests[test_id] = self._experiments[test_id].model_copy(deep=True)
                participants[test_id] = [
                    p.model_copy(deep=True) for p in self._participants[test_id].values()
                ]
                events.extend(self._events[test_id])

        # stable sort keeps append order for equal timestamps
        events.sort(key=lambda e: e.timestamp)
        snapshot = Snapshot(tests=tests, participants=participants, events=events)
        snapshot.assignments = derive_assignments(snapshot)
        return snapshot

    def flush(self):
        """Save the current state through the backend (errors propagate)"""
        if self.backend is None:
            return
        with self._flush_lock:
            # writes landing after this point are counted again and saved next time
            with self._pending_lock:
                self._pending_writes = 0
                self._last_flush = time.monotonic()
            snapshot = self.to_snapshot()
            self.backend.save(snapshot)
        logger.debug(f"Flushed snapshot with {len(snapshot.tests)} experiments")

    def record_write(self):
        """
        Note one participant/event write. Call it after releasing the
        experiment lock; it saves when the batch bound is reached.
        """
        if self.backend is None:
            return
        with self._pending_lock:
            self._pending_writes += 1
            due = self._pending_writes >= self.flush_every or (
                self.flush_interval > 0
                and time.monotonic() - self._last_flush >= self.flush_interval
            )
        if due:
            self.flush()

    def close(self):
        self.flush()
        logger.info("Experiment store flushed on close")

    # Experiments

    @contextmanager
    def lock(self, test_id: str) -> Iterator[None]:
        """Hold the per-experiment lock; raises NotFoundError for unknown ids"""
        with self._registry_lock:
            experiment_lock = self._locks.get(test_id)
        if experiment_lock is None:
            raise NotFoundError(test_id)
        with experiment_lock:
            yield

    def add_experiment(self, experiment: Experiment):
        with self._registry_lock:
            if experiment.id in self._experiments:
                raise ValidationError(f"Experiment with id '{experiment.id}' already exists")
            self._experiments[experiment.id] = experiment
            self._locks[experiment.id] = threading.RLock()
            self._participants[experiment.id] = {}
            self._events[experiment.id] = []
            self._versions[experiment.id] = 0

    def experiment(self, test_id: str) -> Experiment:
        """The live experiment object. Mutate it only while holding lock(test_id)."""
        with self._registry_lock:
            experiment = self._experiments.get(test_id)
        if experiment is None:
            raise NotFoundError(test_id)
        return experiment

    def experiment_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._experiments.keys())

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        """Copies of the stored experiments, optionally filtered by status"""
        result = []
        for test_id in self.experiment_ids():
            with self.lock(test_id):
                experiment = self._experiments[test_id]
                if status is None or experiment.status == status:
                    result.append(experiment.model_copy(deep=True))
        return result

    # Participants & events (callers hold lock(test_id))

    def get_participant(self, test_id: str, user_id: str) -> Optional[Participant]:
        return self._participants[test_id].get(user_id)

    def add_participant(self, participant: Participant) -> Participant:
        """
        Compare-and-swap insert: the first participant stored for a
        (user, test) wins and is returned to every later caller.
        """
        stored = self._participants[participant.test_id].setdefault(participant.user_id, participant)
        if stored is participant:
            self.touch(participant.test_id)
        return stored

    def append_event(self, event: Event):
        self._events[event.test_id].append(event)
        self.touch(event.test_id)

    def touch(self, test_id: str):
        """Bump the data version (invalidates memoized results)"""
        self._versions[test_id] = self._versions.get(test_id, 0) + 1

    def version(self, test_id: str) -> int:
        return self._versions.get(test_id, 0)

    def read_consistent(self, test_id: str) -> Tuple[Experiment, List[Participant], List[Event], int]:
        """
        Copy-on-read view for aggregation. The lists are copies taken under
        the lock; aggregation only reads fields that never change after
        creation (variant ids, event names/types).
        """
        with self.lock(test_id):
            return (
                self._experiments[test_id].model_copy(deep=True),
                list(self._participants[test_id].values()),
                list(self._events[test_id]),
                self._versions[test_id],
            )


def get_store(request: Request) -> ExperimentStore:
    """Dependency for getting the app's store (FastAPI Depends)."""
    return request.app.state.store


import copy
import pytest
from fastapi.testclient import TestClient
from abtesting.config import settings
from abtesting.main import app
from abtesting.storage import MemorySnapshotStore
from abtesting.store import ExperimentStore, get_store
from abtesting.services.experiment_service import create_experiment, start_experiment


BASE_DEFINITION = {
    "id": "signup_test",
    "name": "Signup Button Test",
    "description": "Orange vs blue signup button",
    "target_audience": {"percentage": 100},
    "variants": [
        {
            "id": "control",
            "name": "Blue Button",
            "weight": 50,
            "is_control": True,
            "config": {"color": "#3B82F6"},
        },
        {
            "id": "treatment",
            "name": "Orange Button",
            "weight": 50,
            "config": {"color": "#F97316"},
        },
    ],
    "metrics": {"primary": "signup", "secondary": ["newsletter"], "guardrails": []},
    "statistical_config": {
        "significance_level": 0.05,
        "power": 0.8,
        "minimum_detectable_effect": 0.1,
    },
}


@pytest.fixture
def make_definition():
    """Returns a builder for experiment definitions (top-level keys can be overridden)"""
    def _make(**overrides):
        definition = copy.deepcopy(BASE_DEFINITION)
        definition.update(copy.deepcopy(overrides))
        return definition
    return _make


@pytest.fixture
def backend():
    return MemorySnapshotStore()


@pytest.fixture
def store(backend):
    """Fresh, isolated store for each test"""
    return ExperimentStore(backend)


@pytest.fixture
def unsaved_store():
    """Store without a backend, for bulk traffic where per-write saves would dominate"""
    return ExperimentStore()


@pytest.fixture
def sample_experiment(store, make_definition):
    """Draft experiment id"""
    return create_experiment(store, make_definition())


@pytest.fixture
def running_experiment(store, sample_experiment):
    """Started experiment id"""
    start_experiment(store, sample_experiment)
    return sample_experiment


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {settings.api_tokens[0]}"}


@pytest.fixture
def client(store):
    """Test client with store dependency override"""
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()

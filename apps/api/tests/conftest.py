"""
Pytest configuration and fixtures

Everything runs against in-process collaborators: an in-memory store (or
SQLite in memory for the SQL store), the local scoring model and a manual
clock, so no test touches the network or waits on real time.
"""
import os
import random
import sys

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from core.clock import ManualClock
from core.database import build_session_factory, init_db
from services.session_generation.catalog import TemplateCatalog
from services.session_generation.config import ConfigService
from services.session_generation.container import GenerationServices
from services.session_generation.context_analyzer import ContextAnalyzer
from services.session_generation.fitness import FitnessEvaluator
from services.session_generation.orchestrator import GenerationOrchestrator
from services.session_generation.scoring_model import WeightedScoringModel
from services.session_generation.store import InMemorySessionStore
from tests.session_helpers import TEST_SEED, UnavailableModel, build_request


@pytest.fixture(autouse=True)
def _reset_config():
    """Reread the rules files after tests that point ConfigService elsewhere."""
    yield
    ConfigService.reload()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def request_factory():
    return build_request


@pytest.fixture
def dev_request():
    return build_request()


@pytest.fixture
def model():
    return WeightedScoringModel()


@pytest.fixture
def evaluator(model):
    return FitnessEvaluator(model)


@pytest.fixture
def analysis(dev_request, model, clock):
    return ContextAnalyzer(clock=clock).analyze(dev_request, model)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def services(store, clock):
    services = GenerationServices(store=store, clock=clock, seed=TEST_SEED, eval_workers=0).bootstrap()
    yield services
    services.shutdown()


@pytest.fixture
def orchestrator(services):
    orchestrator = GenerationOrchestrator(services)
    yield orchestrator
    orchestrator.close()


@pytest.fixture
def sql_engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return build_session_factory(sql_engine)


@pytest.fixture
def down_model():
    return UnavailableModel()


@pytest.fixture
def base_template(dev_request, clock):
    """Blueprint template for the default development request (90 min, 5 phases)."""
    return TemplateCatalog(clock=clock).create_base_template(dev_request, random.Random(7))

import os
import tempfile

# Engine settings are read once at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/lifecycle_engine_test.db")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "lifecycle_engine_test.log"))
os.environ.setdefault("MONITOR_AUTOSTART", "false")
os.environ.setdefault("MONITOR_MAX_CONCURRENCY", "1")
os.environ.setdefault("CLOSE_BEFORE_WEEKEND", "false")
os.environ.setdefault("ENABLE_METRICS", "false")
os.environ.setdefault("OPERATOR_TOKEN", "test-operator-token")

import pytest

from lifecycle_engine.database.database import build_engine, build_session_factory, init_db
from lifecycle_engine.services.event_emitter import EventEmitter
from lifecycle_engine.services.risk_ledger import RiskPolicy


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def policy():
    return RiskPolicy(consecutive_loss_threshold=3)


@pytest.fixture
def emitter(session_factory, policy):
    return EventEmitter(session_factory, policy)

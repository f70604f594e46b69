import pytest
from fastapi.testclient import TestClient

from dailycup import db as database
from dailycup.api.deps import get_rate_limiter
from dailycup.config import get_settings
from dailycup.dispatch import CourierDispatcher
from dailycup.main import app
from dailycup.orders import OrderStateMachine
from dailycup.rate_limit import MemoryRateStore, RateLimiter
from tests.factories import auth, make_settings


@pytest.fixture()
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture(autouse=True)
def schema(tmp_path):
    engine = database.configure_engine(f"sqlite:///{tmp_path}/test.db")
    database.Base.metadata.create_all(bind=engine)
    yield engine
    database.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db():
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def rate_store():
    return MemoryRateStore()


@pytest.fixture()
def client(settings, rate_store):
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(rate_store, settings)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def machine(settings):
    return OrderStateMachine(settings)


@pytest.fixture()
def dispatcher(settings):
    return CourierDispatcher(settings)


@pytest.fixture()
def admin_headers(settings):
    return auth(settings, "admin", user_id=1)

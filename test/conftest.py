import pytest
from fastapi.testclient import TestClient

from _helper import make_container
from courier_dispatch.main import create_app


def pytest_configure(config):
    config.addinivalue_line("markers", "race: concurrent callers competing for the same order")


@pytest.fixture
def container():
    return make_container()


@pytest.fixture
def auto_assign_container():
    return make_container(auto_assign_on_payment=True)


@pytest.fixture
def client(container):
    """API bound to the in-memory container; the lifespan does not touch Postgres or Redis."""
    with TestClient(create_app(container)) as c:
        yield c

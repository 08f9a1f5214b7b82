import pytest
from fastapi.testclient import TestClient

from palette.main import app


@pytest.fixture
def client(fake_db):
    """FastAPI test client backed by the in-memory database"""
    app.dependency_overrides = {}
    yield TestClient(app)
    app.dependency_overrides = {}

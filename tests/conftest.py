"""
Shared fixtures: a fake decoder and an API client wired to it.
"""
import pytest
from fastapi.testclient import TestClient
from loguru import logger

from config import Settings
from main import create_app
from thermal import ThermalMatrix

PARAMETERS = {"emissivity": 0.95, "distance": 5.0, "humidity": 70.0, "reflection": 23.0}


class FakeDecoder:
    """Returns a fixed matrix (or raises) and records what it was given."""

    def __init__(self, matrix=None, error=None):
        self.matrix = matrix
        self.error = error
        self.calls = []

    def decode(self, content):
        self.calls.append(content)
        if self.error is not None:
            raise self.error
        return self.matrix


@pytest.fixture
def scenario_matrix():
    """2x2 matrix [100, 0, 200, 65535] used throughout the scenarios."""
    return ThermalMatrix.from_samples(2, 2, [100, 0, 200, 65535], PARAMETERS)


@pytest.fixture
def make_client():
    def _make(decoder, **settings):
        return TestClient(create_app(settings=Settings(**settings), decoder=decoder))
    return _make


@pytest.fixture
def decoder(scenario_matrix):
    return FakeDecoder(scenario_matrix)


@pytest.fixture
def client(make_client, decoder):
    return make_client(decoder)


@pytest.fixture
def log_records():
    """Loguru records emitted during the test, as (level, message) pairs."""
    records = []
    handler_id = logger.add(lambda m: records.append((m.record["level"].name, m.record["message"])), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def upload():
    return {"image": ("DJI_0001_R.JPG", b"\xff\xd8fake-rjpeg", "image/jpeg")}

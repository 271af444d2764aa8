import base64
import json

import pytest
from fastapi.testclient import TestClient

from config import RelayConfig
from main import create_app
from relay.stores import MemoryStore

LMS_UA = "iTunes/Lyrion Music Server 1.0"
CALLBACK_URL = "http://127.0.0.1:3483/plugins/Spotty/settings/callback"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def state_for(nonce) -> str:
    return base64.b64encode(json.dumps({"nonce": nonce}).encode()).decode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def make_client(store):
    def _make(config: RelayConfig = None) -> TestClient:
        return TestClient(create_app(config or RelayConfig(), store))

    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def prepare(client):
    def _prepare(url: str = CALLBACK_URL, ua: str = LMS_UA, header_ua: str = LMS_UA):
        return client.post(
            "/auth/prepare",
            json={"url": url, "ua": ua},
            headers={"User-Agent": header_ua},
        )

    return _prepare

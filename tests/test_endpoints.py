import base64
import uuid

import pytest
from fastapi.testclient import TestClient

from config import RelayConfig
from main import create_app
from conftest import CALLBACK_URL, LMS_UA, state_for

FALLBACK = "https://lyrion.org/invalid/path"


def callback(client, code="ABC123", state=None, ua=LMS_UA):
    params = {}
    if code is not None:
        params["code"] = code
    if state is not None:
        params["state"] = state
    return client.get("/auth/callback", params=params, headers={"User-Agent": ua}, follow_redirects=False)


def assert_fallback(response):
    assert response.status_code == 400
    assert response.headers["location"] == FALLBACK
    assert response.content == b""


def test_home_redirects_to_homepage(client):
    response = client.get("/", follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "https://lyrion.org"


def test_health_endpoint_is_available(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "auth-relay", "store": "memory"}


def test_prepare_then_callback_redirects_with_code(client, prepare):
    response = prepare()

    assert response.status_code == 200
    nonce = response.json()["nonce"]
    assert uuid.UUID(nonce).version == 4

    redirect = callback(client, state=state_for(nonce))

    assert redirect.status_code == 302
    assert redirect.headers["location"] == f"{CALLBACK_URL}?code=ABC123"


def test_prepare_returns_unique_nonces(prepare):
    nonces = {prepare().json()["nonce"] for _ in range(5)}

    assert len(nonces) == 5


def test_logitech_media_server_ua_is_accepted(prepare):
    ua = "iTunes/4.7.1 (Linux; N; Debian; x86_64-linux; EN; utf8) Logitech Media Server/8.3.1"

    response = prepare(ua=ua, header_ua=ua)

    assert response.status_code == 200


@pytest.mark.parametrize("url", [
    "https://127.0.0.1:3483/plugins/Spotty/settings/callback",
    "ftp://127.0.0.1:3483/plugins/Spotty/settings/callback",
    "http://127.0.0.1/plugins/Spotty/settings/callback",
    "http://127.0.0.1:80/plugins/Spotty/settings/callback",
    "http://127.0.0.1:1023/plugins/Spotty/settings/callback",
    "http://127.0.0.1:3483/plugins/Other/settings/callback",
    "http://127.0.0.1:3483/",
    "http://127.0.0.1:3483/plugins/Spotty/settings/callback?next=x",
    "http://127.0.0.1:3483/plugins/Spotty/settings/callback?",
    "http://127.0.0.1:3483/plugins/Spotty/settings/callback#frag",
    "http://127.0.0.1:99999/plugins/Spotty/settings/callback",
    "not a url",
    "http://127.0.0.1:3483/plugins/Spotty/\tsettings/callback",
    "http://127.0.0.1:3483/plugins/Spotty/settings/call\r\nback",
    "http://127.0.0.1 :3483/plugins/Spotty/settings/callback",
    "http://127.0.0.1:3483/plugins/Spotty/settings/callback\x00",
    " http://127.0.0.1:3483/plugins/Spotty/settings/callback",
])
def test_prepare_rejects_disallowed_destinations(store, prepare, url):
    response = prepare(url=url)

    assert response.status_code == 400
    assert response.json() == {}
    assert len(store) == 0


@pytest.mark.parametrize("header_ua", ["", "curl/8.0", "Mozilla/5.0", "Lyrion Music Server iTunes"])
def test_prepare_rejects_unknown_caller(store, prepare, header_ua):
    response = prepare(header_ua=header_ua)

    assert response.status_code == 400
    assert response.json() == {}
    assert len(store) == 0


@pytest.mark.parametrize("body", [
    {"url": CALLBACK_URL},
    {"ua": LMS_UA},
    {"url": "", "ua": LMS_UA},
    {"url": CALLBACK_URL, "ua": 42},
    ["not", "an", "object"],
])
def test_prepare_rejects_invalid_body(client, store, body):
    response = client.post("/auth/prepare", json=body, headers={"User-Agent": LMS_UA})

    assert response.status_code == 400
    assert response.json() == {}
    assert len(store) == 0


def test_prepare_rejects_unparseable_json(client):
    response = client.post(
        "/auth/prepare",
        content=b"{not json",
        headers={"User-Agent": LMS_UA, "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {}


def test_prepare_failure_is_logged_with_reason(prepare, caplog):
    with caplog.at_level("WARNING", logger="relay.endpoints"):
        prepare(header_ua="curl/8.0")

    assert "Invalid caller UA string" in caplog.text


def test_rejected_prepare_leaves_no_redeemable_binding(client, prepare):
    prepare(url="https://127.0.0.1:3483/plugins/Spotty/settings/callback")

    assert_fallback(callback(client, state=state_for(str(uuid.uuid4()))))


def test_callback_missing_code(client, prepare):
    nonce = prepare().json()["nonce"]

    assert_fallback(callback(client, code=None, state=state_for(nonce)))


def test_callback_missing_state(client):
    assert_fallback(callback(client))


@pytest.mark.parametrize("state", [
    "!!!not-base64!!!",
    "bm90IGpzb24=",  # "not json"
    state_for(""),
    state_for(None),
    state_for(123),
    "WzEsIDIsIDNd",  # [1, 2, 3]
    base64.b64encode(b"[" * 20000).decode(),
])
def test_callback_rejects_malformed_state(client, state):
    assert_fallback(callback(client, state=state))


def test_callback_unknown_nonce(client):
    assert_fallback(callback(client, state=state_for(str(uuid.uuid4()))))


def test_callback_with_different_ua_is_rejected(client, prepare):
    nonce = prepare().json()["nonce"]

    response = callback(client, state=state_for(nonce), ua="iTunes/Lyrion Music Server 2.0")

    assert_fallback(response)


def test_callback_after_ttl_behaves_like_unknown_nonce(client, prepare, clock):
    nonce = prepare().json()["nonce"]
    clock.advance(900)

    assert_fallback(callback(client, state=state_for(nonce)))


def test_callback_just_before_ttl_still_redeems(client, prepare, clock):
    nonce = prepare().json()["nonce"]
    clock.advance(899)

    assert callback(client, state=state_for(nonce)).status_code == 302


def test_nonce_can_be_redeemed_repeatedly_by_default(client, prepare):
    nonce = prepare().json()["nonce"]

    assert callback(client, state=state_for(nonce)).status_code == 302
    assert callback(client, state=state_for(nonce)).status_code == 302


def test_single_use_nonce_is_consumed(make_client):
    client = make_client(RelayConfig({"single_use_nonces": True}))
    nonce = client.post(
        "/auth/prepare",
        json={"url": CALLBACK_URL, "ua": LMS_UA},
        headers={"User-Agent": LMS_UA},
    ).json()["nonce"]

    assert callback(client, state=state_for(nonce)).status_code == 302
    assert_fallback(callback(client, state=state_for(nonce)))


def test_custom_accepted_paths_and_fallback(make_client):
    config = RelayConfig({
        "accepted_paths": ["/plugins/Other/callback"],
        "fallback_url": "https://example.org/oops",
    })
    client = make_client(config)

    rejected = client.post(
        "/auth/prepare",
        json={"url": CALLBACK_URL, "ua": LMS_UA},
        headers={"User-Agent": LMS_UA},
    )
    accepted = client.post(
        "/auth/prepare",
        json={"url": "http://192.168.1.10:9000/plugins/Other/callback", "ua": LMS_UA},
        headers={"User-Agent": LMS_UA},
    )
    bad_callback = callback(client, state=state_for("missing"))

    assert rejected.status_code == 400
    assert accepted.status_code == 200
    assert bad_callback.status_code == 400
    assert bad_callback.headers["location"] == "https://example.org/oops"


def test_code_is_url_encoded_in_redirect(client, prepare):
    nonce = prepare().json()["nonce"]

    response = callback(client, code="a b&c=d", state=state_for(nonce))

    assert response.headers["location"] == f"{CALLBACK_URL}?code=a%20b%26c%3Dd"


class BrokenStore:
    name = "broken"

    async def put(self, key, value, ttl):
        raise ConnectionError("store down")

    async def get(self, key):
        raise ConnectionError("store down")

    async def take(self, key):
        raise ConnectionError("store down")


def test_store_errors_map_to_generic_failures():
    client = TestClient(create_app(RelayConfig(), BrokenStore()))

    prepared = client.post(
        "/auth/prepare",
        json={"url": CALLBACK_URL, "ua": LMS_UA},
        headers={"User-Agent": LMS_UA},
    )

    assert prepared.status_code == 400
    assert prepared.json() == {}
    assert_fallback(callback(client, state=state_for(str(uuid.uuid4()))))


def test_deeply_nested_state_is_logged_as_bad_state(client, caplog):
    state = base64.b64encode(b"[" * 20000).decode()

    with caplog.at_level("WARNING", logger="relay.endpoints"):
        assert_fallback(callback(client, state=state))

    assert "nested too deeply" in caplog.text
    assert "Store error" not in caplog.text

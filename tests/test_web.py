import pytest
from sanic import Sanic

from cerberus import config
from cerberus.web import create_app

from conftest import CLIENT_ID, sign

SECRET = "testsecret"


@pytest.fixture
def app(monkeypatch, tmp_path, private_key):
    key_path = tmp_path / "key.pem"
    key_path.write_text(private_key)
    monkeypatch.setattr(config, "GITHUB_CLIENT_ID", CLIENT_ID)
    monkeypatch.setattr(config, "GITHUB_PRIVATE_KEY_PATH", str(key_path))
    monkeypatch.setattr(config, "GITHUB_WEBHOOK_SECRET", SECRET)
    # a fresh app per test under the same name
    monkeypatch.setattr(Sanic, "test_mode", True)
    return create_app()


def webhook_headers(body, event="ping", signature=None):
    return {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": "delivery-1",
        "X-Hub-Signature-256": signature or sign(body, SECRET),
        "Content-Type": "application/json",
    }


def test_routes_registered(app):
    paths = {route.path for route in app.router.routes}
    assert "healthz" in paths
    assert "webhook" in paths
    assert "metrics" in paths


def test_healthz(app):
    _, response = app.test_client.get("/healthz")

    assert response.status == 200
    assert response.json == {"status": "ok"}


def test_webhook_rejects_bad_signature(app):
    body = b'{"zen": "Keep it logically awesome."}'

    _, response = app.test_client.post(
        "/webhook",
        content=body,
        headers=webhook_headers(body, signature="sha256=" + "0" * 64),
    )

    assert response.status == 401


def test_webhook_rejects_malformed_body(app):
    body = b"{broken"

    _, response = app.test_client.post(
        "/webhook",
        content=body,
        headers=webhook_headers(body, event="check_run"),
    )

    assert response.status == 400


def test_webhook_accepts_ignored_event(app):
    body = b'{"zen": "Keep it logically awesome.", "hook_id": 1}'

    _, response = app.test_client.post(
        "/webhook", content=body, headers=webhook_headers(body)
    )

    assert response.status == 200


def test_metrics_exposition(app):
    app.test_client.get("/healthz")
    _, response = app.test_client.get("/metrics")

    assert response.status == 200
    assert "cerberus_num_req_total" in response.text

from __future__ import annotations

import logging

import pytest

from passkey_rp import create_app
from passkey_rp.errors import NoPendingCeremony, StoreUnavailable
from passkey_rp.models import b64url_decode, b64url_encode
from passkey_rp.store import InMemoryCredentialStore

from .conftest import ORIGIN
from .soft_authenticator import SoftAuthenticator


def register(client, authenticator, username="alice", **overrides):
    options = client.post("/register", json={"username": username}).get_json()
    payload = authenticator.make_credential(options, overrides.pop("origin", ORIGIN), **overrides)
    return options, payload, client.post("/register/complete", json=payload)


def login(client, authenticator, username="alice", **overrides):
    options = client.post("/login", json={"username": username}).get_json()
    payload = authenticator.get_assertion(options, overrides.pop("origin", ORIGIN), **overrides)
    return options, payload, client.post("/login/complete", json=payload)


def test_alice_scenario(client, store, authenticator):
    options, payload, response = register(client, authenticator)
    assert options["excludeCredentials"] == []
    assert options["rp"] == {"id": "localhost", "name": "WebAuthn Tutorial"}
    assert options["attestation"] == "none"
    assert [param["alg"] for param in options["pubKeyCredParams"]] == [-7, -257]
    assert response.status_code == 200
    assert response.get_json() == {"verified": True}

    user = store.get("alice")
    assert len(user.credentials) == 1
    assert user.credentials[0].sign_count == 0

    login_options = client.post("/login", json={"username": "alice"}).get_json()
    assert login_options["rpId"] == "localhost"
    assert [item["id"] for item in login_options["allowCredentials"]] == [payload["rawId"]]
    assert login_options["allowCredentials"][0]["transports"] == ["internal"]


def test_full_round_trip_updates_counter(client, store, authenticator):
    register(client, authenticator)
    _, assertion, response = login(client, authenticator)

    assert response.status_code == 200
    assert response.get_json() == {"verified": True}
    reported = int.from_bytes(b64url_decode(assertion["response"]["authenticatorData"])[33:37], "big")
    assert store.get("alice").credentials[0].sign_count == reported


def test_tampered_challenge_is_not_verified(client, store, authenticator):
    options = client.post("/register", json={"username": "alice"}).get_json()
    challenge = bytearray(b64url_decode(options["challenge"]))
    challenge[-1] ^= 0x01
    payload = authenticator.make_credential(options, ORIGIN, challenge=b64url_encode(bytes(challenge)))

    response = client.post("/register/complete", json=payload)
    assert response.status_code == 400
    assert response.get_json()["verified"] is False
    assert "Challenge" in response.get_json()["error"]
    assert store.get("alice") is None


def test_wrong_origin_is_not_verified(client, store, authenticator):
    _, _, response = register(client, authenticator, origin="https://phish.example")

    assert response.status_code == 400
    assert response.get_json()["verified"] is False
    assert store.get("alice") is None


def test_replayed_completion_has_no_pending_ceremony(client, authenticator):
    _, payload, _ = register(client, authenticator)

    response = client.post("/register/complete", json=payload)
    assert response.status_code == 400
    assert response.get_json() == {"error": "No pending ceremony", "verified": False}


def test_repeated_begin_registration_supersedes(client, store, authenticator):
    first = client.post("/register", json={"username": "alice"}).get_json()
    client.post("/register", json={"username": "alice"})

    response = client.post("/register/complete", json=authenticator.make_credential(first, ORIGIN))
    assert response.get_json()["verified"] is False
    assert store.get("alice") is None


def test_client_retry_does_not_duplicate_credential(client, store, authenticator):
    _, payload, _ = register(client, authenticator)
    _, _, response = register(client, authenticator, reuse=b64url_decode(payload["rawId"]))

    assert response.get_json() == {"verified": True}
    assert len(store.get("alice").credentials) == 1


def test_cloned_authenticator_is_rejected(client, store, authenticator, caplog):
    register(client, authenticator)
    login(client, authenticator)
    login(client, authenticator)

    with caplog.at_level(logging.ERROR, logger="passkey_rp"):
        _, _, response = login(client, authenticator, sign_count=1)

    assert response.status_code == 400
    assert response.get_json()["verified"] is False
    assert store.get("alice").credentials[0].sign_count == 2
    assert any("Possible Cloned Authenticator" in record.getMessage() for record in caplog.records)


def test_unknown_user_login(client):
    response = client.post("/login", json={"username": "nobody"})
    assert response.status_code == 404
    assert response.get_json() == {"error": "Unknown user"}


def test_unknown_user_login_can_be_concealed(settings, store):
    app = create_app(settings.model_copy(update={"conceal_unknown_users": True}), store=store)
    response = app.test_client().post("/login", json={"username": "nobody"})

    assert response.status_code == 200
    assert len(response.get_json()["allowCredentials"]) == 1


def test_unregistered_authenticator_login(app, client, authenticator):
    register(client, authenticator)
    stranger = SoftAuthenticator()
    register(app.test_client(), stranger, username="bob")

    options = client.post("/login", json={"username": "alice"}).get_json()
    assertion = stranger.get_assertion(options, ORIGIN, credential_id=next(iter(stranger.credentials)))

    response = client.post("/login/complete", json=assertion)
    assert response.status_code == 400
    assert response.get_json() == {"error": "Authenticator is not registered", "verified": False}


def test_completion_without_begin(client):
    response = client.post("/login/complete", json={})
    assert response.status_code == 400
    assert response.get_json()["error"] == "No pending ceremony"


@pytest.mark.parametrize("body", [{}, {"username": ""}, {"username": 42}])
def test_options_require_username(client, body):
    response = client.post("/register", json=body)
    assert response.status_code == 400
    assert "error" in response.get_json()


def test_options_require_json_object(client):
    response = client.post("/register", data="username=alice", content_type="text/plain")
    assert response.status_code == 400
    assert response.get_json() == {"error": "Expected a JSON object"}


def test_session_cookie_is_http_only(client):
    response = client.post("/register", json={"username": "alice"})
    cookie = response.headers["Set-Cookie"]
    assert "HttpOnly" in cookie
    assert "Expires=" in cookie


def test_separate_clients_have_separate_ceremonies(app, authenticator):
    first, second = app.test_client(), app.test_client()
    options = first.post("/register", json={"username": "alice"}).get_json()
    payload = authenticator.make_credential(options, ORIGIN)

    assert second.post("/register/complete", json=payload).get_json()["error"] == "No pending ceremony"
    assert first.post("/register/complete", json=payload).get_json() == {"verified": True}


class BrokenStore(InMemoryCredentialStore):
    def put(self, user):
        raise StoreUnavailable("disk on fire")


def test_store_failure_aborts_ceremony(settings, authenticator):
    store = BrokenStore()
    client = create_app(settings, store=store).test_client()
    _, _, response = register(client, authenticator)

    assert response.status_code == 503
    assert response.get_json() == {"error": "disk on fire", "verified": False}
    assert store.get("alice") is None


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_failed_completion_clears_pending_ceremony(app, client, authenticator):
    _, _, response = register(client, authenticator, origin="https://phish.example")
    assert response.status_code == 400

    with client.session_transaction() as session:
        sid = session["sid"]
    challenges = app.extensions["passkey_rp"]["challenges"]
    with pytest.raises(NoPendingCeremony):
        challenges.consume(sid)


def test_completed_sessions_leave_no_locks_behind(app, authenticator):
    for index in range(5):
        register(app.test_client(), authenticator, username=f"user{index}")

    challenges = app.extensions["passkey_rp"]["challenges"]
    assert challenges.held_sessions() == 0

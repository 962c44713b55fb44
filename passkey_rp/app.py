"""Flask application exposing the RP ceremony endpoints."""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Any

from flask import Flask, jsonify, request, session
from flask_cors import CORS

from .authentication import AuthenticationCeremony
from .challenges import ChallengeCache, ChallengeSession
from .config import RPSettings
from .errors import CeremonyError, InvalidRequest, StoreUnavailable, VerificationFailed
from .registration import RegistrationCeremony
from .schemas import UsernameRequest, parse_request
from .store import CredentialStore, build_store
from .verification import Verifier, WebAuthnVerifier

LOGGER = logging.getLogger(__name__)

SESSION_KEY = "sid"


def _json_object() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidRequest("Expected a JSON object")
    return data


def create_app(
    settings: RPSettings | None = None,
    store: CredentialStore | None = None,
    verifier: Verifier | None = None,
) -> Flask:
    settings = settings or RPSettings()
    store = store or build_store(settings)
    verifier = verifier or WebAuthnVerifier()
    challenges = ChallengeCache(ttl_seconds=settings.challenge_ttl_seconds)
    registration = RegistrationCeremony(settings, store, verifier)
    authentication = AuthenticationCeremony(settings, store, verifier)

    app = Flask(__name__)
    app.config.update(
        SECRET_KEY=settings.secret_key,
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=settings.session_cookie_secure,
        PERMANENT_SESSION_LIFETIME=timedelta(seconds=settings.session_max_age),
    )
    app.extensions["passkey_rp"] = {
        "settings": settings,
        "store": store,
        "challenges": challenges,
    }
    CORS(app, origins=[settings.origin], supports_credentials=True)
    logging.basicConfig(level=settings.log_level, format="%(message)s")
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    def challenge_session() -> ChallengeSession:
        sid = session.get(SESSION_KEY)
        if not sid:
            sid = secrets.token_urlsafe(16)
            session[SESSION_KEY] = sid
            session.permanent = True
        return ChallengeSession(challenges, sid)

    @app.before_request
    def purge_expired_ceremonies():
        challenges.purge_expired()

    @app.post("/register")
    def register_options():
        payload = parse_request(UsernameRequest, _json_object())
        req_id = secrets.token_hex(4)
        ceremony = challenge_session()
        with challenges.hold(ceremony.session_id):
            options = registration.begin(payload.username, ceremony, req_id)
        return jsonify(options.model_dump())

    @app.post("/register/complete")
    def register_complete():
        req_id = secrets.token_hex(4)
        ceremony = challenge_session()
        with challenges.hold(ceremony.session_id):
            result = registration.complete(request.get_json(silent=True), ceremony, req_id)
        return jsonify(result.model_dump(exclude_none=True))

    @app.post("/login")
    def login_options():
        payload = parse_request(UsernameRequest, _json_object())
        req_id = secrets.token_hex(4)
        ceremony = challenge_session()
        with challenges.hold(ceremony.session_id):
            options = authentication.begin(payload.username, ceremony, req_id)
        return jsonify(options.model_dump())

    @app.post("/login/complete")
    def login_complete():
        req_id = secrets.token_hex(4)
        ceremony = challenge_session()
        with challenges.hold(ceremony.session_id):
            result = authentication.complete(request.get_json(silent=True), ceremony, req_id)
        return jsonify(result.model_dump(exclude_none=True))

    @app.errorhandler(CeremonyError)
    def handle_ceremony_error(error: CeremonyError):
        if isinstance(error, StoreUnavailable):
            LOGGER.error("Store failure on %s: %s", request.path, error.message)
        body: dict[str, Any] = {"error": error.message}
        if isinstance(error, VerificationFailed) or request.path.endswith("/complete"):
            body["verified"] = False
        return jsonify(body), error.status_code

    @app.errorhandler(400)
    def handle_bad_request(error):
        message = getattr(error, "description", "Bad Request")
        return jsonify({"error": message}), 400

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app

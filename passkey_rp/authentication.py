"""Authentication ceremony: options, assertion verification, counter upkeep."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Any, List

from .challenges import AUTHENTICATION, ChallengeSession
from .config import RPSettings
from .errors import (
    NoPendingCeremony,
    PossibleCloneDetected,
    UnknownUser,
    UnregisteredAuthenticator,
    VerificationFailed,
)
from .events import log_event
from .models import b64url_decode, b64url_encode, normalize_username
from .schemas import (
    AuthenticationCredential,
    AuthenticationOptions,
    CeremonyResult,
    PublicKeyCredentialDescriptor,
    parse_credential,
)
from .store import CredentialStore
from .verification import Verifier


class AuthenticationCeremony:
    def __init__(self, settings: RPSettings, store: CredentialStore, verifier: Verifier) -> None:
        self.settings = settings
        self.store = store
        self.verifier = verifier

    def begin(self, username: str, session: ChallengeSession, req_id: str = "-") -> AuthenticationOptions:
        username = normalize_username(username)
        log_event("authn", "options.start", req_id, user=username)
        user = self.store.get(username)
        if user is None:
            log_event(
                "authn",
                "options.unknown_user",
                req_id,
                user=username,
                concealed=self.settings.conceal_unknown_users,
                level=logging.WARNING,
            )
            if not self.settings.conceal_unknown_users:
                raise UnknownUser()
            allow_credentials = self._decoy_descriptors(username)
        else:
            allow_credentials = [
                PublicKeyCredentialDescriptor.model_validate(item) for item in user.descriptors()
            ]

        challenge = secrets.token_bytes(self.settings.challenge_bytes)
        options = AuthenticationOptions(
            challenge=b64url_encode(challenge),
            rpId=self.settings.rp_id,
            allowCredentials=allow_credentials,
            timeout=self.settings.timeout_ms,
            userVerification="preferred",
        )
        session.start(AUTHENTICATION, user, challenge)
        log_event(
            "authn",
            "options.success",
            req_id,
            user=username,
            credential_count=len(allow_credentials),
        )
        return options

    def complete(self, payload: Any, session: ChallengeSession, req_id: str = "-") -> CeremonyResult:
        log_event("authn", "verify.start", req_id)
        try:
            pending = session.consume(AUTHENTICATION)
        except NoPendingCeremony as exc:
            log_event("authn", "verify.no_pending", req_id, reason=exc.message, level=logging.WARNING)
            raise
        username = pending.user.username if pending.user else None

        try:
            credential = parse_credential(AuthenticationCredential, payload)
            try:
                raw_id = b64url_decode(credential.rawId)
            except ValueError as exc:
                raise VerificationFailed("Malformed credential ID") from exc
        except VerificationFailed as exc:
            log_event("authn", "verify.failed", req_id, user=username, reason=exc.reason, level=logging.WARNING)
            raise

        user = self.store.get(username) if username else None
        stored = user.find_credential(raw_id) if user else None
        if stored is None:
            log_event(
                "authn",
                "verify.unregistered",
                req_id,
                user=username,
                credential_id=credential.rawId,
                level=logging.WARNING,
            )
            raise UnregisteredAuthenticator()

        try:
            result = self.verifier.verify_assertion(
                credential,
                stored=stored,
                expected_user_handle=user.handle,
                expected_challenge=pending.challenge,
                expected_origin=self.settings.origin,
                expected_rp_id=self.settings.rp_id,
                require_user_verification=self.settings.require_user_verification,
            )
        except PossibleCloneDetected as exc:
            log_event(
                "authn",
                "verify.clone",
                req_id,
                user=username,
                credential_id=credential.rawId,
                stored_count=exc.stored_count,
                reported_count=exc.reported_count,
                level=logging.ERROR,
            )
            raise
        except VerificationFailed as exc:
            log_event(
                "authn",
                "verify.failed",
                req_id,
                user=username,
                credential_id=credential.rawId,
                reason=exc.reason,
                level=logging.WARNING,
            )
            raise

        stored.sign_count = result.new_sign_count
        self.store.put(user)
        log_event(
            "authn",
            "verify.success",
            req_id,
            user=username,
            credential_id=credential.rawId,
            sign_count=result.new_sign_count,
            user_verified=result.user_verified,
        )
        return CeremonyResult(verified=True)

    def _decoy_descriptors(self, username: str) -> List[PublicKeyCredentialDescriptor]:
        """Stable fake allow-list so unknown usernames look like real ones."""
        digest = hmac.new(
            self.settings.secret_key.encode("utf-8"),
            username.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return [PublicKeyCredentialDescriptor(id=b64url_encode(digest), transports=["internal"])]

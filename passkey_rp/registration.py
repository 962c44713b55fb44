"""Registration ceremony: options, attestation verification, enrollment."""

from __future__ import annotations

import logging
import secrets
from typing import Any

from .challenges import REGISTRATION, ChallengeSession
from .config import RPSettings
from .errors import NoPendingCeremony, StaleRecord, VerificationFailed
from .events import log_event
from .models import Credential, UserIdentity, b64url_encode, normalize_username
from .schemas import (
    AuthenticatorSelectionCriteria,
    CeremonyResult,
    PubKeyCredParam,
    RegistrationCredential,
    RegistrationOptions,
    RelyingPartyEntity,
    UserEntity,
    parse_credential,
)
from .store import CredentialStore
from .verification import Verifier


class RegistrationCeremony:
    def __init__(self, settings: RPSettings, store: CredentialStore, verifier: Verifier) -> None:
        self.settings = settings
        self.store = store
        self.verifier = verifier

    def begin(self, username: str, session: ChallengeSession, req_id: str = "-") -> RegistrationOptions:
        username = normalize_username(username)
        log_event("register", "options.start", req_id, user=username)
        user = self.store.get(username)
        if user is None:
            user = UserIdentity.new(username)
            log_event("register", "user.new", req_id, user=username, user_handle=user.id)

        challenge = secrets.token_bytes(self.settings.challenge_bytes)
        options = RegistrationOptions(
            challenge=b64url_encode(challenge),
            rp=RelyingPartyEntity(id=self.settings.rp_id, name=self.settings.rp_name),
            user=UserEntity(id=b64url_encode(user.handle), name=username, displayName=username),
            pubKeyCredParams=[
                PubKeyCredParam(alg=alg) for alg in self.settings.supported_algorithms
            ],
            timeout=self.settings.timeout_ms,
            authenticatorSelection=AuthenticatorSelectionCriteria(
                residentKey="discouraged",
                requireResidentKey=False,
                userVerification="preferred",
            ),
            excludeCredentials=user.descriptors(),
        )
        session.start(REGISTRATION, user, challenge)
        log_event(
            "register",
            "options.success",
            req_id,
            user=username,
            user_handle=user.id,
            credential_count=len(user.credentials),
        )
        return options

    def complete(self, payload: Any, session: ChallengeSession, req_id: str = "-") -> CeremonyResult:
        log_event("register", "verify.start", req_id)
        try:
            pending = session.consume(REGISTRATION)
        except NoPendingCeremony as exc:
            log_event("register", "verify.no_pending", req_id, reason=exc.message, level=logging.WARNING)
            raise
        user = pending.user

        try:
            credential = parse_credential(RegistrationCredential, payload)
            result = self.verifier.verify_attestation(
                credential,
                expected_challenge=pending.challenge,
                expected_origin=self.settings.origin,
                expected_rp_id=self.settings.rp_id,
                supported_algorithms=self.settings.supported_algorithms,
                require_user_verification=self.settings.require_user_verification,
            )
            owner = self.store.owner_of(result.credential_id)
            if owner is not None and owner != user.username:
                raise VerificationFailed("Credential already registered to another account")
        except VerificationFailed as exc:
            log_event(
                "register",
                "verify.failed",
                req_id,
                user=user.username,
                reason=exc.reason,
                level=logging.WARNING,
            )
            raise

        current = self.store.get(user.username)
        if current is None:
            current = user
        elif current.id != user.id:
            raise StaleRecord("User record was created by another registration")

        credential_id = b64url_encode(result.credential_id)
        if current.find_credential(result.credential_id) is not None:
            log_event(
                "register",
                "verify.duplicate",
                req_id,
                user=current.username,
                credential_id=credential_id,
            )
            return CeremonyResult(verified=True)

        current.credentials.append(
            Credential(
                credential_id=result.credential_id,
                public_key=result.public_key,
                algorithm=result.algorithm,
                sign_count=result.sign_count,
                transports=list(dict.fromkeys(credential.response.transports)),
                backed_up=result.backed_up,
                device_type=result.device_type,
                aaguid=result.aaguid,
                attestation_format=result.attestation_format,
            )
        )
        self.store.put(current)
        log_event(
            "register",
            "verify.success",
            req_id,
            user=current.username,
            user_handle=current.id,
            credential_id=credential_id,
            algorithm=result.algorithm,
            sign_count=result.sign_count,
            device_type=result.device_type,
        )
        return CeremonyResult(verified=True)

"""Exceptions raised by the ceremony core."""

from __future__ import annotations


class CeremonyError(Exception):
    """Base class for every failure surfaced to HTTP clients."""

    status_code = 400
    message = "Ceremony failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidRequest(CeremonyError):
    message = "Invalid request"


class NoPendingCeremony(CeremonyError):
    message = "No pending ceremony"


class UnknownUser(CeremonyError):
    status_code = 404
    message = "Unknown user"


class UnregisteredAuthenticator(CeremonyError):
    message = "Authenticator is not registered"


class VerificationFailed(CeremonyError):
    """The response did not verify. ``reason`` is safe to show to clients."""

    message = "Verification failed"

    @property
    def reason(self) -> str:
        return self.message


class PossibleCloneDetected(VerificationFailed):
    """Signature counter did not advance on an authenticator that counts."""

    def __init__(self, stored_count: int, reported_count: int) -> None:
        super().__init__(
            f"Signature counter regression: stored {stored_count}, reported {reported_count}"
        )
        self.stored_count = stored_count
        self.reported_count = reported_count


class StoreUnavailable(CeremonyError):
    status_code = 503
    message = "Credential store unavailable"


class StaleRecord(StoreUnavailable):
    status_code = 409
    message = "User record was modified concurrently"


class CredentialConflict(StoreUnavailable):
    status_code = 409
    message = "Credential already registered to another account"

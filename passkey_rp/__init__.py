"""WebAuthn passkey relying party exposing the Flask app factory."""

from .app import create_app
from .authentication import AuthenticationCeremony
from .challenges import ChallengeCache, ChallengeSession
from .config import RPSettings
from .registration import RegistrationCeremony
from .store import (
    CredentialStore,
    DirectoryCredentialStore,
    InMemoryCredentialStore,
    SQLCredentialStore,
)
from .verification import Verifier, WebAuthnVerifier

__all__ = [
    "create_app",
    "RPSettings",
    "RegistrationCeremony",
    "AuthenticationCeremony",
    "ChallengeCache",
    "ChallengeSession",
    "CredentialStore",
    "InMemoryCredentialStore",
    "DirectoryCredentialStore",
    "SQLCredentialStore",
    "Verifier",
    "WebAuthnVerifier",
]

"""User and credential records plus their persisted document form."""

from __future__ import annotations

import base64
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import InvalidRequest

SINGLE_DEVICE = "single_device"
MULTI_DEVICE = "multi_device"
DeviceType = Literal["single_device", "multi_device"]

ALPHABET = string.ascii_letters + string.digits


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


MAX_USERNAME_LENGTH = 64


def generate_user_handle(length: int = 21) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_username(username: object) -> str:
    if not isinstance(username, str) or not username.strip():
        raise InvalidRequest("Username is required")
    username = username.strip()
    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidRequest(f"Username must be at most {MAX_USERNAME_LENGTH} characters")
    return username


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialModel(BaseModel):
    credential_id: str
    public_key: str
    sign_count: int = Field(default=0, ge=0)
    transports: List[str] = Field(default_factory=list)
    backed_up: bool = False
    device_type: DeviceType = SINGLE_DEVICE
    algorithm: int
    aaguid: str = ""
    attestation_format: str = "none"
    created_at: datetime


class UserRecordModel(BaseModel):
    """Self-describing JSON document persisted once per username."""

    id: str
    username: str
    version: int = 0
    credentials: List[CredentialModel] = Field(default_factory=list)

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, data: str) -> "UserRecordModel":
        return cls.model_validate_json(data)


@dataclass
class Credential:
    credential_id: bytes
    public_key: bytes
    algorithm: int
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    backed_up: bool = False
    device_type: str = SINGLE_DEVICE
    aaguid: bytes = bytes(16)
    attestation_format: str = "none"
    created_at: datetime = field(default_factory=_utcnow)

    def descriptor(self) -> dict:
        """PublicKeyCredentialDescriptor for exclude/allow lists."""
        return {
            "id": b64url_encode(self.credential_id),
            "type": "public-key",
            "transports": list(self.transports),
        }

    def to_model(self) -> CredentialModel:
        return CredentialModel(
            credential_id=b64url_encode(self.credential_id),
            public_key=b64url_encode(self.public_key),
            sign_count=self.sign_count,
            transports=list(self.transports),
            backed_up=self.backed_up,
            device_type=self.device_type,
            algorithm=self.algorithm,
            aaguid=b64url_encode(self.aaguid),
            attestation_format=self.attestation_format,
            created_at=self.created_at,
        )

    @classmethod
    def from_model(cls, model: CredentialModel) -> "Credential":
        return cls(
            credential_id=b64url_decode(model.credential_id),
            public_key=b64url_decode(model.public_key),
            algorithm=model.algorithm,
            sign_count=model.sign_count,
            transports=list(model.transports),
            backed_up=model.backed_up,
            device_type=model.device_type,
            aaguid=b64url_decode(model.aaguid) if model.aaguid else bytes(16),
            attestation_format=model.attestation_format,
            created_at=model.created_at,
        )


@dataclass
class UserIdentity:
    id: str
    username: str
    credentials: List[Credential] = field(default_factory=list)
    version: int = 0

    @property
    def handle(self) -> bytes:
        """WebAuthn user.id bytes."""
        return self.id.encode("utf-8")

    @property
    def is_persisted(self) -> bool:
        return self.version > 0

    def find_credential(self, credential_id: bytes) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.credential_id == credential_id:
                return credential
        return None

    def descriptors(self) -> List[dict]:
        return [credential.descriptor() for credential in self.credentials]

    def to_model(self) -> UserRecordModel:
        return UserRecordModel(
            id=self.id,
            username=self.username,
            version=self.version,
            credentials=[credential.to_model() for credential in self.credentials],
        )

    @classmethod
    def from_model(cls, model: UserRecordModel) -> "UserIdentity":
        return cls(
            id=model.id,
            username=model.username,
            version=model.version,
            credentials=[Credential.from_model(item) for item in model.credentials],
        )

    @classmethod
    def new(cls, username: str) -> "UserIdentity":
        return cls(id=generate_user_handle(), username=username)

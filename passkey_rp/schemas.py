"""Pydantic schemas for request/response payloads."""

from __future__ import annotations

from typing import Any, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidRequest, VerificationFailed

T = TypeVar("T", bound=BaseModel)


class UsernameRequest(BaseModel):
    username: str


class RelyingPartyEntity(BaseModel):
    id: str
    name: str


class UserEntity(BaseModel):
    id: str = Field(min_length=1)
    name: str
    displayName: str


class PubKeyCredParam(BaseModel):
    type: Literal["public-key"] = "public-key"
    alg: int


class PublicKeyCredentialDescriptor(BaseModel):
    id: str
    type: Literal["public-key"] = "public-key"
    transports: List[str] = Field(default_factory=list)


class AuthenticatorSelectionCriteria(BaseModel):
    residentKey: Literal["required", "preferred", "discouraged"] = "discouraged"
    requireResidentKey: bool = False
    userVerification: Literal["required", "preferred", "discouraged"] = "preferred"


class RegistrationOptions(BaseModel):
    challenge: str
    rp: RelyingPartyEntity
    user: UserEntity
    pubKeyCredParams: List[PubKeyCredParam]
    timeout: int
    attestation: Literal["none"] = "none"
    authenticatorSelection: AuthenticatorSelectionCriteria = Field(
        default_factory=AuthenticatorSelectionCriteria
    )
    excludeCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)


class AuthenticationOptions(BaseModel):
    challenge: str
    rpId: str
    allowCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)
    timeout: int
    userVerification: Literal["required", "preferred", "discouraged"] = "preferred"


class AuthenticatorAttestationResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    clientDataJSON: str
    attestationObject: str
    transports: List[str] = Field(default_factory=list)


class AuthenticatorAssertionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    clientDataJSON: str
    authenticatorData: str
    signature: str
    userHandle: Optional[str] = None


class RegistrationCredential(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    rawId: str
    type: str = "public-key"
    response: AuthenticatorAttestationResponse
    authenticatorAttachment: Optional[str] = None


class AuthenticationCredential(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    rawId: str
    type: str = "public-key"
    response: AuthenticatorAssertionResponse
    authenticatorAttachment: Optional[str] = None


class CeremonyResult(BaseModel):
    verified: bool
    error: Optional[str] = None


def parse_request(model: Type[T], payload: Any) -> T:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise InvalidRequest(_summarize(exc)) from exc


def parse_credential(model: Type[T], payload: Any) -> T:
    try:
        return model.model_validate(payload or {})
    except ValidationError as exc:
        raise VerificationFailed(f"Malformed credential: {_summarize(exc)}") from exc


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "body"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)

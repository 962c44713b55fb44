"""WebAuthn response verification.

The ceremonies only depend on the :class:`Verifier` protocol. The default
implementation parses CBOR with ``cbor2`` and checks signatures with
``fido2.cose`` keys. Every structural or cryptographic problem surfaces as
:class:`~passkey_rp.errors.VerificationFailed`.
"""

from __future__ import annotations

import binascii
import hashlib
import json
from contextlib import contextmanager
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Sequence

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from fido2.cose import CoseKey, UnsupportedKey

from .errors import PossibleCloneDetected, VerificationFailed
from .models import MULTI_DEVICE, SINGLE_DEVICE, Credential, b64url_decode
from .schemas import AuthenticationCredential, RegistrationCredential

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40
FLAG_ED = 0x80

CREATE_TYPE = "webauthn.create"
GET_TYPE = "webauthn.get"


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[Dict[int, Any]] = None
    credential_public_key_bytes: Optional[bytes] = None
    extensions: Optional[Dict[str, Any]] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BE)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BS)

    @property
    def device_type(self) -> str:
        return MULTI_DEVICE if self.backup_eligible else SINGLE_DEVICE


@dataclass
class RegistrationVerification:
    credential_id: bytes
    public_key: bytes
    algorithm: int
    sign_count: int
    aaguid: bytes
    attestation_format: str
    user_verified: bool
    backed_up: bool
    device_type: str


@dataclass
class AuthenticationVerification:
    credential_id: bytes
    new_sign_count: int
    user_verified: bool
    backed_up: bool
    device_type: str


class Verifier(Protocol):
    def verify_attestation(
        self,
        credential: RegistrationCredential,
        *,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        supported_algorithms: Sequence[int],
        require_user_verification: bool = False,
    ) -> RegistrationVerification:
        ...

    def verify_assertion(
        self,
        credential: AuthenticationCredential,
        *,
        stored: Credential,
        expected_user_handle: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        require_user_verification: bool = False,
    ) -> AuthenticationVerification:
        ...


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < 37:
        raise VerificationFailed("Authenticator data too short")
    idx = 0
    rp_id_hash = data[idx : idx + 32]
    idx += 32
    flags = data[idx]
    idx += 1
    sign_count = int.from_bytes(data[idx : idx + 4], "big")
    idx += 4
    parsed = AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)

    if flags & FLAG_AT:
        if len(data) < idx + 18:
            raise VerificationFailed("Malformed attested credential data")
        parsed.aaguid = data[idx : idx + 16]
        idx += 16
        cred_len = int.from_bytes(data[idx : idx + 2], "big")
        idx += 2
        if len(data) < idx + cred_len:
            raise VerificationFailed("Credential ID length exceeds authenticator data")
        parsed.credential_id = data[idx : idx + cred_len]
        idx += cred_len
        stream = BytesIO(data[idx:])
        parsed.credential_public_key = cbor2.CBORDecoder(stream).decode()
        if not isinstance(parsed.credential_public_key, dict):
            raise VerificationFailed("Credential public key is not a COSE map")
        parsed.credential_public_key_bytes = data[idx : idx + stream.tell()]
        idx += stream.tell()

    if flags & FLAG_ED:
        stream = BytesIO(data[idx:])
        parsed.extensions = cbor2.CBORDecoder(stream).decode()
        idx += stream.tell()

    if idx != len(data):
        raise VerificationFailed("Unexpected trailing bytes in authenticator data")
    return parsed


@contextmanager
def _failures() -> Iterator[None]:
    try:
        yield
    except VerificationFailed:
        raise
    except InvalidSignature as exc:
        raise VerificationFailed("Signature verification failed") from exc
    except NotImplementedError as exc:
        raise VerificationFailed("Unsupported public key algorithm") from exc
    except (
        ValueError,
        KeyError,
        TypeError,
        binascii.Error,
        json.JSONDecodeError,
        cbor2.CBORDecodeError,
    ) as exc:
        raise VerificationFailed(f"Malformed response: {exc}") from exc


class WebAuthnVerifier:
    """Default verifier supporting "none" and packed self attestation."""

    def verify_attestation(
        self,
        credential: RegistrationCredential,
        *,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        supported_algorithms: Sequence[int],
        require_user_verification: bool = False,
    ) -> RegistrationVerification:
        with _failures():
            self._check_credential_type(credential.type)
            client_data_json = b64url_decode(credential.response.clientDataJSON)
            self._check_client_data(
                client_data_json, CREATE_TYPE, expected_challenge, expected_origin
            )

            attestation = cbor2.loads(b64url_decode(credential.response.attestationObject))
            if not isinstance(attestation, dict):
                raise VerificationFailed("Attestation object is not a map")
            auth_data_bytes = attestation.get("authData")
            if not isinstance(auth_data_bytes, (bytes, bytearray)):
                raise VerificationFailed("Invalid authenticator data")
            auth_data_bytes = bytes(auth_data_bytes)
            auth_data = parse_authenticator_data(auth_data_bytes)
            self._check_auth_data(auth_data, expected_rp_id, require_user_verification)

            if auth_data.credential_id is None or auth_data.credential_public_key is None:
                raise VerificationFailed("Missing attested credential data")
            if b64url_decode(credential.rawId) != auth_data.credential_id:
                raise VerificationFailed("Credential ID does not match authenticator data")

            algorithm = auth_data.credential_public_key.get(3)
            if algorithm not in supported_algorithms:
                raise VerificationFailed(f"Unsupported algorithm {algorithm}")
            public_key = CoseKey.parse(auth_data.credential_public_key)
            if isinstance(public_key, UnsupportedKey):
                raise VerificationFailed(f"Unsupported algorithm {algorithm}")
            load_public_key(auth_data.credential_public_key)

            fmt = attestation.get("fmt")
            statement = attestation.get("attStmt")
            client_data_hash = hashlib.sha256(client_data_json).digest()
            self._check_attestation_statement(
                fmt, statement, public_key, auth_data_bytes + client_data_hash
            )

            return RegistrationVerification(
                credential_id=auth_data.credential_id,
                public_key=auth_data.credential_public_key_bytes,
                algorithm=algorithm,
                sign_count=auth_data.sign_count,
                aaguid=auth_data.aaguid or bytes(16),
                attestation_format=fmt,
                user_verified=auth_data.user_verified,
                backed_up=auth_data.backed_up,
                device_type=auth_data.device_type,
            )

    def verify_assertion(
        self,
        credential: AuthenticationCredential,
        *,
        stored: Credential,
        expected_user_handle: bytes,
        expected_challenge: bytes,
        expected_origin: str,
        expected_rp_id: str,
        require_user_verification: bool = False,
    ) -> AuthenticationVerification:
        with _failures():
            self._check_credential_type(credential.type)
            if b64url_decode(credential.rawId) != stored.credential_id:
                raise VerificationFailed("Credential ID does not match stored credential")
            response = credential.response
            if response.userHandle and b64url_decode(response.userHandle) != expected_user_handle:
                raise VerificationFailed("User handle does not match")

            client_data_json = b64url_decode(response.clientDataJSON)
            self._check_client_data(
                client_data_json, GET_TYPE, expected_challenge, expected_origin
            )

            auth_data_bytes = b64url_decode(response.authenticatorData)
            auth_data = parse_authenticator_data(auth_data_bytes)
            self._check_auth_data(auth_data, expected_rp_id, require_user_verification)

            public_key = CoseKey.parse(cbor2.loads(stored.public_key))
            message = auth_data_bytes + hashlib.sha256(client_data_json).digest()
            public_key.verify(message, b64url_decode(response.signature))

            check_sign_count(stored.sign_count, auth_data.sign_count)

            return AuthenticationVerification(
                credential_id=stored.credential_id,
                new_sign_count=auth_data.sign_count,
                user_verified=auth_data.user_verified,
                backed_up=auth_data.backed_up,
                device_type=auth_data.device_type,
            )

    @staticmethod
    def _check_credential_type(value: str) -> None:
        if value != "public-key":
            raise VerificationFailed(f"Unexpected credential type {value!r}")

    @staticmethod
    def _check_client_data(
        client_data_json: bytes,
        expected_type: str,
        expected_challenge: bytes,
        expected_origin: str,
    ) -> None:
        client_data = json.loads(client_data_json)
        if not isinstance(client_data, dict):
            raise VerificationFailed("clientDataJSON is not an object")
        if client_data.get("type") != expected_type:
            raise VerificationFailed(f"Unexpected client data type {client_data.get('type')!r}")
        challenge = client_data.get("challenge")
        if not isinstance(challenge, str) or b64url_decode(challenge) != expected_challenge:
            raise VerificationFailed("Challenge mismatch")
        if client_data.get("origin") != expected_origin:
            raise VerificationFailed(f"Unexpected origin {client_data.get('origin')!r}")

    @staticmethod
    def _check_auth_data(
        auth_data: AuthenticatorData,
        expected_rp_id: str,
        require_user_verification: bool,
    ) -> None:
        if auth_data.rp_id_hash != hashlib.sha256(expected_rp_id.encode("utf-8")).digest():
            raise VerificationFailed("RP ID hash mismatch")
        if not auth_data.user_present:
            raise VerificationFailed("User was not present")
        if require_user_verification and not auth_data.user_verified:
            raise VerificationFailed("User verification required")
        if auth_data.backed_up and not auth_data.backup_eligible:
            raise VerificationFailed("Backup state set on a non backup-eligible credential")

    @staticmethod
    def _check_attestation_statement(
        fmt: Any,
        statement: Any,
        public_key: CoseKey,
        signed_data: bytes,
    ) -> None:
        if not isinstance(statement, dict):
            raise VerificationFailed("Invalid attestation statement")
        if fmt == "none":
            if statement:
                raise VerificationFailed("None attestation must have an empty statement")
            return
        if fmt == "packed" and "x5c" not in statement:
            if statement.get("alg") != public_key.ALGORITHM:
                raise VerificationFailed("Self attestation algorithm mismatch")
            signature = statement.get("sig")
            if not isinstance(signature, (bytes, bytearray)):
                raise VerificationFailed("Missing attestation signature")
            public_key.verify(signed_data, bytes(signature))
            return
        raise VerificationFailed(f"Unsupported attestation format {fmt!r}")


def load_public_key(cose_key: Mapping[int, Any]) -> Any:
    """Build a ``cryptography`` public key from a COSE map, rejecting incomplete keys."""
    kty = cose_key.get(1)
    if kty == 2 and cose_key.get(3) == -7:
        if cose_key.get(-1) != 1:
            raise VerificationFailed("Unsupported elliptic curve")
        x, y = cose_key.get(-2), cose_key.get(-3)
        if not isinstance(x, bytes) or not isinstance(y, bytes):
            raise VerificationFailed("Malformed EC2 public key")
        numbers = ec.EllipticCurvePublicNumbers(
            int.from_bytes(x, "big"), int.from_bytes(y, "big"), ec.SECP256R1()
        )
        return numbers.public_key()
    if kty == 3 and cose_key.get(3) == -257:
        n, e = cose_key.get(-1), cose_key.get(-2)
        if not isinstance(n, bytes) or not isinstance(e, bytes) or not n or not e:
            raise VerificationFailed("Malformed RSA public key")
        return rsa.RSAPublicNumbers(int.from_bytes(e, "big"), int.from_bytes(n, "big")).public_key()
    raise VerificationFailed(f"Unsupported key type {kty!r} for algorithm {cose_key.get(3)!r}")


def check_sign_count(stored_count: int, reported_count: int) -> None:
    """Authenticators that never count report 0 forever; anything else must advance."""
    if reported_count > stored_count:
        return
    if reported_count == 0 and stored_count == 0:
        return
    raise PossibleCloneDetected(stored_count, reported_count)

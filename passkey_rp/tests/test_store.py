from __future__ import annotations

import pytest

from passkey_rp.database import Database
from passkey_rp.errors import CredentialConflict, StaleRecord, StoreUnavailable
from passkey_rp.models import Credential, UserIdentity, b64url_encode
from passkey_rp.store import (
    DirectoryCredentialStore,
    InMemoryCredentialStore,
    SQLCredentialStore,
    build_store,
)


def make_user(username: str = "alice", credential_id: bytes = b"\x01\x02\x03") -> UserIdentity:
    user = UserIdentity.new(username)
    user.credentials.append(
        Credential(
            credential_id=credential_id,
            public_key=b"\xa5\x01\x02",
            algorithm=-7,
            transports=["usb", "nfc"],
        )
    )
    return user


@pytest.fixture(params=["memory", "directory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCredentialStore()
    if request.param == "directory":
        return DirectoryCredentialStore(tmp_path / "users")
    return SQLCredentialStore(Database(f"sqlite:///{tmp_path / 'rp.db'}"))


def test_store_round_trip(any_store):
    assert any_store.get("alice") is None

    stored = any_store.put(make_user())
    assert stored.version == 1

    loaded = any_store.get("alice")
    assert loaded.id == stored.id
    assert loaded.version == 1
    assert len(loaded.credentials) == 1
    credential = loaded.credentials[0]
    assert credential.credential_id == b"\x01\x02\x03"
    assert credential.public_key == b"\xa5\x01\x02"
    assert credential.transports == ["usb", "nfc"]
    assert credential.sign_count == 0


def test_get_returns_detached_copy(any_store):
    any_store.put(make_user())
    loaded = any_store.get("alice")
    loaded.credentials[0].sign_count = 99

    assert any_store.get("alice").credentials[0].sign_count == 0


def test_find_credential_uses_byte_equality(any_store):
    any_store.put(make_user(credential_id=b"\xff\x00"))
    user = any_store.get("alice")

    assert user.find_credential(b"\xff\x00") is not None
    assert user.find_credential(b"\xff") is None
    assert user.find_credential(b64url_encode(b"\xff\x00").encode()) is None


def test_stale_version_is_rejected(any_store):
    any_store.put(make_user())
    first = any_store.get("alice")
    second = any_store.get("alice")

    first.credentials[0].sign_count = 1
    any_store.put(first)

    second.credentials[0].sign_count = 2
    with pytest.raises(StaleRecord):
        any_store.put(second)
    assert any_store.get("alice").credentials[0].sign_count == 1


def test_creating_existing_user_is_rejected(any_store):
    any_store.put(make_user())
    with pytest.raises(StaleRecord):
        any_store.put(make_user(credential_id=b"\x09"))


def test_credential_cannot_move_between_users(any_store):
    any_store.put(make_user("alice", credential_id=b"shared"))

    with pytest.raises(CredentialConflict):
        any_store.put(make_user("bob", credential_id=b"shared"))
    assert any_store.get("bob") is None
    assert any_store.owner_of(b"shared") == "alice"
    assert any_store.owner_of(b"unknown") is None


def test_directory_store_survives_restart(tmp_path):
    DirectoryCredentialStore(tmp_path / "users").put(make_user())

    reopened = DirectoryCredentialStore(tmp_path / "users")
    assert reopened.get("alice").credentials[0].credential_id == b"\x01\x02\x03"
    assert reopened.owner_of(b"\x01\x02\x03") == "alice"


def test_sql_store_survives_restart(tmp_path):
    url = f"sqlite:///{tmp_path / 'rp.db'}"
    SQLCredentialStore(Database(url)).put(make_user())

    reopened = SQLCredentialStore(Database(url))
    assert reopened.get("alice").credentials[0].credential_id == b"\x01\x02\x03"
    assert reopened.owner_of(b"\x01\x02\x03") == "alice"


@pytest.mark.parametrize("content", [b"{not json", b"\xff\xfe\x00garbage"], ids=["bad-json", "bad-utf8"])
def test_directory_store_reports_corrupt_records(tmp_path, content):
    store = DirectoryCredentialStore(tmp_path / "users")
    store.put(make_user())
    for path in (tmp_path / "users").glob("*.json"):
        path.write_bytes(content)

    with pytest.raises(StoreUnavailable):
        store.get("alice")


def test_build_store_selects_backend(settings):
    assert isinstance(build_store(settings), InMemoryCredentialStore)
    assert isinstance(
        build_store(settings.model_copy(update={"store_backend": "directory"})),
        DirectoryCredentialStore,
    )
    assert isinstance(
        build_store(settings.model_copy(update={"store_backend": "sqlalchemy"})),
        SQLCredentialStore,
    )


def test_aaguid_is_stored_as_base64url():
    aaguid = bytes(range(16))
    credential = Credential(credential_id=b"\x01", public_key=b"\xa0", algorithm=-7, aaguid=aaguid)

    model = credential.to_model()
    assert model.aaguid == b64url_encode(aaguid)
    assert Credential.from_model(model).aaguid == aaguid

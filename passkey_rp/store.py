"""Credential store backends keyed by username."""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import RPSettings
from .database import CredentialOwnerRow, Database, UserRecordRow
from .errors import CredentialConflict, StaleRecord, StoreUnavailable
from .models import UserIdentity, UserRecordModel, b64url_encode

LOGGER = logging.getLogger(__name__)


class CredentialStore(ABC):
    """One record per username, replaced as a whole on every write.

    ``put`` only succeeds when ``user.version`` matches the stored version
    (0 for a user that was never persisted) and returns the stored copy with
    the bumped version.
    """

    @abstractmethod
    def get(self, username: str) -> Optional[UserIdentity]:
        """Return a detached copy of the user record, or None."""

    @abstractmethod
    def put(self, user: UserIdentity) -> UserIdentity:
        """Persist the full record."""

    @abstractmethod
    def owner_of(self, credential_id: bytes) -> Optional[str]:
        """Username owning ``credential_id``, if any."""

    @staticmethod
    def _next_document(user: UserIdentity) -> str:
        model = user.to_model()
        model.version = user.version + 1
        return model.encode()

    @staticmethod
    def _load(document: str) -> UserIdentity:
        return UserIdentity.from_model(UserRecordModel.decode(document))

    def _ensure_unowned(self, user: UserIdentity) -> None:
        for credential in user.credentials:
            owner = self.owner_of(credential.credential_id)
            if owner is not None and owner != user.username:
                raise CredentialConflict()


class InMemoryCredentialStore(CredentialStore):
    """Process-local store. Data is lost on restart."""

    def __init__(self) -> None:
        self._documents: Dict[str, str] = {}
        self._owners: Dict[bytes, str] = {}
        self._lock = threading.RLock()

    def get(self, username: str) -> Optional[UserIdentity]:
        with self._lock:
            document = self._documents.get(username)
        return self._load(document) if document is not None else None

    def put(self, user: UserIdentity) -> UserIdentity:
        with self._lock:
            current = self._documents.get(user.username)
            current_version = self._load(current).version if current else 0
            if current_version != user.version:
                raise StaleRecord()
            self._ensure_unowned(user)
            document = self._next_document(user)
            self._documents[user.username] = document
            for credential in user.credentials:
                self._owners[credential.credential_id] = user.username
        return self._load(document)

    def owner_of(self, credential_id: bytes) -> Optional[str]:
        with self._lock:
            return self._owners.get(bytes(credential_id))


class DirectoryCredentialStore(CredentialStore):
    """One JSON document per username inside ``directory``."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()
        self._lock = threading.RLock()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create store directory: {exc}") from exc

    def _path(self, username: str) -> Path:
        return self.directory / f"{b64url_encode(username.encode('utf-8'))}.json"

    def _read(self, path: Path) -> Optional[UserIdentity]:
        try:
            document = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreUnavailable(f"Cannot read {path.name}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise StoreUnavailable(f"Corrupt user record {path.name}") from exc
        try:
            return self._load(document)
        except ValidationError as exc:
            raise StoreUnavailable(f"Corrupt user record {path.name}") from exc

    def _records(self) -> Iterator[UserIdentity]:
        try:
            paths = sorted(self.directory.glob("*.json"))
        except OSError as exc:
            raise StoreUnavailable(f"Cannot list store directory: {exc}") from exc
        for path in paths:
            user = self._read(path)
            if user is not None:
                yield user

    def get(self, username: str) -> Optional[UserIdentity]:
        with self._lock:
            return self._read(self._path(username))

    def put(self, user: UserIdentity) -> UserIdentity:
        path = self._path(user.username)
        with self._lock:
            current = self._read(path)
            current_version = current.version if current else 0
            if current_version != user.version:
                raise StaleRecord()
            self._ensure_unowned(user)
            document = self._next_document(user)
            tmp_name = None
            try:
                fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(document)
                os.replace(tmp_name, path)
            except OSError as exc:
                if tmp_name and os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise StoreUnavailable(f"Cannot write {path.name}: {exc}") from exc
        return self._load(document)

    def owner_of(self, credential_id: bytes) -> Optional[str]:
        with self._lock:
            for user in self._records():
                if user.find_credential(bytes(credential_id)) is not None:
                    return user.username
        return None


class SQLCredentialStore(CredentialStore):
    """SQLAlchemy backed store; each ``put`` is one transaction."""

    def __init__(self, database: Database) -> None:
        self.db = database
        try:
            self.db.create_all()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot initialise database: {exc}") from exc

    def get(self, username: str) -> Optional[UserIdentity]:
        try:
            with self.db.session() as session:
                row = session.get(UserRecordRow, username)
                document = row.document if row else None
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot load user record: {exc}") from exc
        return self._load(document) if document is not None else None

    def put(self, user: UserIdentity) -> UserIdentity:
        document = self._next_document(user)
        try:
            with self.db.session() as session:
                for credential in user.credentials:
                    owner = session.get(CredentialOwnerRow, credential.credential_id)
                    if owner is None:
                        session.add(
                            CredentialOwnerRow(
                                credential_id=credential.credential_id,
                                username=user.username,
                            )
                        )
                    elif owner.username != user.username:
                        raise CredentialConflict()
                if user.version == 0:
                    session.add(
                        UserRecordRow(
                            username=user.username,
                            user_handle=user.id,
                            document=document,
                            version=1,
                        )
                    )
                    session.flush()
                else:
                    result = session.execute(
                        update(UserRecordRow)
                        .where(
                            UserRecordRow.username == user.username,
                            UserRecordRow.version == user.version,
                        )
                        .values(document=document, version=user.version + 1)
                    )
                    if result.rowcount != 1:
                        raise StaleRecord()
        except IntegrityError as exc:
            LOGGER.warning("Concurrent write for %s rejected: %s", user.username, exc.orig)
            raise StaleRecord() from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot store user record: {exc}") from exc
        return self._load(document)

    def owner_of(self, credential_id: bytes) -> Optional[str]:
        try:
            with self.db.session() as session:
                return session.scalar(
                    select(CredentialOwnerRow.username).where(
                        CredentialOwnerRow.credential_id == bytes(credential_id)
                    )
                )
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot look up credential owner: {exc}") from exc


def build_store(settings: RPSettings) -> CredentialStore:
    if settings.store_backend == "memory":
        return InMemoryCredentialStore()
    if settings.store_backend == "directory":
        return DirectoryCredentialStore(settings.store_directory)
    return SQLCredentialStore(Database(settings.database_url))

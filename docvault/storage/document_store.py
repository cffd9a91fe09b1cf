"""Persistent-store boundary and the in-memory reference implementation.

Every collection declares its secondary indexes up front so lookups such as
"actor by identity subject" or "organization by billing customer" are index
hits rather than scans.  Writes are serialized per store; ``update`` accepts a
``condition`` callable evaluated against the stored entity under the same
lock, which is the compare-and-set primitive the services build optimistic
versioning and upload-session transitions on.
"""

from __future__ import annotations

import base64
import binascii
import copy
import hashlib
import logging
import pickle
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional, Protocol, Tuple

from cryptography.fernet import Fernet, InvalidToken

from ..errors import Conflict, DependencyFailure, NotFound

logger = logging.getLogger(__name__)

ORGANIZATIONS = "organizations"
USERS = "users"
FILES = "files"
SHARES = "shares"
UPLOAD_SESSIONS = "upload_sessions"
AUDIT_RECORDS = "audit_records"
BILLING_EVENTS = "billing_events"


class DuplicateKey(Conflict):
    public_message = "Resource already exists"


class ConditionFailed(Conflict):
    public_message = "Resource was modified concurrently"


@dataclass(frozen=True)
class IndexSpec:
    name: str
    key: Callable[[Any], Optional[Hashable]]
    unique: bool = False


def _lower(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if value else None


DEFAULT_SCHEMA: Mapping[str, Tuple[IndexSpec, ...]] = {
    ORGANIZATIONS: (
        IndexSpec("prefix", lambda org: org.storage.prefix, unique=True),
        IndexSpec("customer_ref", lambda org: org.billing.customer_ref, unique=True),
    ),
    USERS: (
        IndexSpec("org_id", lambda user: user.org_id),
        IndexSpec("org_email", lambda user: (user.org_id, _lower(user.email)), unique=True),
        IndexSpec("subject", lambda user: user.subject, unique=True),
        IndexSpec("invite_token", lambda user: user.invite_token, unique=True),
    ),
    FILES: (
        IndexSpec("org_id", lambda record: record.org_id),
        IndexSpec("org_path", lambda record: (record.org_id, record.path)),
    ),
    SHARES: (
        IndexSpec("file_id", lambda share: share.file_id),
        IndexSpec("token", lambda share: share.token, unique=True),
    ),
    UPLOAD_SESSIONS: (
        IndexSpec("org_id", lambda session: session.org_id),
        IndexSpec("file_id", lambda session: session.file_id),
    ),
    AUDIT_RECORDS: (
        IndexSpec("org_id", lambda record: record.org_id),
    ),
    BILLING_EVENTS: (),
}


class DocumentStore(Protocol):
    def get(self, collection: str, entity_id: str) -> Optional[Any]:
        ...

    def insert(self, collection: str, entity: Any) -> None:
        ...

    def update(
        self,
        collection: str,
        entity: Any,
        *,
        condition: Optional[Callable[[Any], bool]] = None,
    ) -> None:
        ...

    def query(self, collection: str, index: str, key: Hashable) -> List[Any]:
        ...


class InMemoryDocumentStore:
    """Dictionary-backed store with unique/secondary indexes and optional snapshots."""

    def __init__(
        self,
        schema: Optional[Mapping[str, Tuple[IndexSpec, ...]]] = None,
        *,
        state_path: Optional[str] = None,
        encryption_key: Optional[str] = None,
    ) -> None:
        self._schema = dict(schema or DEFAULT_SCHEMA)
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in self._schema}
        self._indexes: Dict[str, Dict[str, Dict[Hashable, Dict[str, None]]]] = {
            name: {index.name: {} for index in specs} for name, specs in self._schema.items()
        }
        self._cipher = _StateCipher(encryption_key) if encryption_key else None
        self._state_file: Optional[Path] = Path(state_path).expanduser() if state_path else None
        if self._state_file:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # Boundary operations ---------------------------------------------------

    def get(self, collection: str, entity_id: str) -> Optional[Any]:
        with self._lock:
            entity = self._table(collection).get(entity_id)
            return copy.deepcopy(entity) if entity is not None else None

    def insert(self, collection: str, entity: Any) -> None:
        with self._lock:
            table = self._table(collection)
            if entity.id in table:
                raise DuplicateKey(f"{collection}/{entity.id} already exists")
            self._check_unique(collection, entity)
            stored = copy.deepcopy(entity)
            table[entity.id] = stored
            self._index(collection, stored)
            self._persist_state()

    def update(
        self,
        collection: str,
        entity: Any,
        *,
        condition: Optional[Callable[[Any], bool]] = None,
    ) -> None:
        with self._lock:
            table = self._table(collection)
            current = table.get(entity.id)
            if current is None:
                raise NotFound(f"{collection}/{entity.id} does not exist")
            if condition is not None and not condition(copy.deepcopy(current)):
                raise ConditionFailed(f"Condition failed for {collection}/{entity.id}")
            self._check_unique(collection, entity)
            self._unindex(collection, current)
            stored = copy.deepcopy(entity)
            table[entity.id] = stored
            self._index(collection, stored)
            self._persist_state()

    def query(self, collection: str, index: str, key: Hashable) -> List[Any]:
        with self._lock:
            try:
                bucket = self._indexes[collection][index]
            except KeyError as exc:
                raise ValueError(f"No index {index!r} on {collection!r}") from exc
            table = self._table(collection)
            return [copy.deepcopy(table[entity_id]) for entity_id in bucket.get(key, {})]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._table(collection))

    # Index maintenance -------------------------------------------------------

    def _table(self, collection: str) -> Dict[str, Any]:
        try:
            return self._tables[collection]
        except KeyError as exc:
            raise ValueError(f"Unknown collection {collection!r}") from exc

    def _check_unique(self, collection: str, entity: Any) -> None:
        for index in self._schema[collection]:
            if not index.unique:
                continue
            key = index.key(entity)
            if key is None:
                continue
            holders = self._indexes[collection][index.name].get(key, {})
            if any(holder != entity.id for holder in holders):
                raise DuplicateKey(f"Duplicate {index.name} in {collection}")

    def _index(self, collection: str, entity: Any) -> None:
        for index in self._schema[collection]:
            key = index.key(entity)
            if key is None:
                continue
            self._indexes[collection][index.name].setdefault(key, {})[entity.id] = None

    def _unindex(self, collection: str, entity: Any) -> None:
        for index in self._schema[collection]:
            key = index.key(entity)
            if key is None:
                continue
            bucket = self._indexes[collection][index.name].get(key)
            if bucket is None:
                continue
            bucket.pop(entity.id, None)
            if not bucket:
                self._indexes[collection][index.name].pop(key, None)

    # Persistence helpers -----------------------------------------------------

    def _load_state(self) -> None:
        if not self._state_file or not self._state_file.exists():
            return
        try:
            raw = self._state_file.read_bytes()
            if self._cipher:
                raw = self._cipher.decrypt(raw)
            snapshot = pickle.loads(raw)
        except (OSError, pickle.PickleError, InvalidToken, EOFError) as exc:
            logger.warning("Ignoring unreadable store snapshot %s: %s", self._state_file, exc)
            return
        for collection, entities in snapshot.items():
            if collection not in self._tables:
                continue
            for entity in entities.values():
                self._tables[collection][entity.id] = entity
                self._index(collection, entity)
        logger.info("Loaded store snapshot from %s", self._state_file)

    def _persist_state(self) -> None:
        if not self._state_file:
            return
        payload = pickle.dumps(self._tables)
        if self._cipher:
            payload = self._cipher.encrypt(payload)
        temp_path = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        try:
            temp_path.write_bytes(payload)
            temp_path.replace(self._state_file)
        except OSError as exc:
            raise DependencyFailure(f"Unable to persist store snapshot: {exc}") from exc


class _StateCipher:
    def __init__(self, secret: str) -> None:
        self._fernet = Fernet(self._normalize(secret))

    def encrypt(self, payload: bytes) -> bytes:
        return self._fernet.encrypt(payload)

    def decrypt(self, payload: bytes) -> bytes:
        return self._fernet.decrypt(payload)

    @staticmethod
    def _normalize(secret: str) -> bytes:
        try:
            if len(base64.urlsafe_b64decode(secret.encode())) == 32:
                return secret.encode()
        except (binascii.Error, ValueError):
            pass
        digest = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(digest)

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol
from urllib.parse import quote

from pydantic import ValidationError

from .canonical import from_canonical_json, to_canonical_json
from .models import CreditRecord, ExecutionState, SessionContext, StageId, utc_now_iso
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session"
CREDITS_PREFIX = "credits"

Clock = Callable[[], float]


class StateStoreError(RuntimeError):
    """Raised when a stored record cannot be read, decoded or written."""


class CreditsExhaustedError(RuntimeError):
    """Raised by ``deduct_credit`` when the ledger has nothing left to spend."""


class KeyValueStore(Protocol):
    """Minimal JSON key-value contract with optional per-key expiry."""

    def get(self, key: str) -> Any | None:
        ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path*.

    The sidecar lives next to the data file so ``os.replace`` of the data
    file never disturbs the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _expires_at(clock: Clock, ttl_seconds: int | None) -> float | None:
    if ttl_seconds is None:
        return None
    if ttl_seconds <= 0:
        raise ValueError(f"ttl_seconds must be positive, got: {ttl_seconds}")
    return clock() + ttl_seconds


def _is_expired(envelope: dict[str, Any], now: float) -> bool:
    expires_at = envelope.get("expires_at")
    return expires_at is not None and float(expires_at) <= now


# ---------------------------------------------------------------------------
# Key-value backends
# ---------------------------------------------------------------------------

class FileKeyValueStore:
    """One JSON envelope per key at ``<root>/<namespace>/<quoted-id>.json``.

    Keys are ``namespace:id``. Writes are atomic and serialized per key by an
    ``fcntl`` sidecar lock. Expired envelopes read as absent and are removed.
    """

    def __init__(self, root: Path, *, clock: Clock = time.time) -> None:
        self.root = Path(root)
        self.clock = clock

    def path_for(self, key: str) -> Path:
        namespace, separator, identifier = key.partition(":")
        if not separator or not namespace or not identifier:
            raise ValueError(f"Key must look like 'namespace:id', got: {key!r}")
        return self.root / quote(namespace, safe="") / f"{quote(identifier, safe='')}.json"

    def get(self, key: str) -> Any | None:
        path = self.path_for(key)
        try:
            with _locked_file(path):
                if not path.is_file():
                    return None
                envelope = from_canonical_json(path.read_text(encoding="utf-8"))
                if not isinstance(envelope, dict) or "value" not in envelope:
                    raise StateStoreError(f"Stored record for {key!r} at {path} has no value envelope")
                if _is_expired(envelope, self.clock()):
                    logger.debug("Record %s expired, removing %s", key, path)
                    path.unlink(missing_ok=True)
                    return None
                return envelope["value"]
        except (OSError, ValueError, TypeError) as exc:
            raise StateStoreError(f"Stored record for {key!r} at {path} is unreadable: {exc}") from exc

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        path = self.path_for(key)
        envelope = {"expires_at": _expires_at(self.clock, ttl_seconds), "value": value}
        try:
            content = to_canonical_json(envelope)
            with _locked_file(path):
                _atomic_write_text(path, content)
        except (OSError, TypeError) as exc:
            raise StateStoreError(f"Failed to write record {key!r} to {path}: {exc}") from exc


class InMemoryKeyValueStore:
    """Process-local store with the same expiry semantics as ``FileKeyValueStore``.

    Values are kept as canonical JSON text so callers never share mutable
    state with the store.
    """

    def __init__(self, *, clock: Clock = time.time) -> None:
        self.clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            text, expires_at = entry
            if expires_at is not None and expires_at <= self.clock():
                del self._entries[key]
                return None
        return from_canonical_json(text)

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        try:
            text = to_canonical_json(value)
        except TypeError as exc:
            raise StateStoreError(f"Failed to encode record {key!r}: {exc}") from exc
        expires_at = _expires_at(self.clock, ttl_seconds)
        with self._lock:
            self._entries[key] = (text, expires_at)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)


# ---------------------------------------------------------------------------
# Sessions and credits
# ---------------------------------------------------------------------------

def normalize_identity(email: str) -> str:
    return email.strip().lower()


def credits_remaining(record: CreditRecord) -> int:
    return max(0, record.total - record.used)


class IntakeStateStore:
    """Session and credit persistence over a ``KeyValueStore``.

    ``session:<id>`` holds an ``ExecutionState`` and expires after the
    configured session TTL. ``credits:<identity>`` holds a ``CreditRecord``
    and never expires. Credit updates are read-modify-write without
    compare-and-swap; concurrent revisions by one submitter can race.
    """

    def __init__(self, kv: KeyValueStore, settings: RuntimeSettings | None = None) -> None:
        self.kv = kv
        self.settings = settings if settings is not None else RuntimeSettings()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path | None = None) -> "IntakeStateStore":
        root = settings.state_store_path(repo_root if repo_root is not None else Path.cwd())
        return cls(FileKeyValueStore(root), settings)

    # -- sessions ----------------------------------------------------------

    @staticmethod
    def session_key(session_id: str) -> str:
        return f"{SESSION_PREFIX}:{session_id}"

    @staticmethod
    def credits_key(email: str) -> str:
        return f"{CREDITS_PREFIX}:{normalize_identity(email)}"

    def create_session(self, session_id: str, context: SessionContext) -> ExecutionState:
        """Build a fresh running state at the first stage. Nothing is written until ``save_session``."""
        now = utc_now_iso()
        return ExecutionState(
            session_id=session_id,
            current_stage=StageId.ASSESS,
            context=context,
            created_at=now,
            updated_at=now,
        )

    def save_session(self, state: ExecutionState) -> None:
        state.updated_at = utc_now_iso()
        self.kv.set(
            self.session_key(state.session_id),
            state.to_wire(),
            ttl_seconds=self.settings.session_ttl_seconds,
        )
        logger.debug("Saved session %s at stage %s (%s)", state.session_id, state.current_stage.value, state.status.value)

    def load_session(self, session_id: str) -> ExecutionState | None:
        payload = self.kv.get(self.session_key(session_id))
        if payload is None:
            return None
        try:
            return ExecutionState.model_validate(payload)
        except ValidationError as exc:
            raise StateStoreError(f"Session {session_id!r} failed validation: {exc}") from exc

    # -- credits -----------------------------------------------------------

    def load_credits(self, email: str) -> CreditRecord | None:
        payload = self.kv.get(self.credits_key(email))
        if payload is None:
            return None
        try:
            return CreditRecord.model_validate(payload)
        except ValidationError as exc:
            raise StateStoreError(f"Credit record for {email!r} failed validation: {exc}") from exc

    def save_credits(self, record: CreditRecord) -> CreditRecord:
        updated = record.model_copy(update={"updated_at": utc_now_iso()})
        self.kv.set(self.credits_key(updated.email), updated.to_wire())
        return updated

    def get_or_create_credits(self, email: str) -> CreditRecord:
        existing = self.load_credits(email)
        if existing is not None:
            return existing
        record = CreditRecord(email=normalize_identity(email), total=self.settings.credits_included)
        logger.info("Allocated %d credits for %s", record.total, record.email)
        return self.save_credits(record)

    def deduct_credit(self, email: str) -> CreditRecord:
        """Spend one credit.

        Raises:
            CreditsExhaustedError: If ``used`` has already reached ``total``.
        """
        record = self.get_or_create_credits(email)
        if credits_remaining(record) <= 0:
            raise CreditsExhaustedError(f"No credits remaining for {record.email}")
        return self.save_credits(record.model_copy(update={"used": record.used + 1}))

from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path
from typing import Any

import anyio
import msgspec

from ..logging import get_logger
from .events import CredentialsUpdate

logger = get_logger(__name__)

AUTH_VERSION = 1
CREDS_FILENAME = "creds.json"
# same tagged form the backend uses for binary fields: {"type": "Buffer", "data": <base64>}
BUFFER_TAG = "Buffer"


class AuthStateError(RuntimeError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Unusable auth state in {path}: {reason}")
        self.path = path
        self.reason = reason


class AuthState(msgspec.Struct, forbid_unknown_fields=False):
    version: int = AUTH_VERSION
    creds: dict[str, Any] = msgspec.field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = msgspec.field(default_factory=dict)

    @property
    def registered(self) -> bool:
        return bool(self.creds.get("registered"))


def _tag_buffers(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        data = base64.b64encode(bytes(value)).decode("ascii")
        return {"type": BUFFER_TAG, "data": data}
    if isinstance(value, dict):
        return {key: _tag_buffers(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_tag_buffers(item) for item in value]
    return value


def _untag_buffers(value: Any) -> Any:
    if isinstance(value, dict):
        if (
            value.keys() == {"type", "data"}
            and value["type"] == BUFFER_TAG
            and isinstance(value["data"], str)
        ):
            return base64.b64decode(value["data"], validate=True)
        return {key: _untag_buffers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_untag_buffers(item) for item in value]
    return value


def _merge_keys(
    current: dict[str, dict[str, Any]], changes: dict[str, Any]
) -> None:
    for key_type, entries in changes.items():
        if not isinstance(entries, dict):
            continue
        bucket = current.setdefault(key_type, {})
        for key_id, value in entries.items():
            if value is None:
                bucket.pop(key_id, None)
            else:
                bucket[key_id] = value
        if not bucket:
            current.pop(key_type, None)


class FileAuthStore:
    """Credentials for one account, kept as JSON under a fixed directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._path = directory / CREDS_FILENAME
        self._lock = anyio.Lock()
        self._state: AuthState | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> AuthState:
        async with self._lock:
            self._state = self._load_locked()
            return self._state

    async def save(self, update: CredentialsUpdate) -> None:
        async with self._lock:
            current = self._state if self._state is not None else self._load_locked()
            # merge into a copy; a failed write leaves the known-good state in place
            keys = {name: dict(bucket) for name, bucket in current.keys.items()}
            if update.keys:
                _merge_keys(keys, update.keys)
            pending = AuthState(creds={**current.creds, **update.creds}, keys=keys)
            self._save_locked(pending)
            self._state = pending

    async def clear(self) -> None:
        async with self._lock:
            self._state = None
            try:
                self._path.unlink(missing_ok=True)
            except OSError as exc:
                raise AuthStateError(self._path, str(exc)) from exc

    def _load_locked(self) -> AuthState:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            logger.info("auth.new", path=str(self._path))
            return AuthState()
        except OSError as exc:
            raise AuthStateError(self._path, str(exc)) from exc
        try:
            state = msgspec.json.decode(raw, type=AuthState)
        except msgspec.DecodeError as exc:
            raise AuthStateError(self._path, str(exc)) from exc
        if state.version != AUTH_VERSION:
            raise AuthStateError(
                self._path,
                f"version {state.version}, expected {AUTH_VERSION}",
            )
        try:
            state.creds = _untag_buffers(state.creds)
            state.keys = _untag_buffers(state.keys)
        except binascii.Error as exc:
            raise AuthStateError(self._path, f"bad buffer: {exc}") from exc
        return state

    def _save_locked(self, state: AuthState) -> None:
        stored = AuthState(
            version=state.version,
            creds=_tag_buffers(state.creds),
            keys=_tag_buffers(state.keys),
        )
        try:
            payload = msgspec.json.format(msgspec.json.encode(stored))
        except (msgspec.EncodeError, TypeError) as exc:
            raise AuthStateError(self._path, f"cannot encode: {exc}") from exc
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise AuthStateError(self._path, str(exc)) from exc

"""Typed events emitted by a backend session.

The backend library reports everything through one async stream of these
values; the manager reacts to them with a single ``match`` statement.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, TypeAlias


class ConnectionPhase(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


@dataclass(frozen=True, slots=True)
class CloseReason:
    status_code: int | None = None
    message: str | None = None


@dataclass(frozen=True, slots=True)
class MessageKey:
    remote_jid: str | None
    id: str | None
    from_me: bool = False
    participant: str | None = None


@dataclass(frozen=True, slots=True)
class InboundMessage:
    key: MessageKey
    message: dict[str, Any] | None = None
    push_name: str | None = None
    timestamp: int | None = None
    raw: Any | None = field(default=None, compare=False, hash=False)


@dataclass(frozen=True, slots=True)
class MessageUpdate:
    key: MessageKey
    stub_type: int | None = None
    status: int | None = None


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    phase: ConnectionPhase | None = None
    close_reason: CloseReason | None = None
    qr: str | None = None


@dataclass(frozen=True, slots=True)
class CredentialsUpdate:
    creds: dict[str, Any]
    keys: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class MessagesUpsert:
    messages: tuple[InboundMessage, ...]
    # notify: new messages; append: history sync
    kind: Literal["notify", "append"] = "notify"


@dataclass(frozen=True, slots=True)
class MessagesUpdate:
    updates: tuple[MessageUpdate, ...]


@dataclass(frozen=True, slots=True)
class GroupsUpdate:
    group_ids: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class GroupParticipantsUpdate:
    group_id: str
    participants: tuple[str, ...]
    action: Literal["add", "remove", "promote", "demote"]


SessionEvent: TypeAlias = (
    ConnectionUpdate
    | CredentialsUpdate
    | MessagesUpsert
    | MessagesUpdate
    | GroupsUpdate
    | GroupParticipantsUpdate
)

REVOKE_STUB_TYPE = 1

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from .events import InboundMessage, MessageKey, SessionEvent

if TYPE_CHECKING:
    from .auth import AuthState
    from ..caches import RetryCounterCache

GroupMetadata = dict[str, Any]


class Session(Protocol):
    """One live link to the chat backend, as handed out by a backend plugin."""

    @property
    def user_id(self) -> str | None: ...

    def events(self) -> AsyncIterator[SessionEvent]: ...

    async def logout(self) -> None: ...

    async def end(self) -> None: ...

    async def group_metadata(self, jid: str) -> GroupMetadata: ...


@dataclass(frozen=True, slots=True)
class SessionOptions:
    mark_online_on_connect: bool = False
    should_ignore_jid: Callable[[str], bool] | None = None
    cached_group_metadata: Callable[[str], Awaitable[GroupMetadata | None]] | None = (
        None
    )
    get_message: Callable[[MessageKey], Awaitable[dict[str, Any] | None]] | None = None
    # get/set/add/delete/flush_all, shared across sessions
    retry_counter_cache: RetryCounterCache | None = None


class SessionFactory(Protocol):
    async def __call__(self, auth: AuthState, options: SessionOptions) -> Session: ...


MessageHandler = Callable[[Session, InboundMessage], Awaitable[None]]

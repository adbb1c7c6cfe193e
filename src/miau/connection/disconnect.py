from __future__ import annotations

from enum import IntEnum, StrEnum

from ..logging import get_logger
from .events import CloseReason

logger = get_logger(__name__)


class DisconnectReason(IntEnum):
    CONNECTION_LOST = 408
    CONNECTION_CLOSED = 428
    LOGGED_OUT = 401
    FORBIDDEN = 403
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515

    # the backend reports both lost and timed out as 408
    TIMED_OUT = 408


class DisconnectKind(StrEnum):
    PERMANENT = "permanent"
    TEMPORARY = "temporary"
    RESTART_REQUIRED = "restart_required"
    REPLACED = "replaced"
    UNKNOWN = "unknown"

    @property
    def should_reconnect(self) -> bool:
        return self not in (DisconnectKind.PERMANENT, DisconnectKind.REPLACED)


PERMANENT_CODES = frozenset(
    {
        DisconnectReason.LOGGED_OUT,
        DisconnectReason.BAD_SESSION,
        DisconnectReason.FORBIDDEN,
        DisconnectReason.MULTIDEVICE_MISMATCH,
    }
)

TEMPORARY_CODES = frozenset(
    {
        DisconnectReason.CONNECTION_CLOSED,
        DisconnectReason.CONNECTION_LOST,
        DisconnectReason.UNAVAILABLE_SERVICE,
    }
)


def status_code_of(reason: CloseReason | None) -> int | None:
    if reason is None:
        return None
    return reason.status_code


def classify_disconnect(status_code: int | None) -> DisconnectKind:
    if status_code == DisconnectReason.CONNECTION_REPLACED:
        logger.info("connection.replaced", status_code=status_code)
        return DisconnectKind.REPLACED
    if status_code == DisconnectReason.RESTART_REQUIRED:
        logger.info("connection.restart_required", status_code=status_code)
        return DisconnectKind.RESTART_REQUIRED
    if status_code in PERMANENT_CODES:
        return DisconnectKind.PERMANENT
    if status_code in TEMPORARY_CODES:
        return DisconnectKind.TEMPORARY
    logger.warning("connection.disconnect.unknown", status_code=status_code)
    return DisconnectKind.UNKNOWN


def should_reconnect(reason: CloseReason | None) -> bool:
    return classify_disconnect(status_code_of(reason)).should_reconnect

from __future__ import annotations

import re
from collections.abc import Iterable

from .logging import get_logger

logger = get_logger(__name__)

STATUS_BROADCAST = "status@broadcast"
VALID_SUFFIXES = ("@s.whatsapp.net", "@g.us")


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@g.us")


def jid_user(jid: str) -> str:
    # "5511999998888:12@s.whatsapp.net" -> "5511999998888"
    return jid.split("@", 1)[0].split(":", 1)[0]


class JidFilter:
    def __init__(
        self,
        *,
        ignore: Iterable[str] = (),
        patterns: Iterable[str] = (),
    ) -> None:
        self._ignored = set(ignore)
        self._patterns: list[re.Pattern[str]] = []
        for pattern in patterns:
            self.add_pattern(pattern)

    def add(self, jid: str) -> None:
        self._ignored.add(jid)

    def remove(self, jid: str) -> None:
        self._ignored.discard(jid)

    def add_pattern(self, pattern: str) -> bool:
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            logger.error("jids.pattern.invalid", pattern=pattern, error=str(exc))
            return False
        self._patterns.append(compiled)
        return True

    def should_ignore(self, jid: str | None, own_id: str | None = None) -> bool:
        if not jid:
            return True
        if jid == STATUS_BROADCAST:
            return True
        if "@newsletter" in jid or "announcement" in jid:
            return True
        if own_id and jid_user(jid) == jid_user(own_id):
            return True
        if jid in self._ignored:
            return True
        if any(pattern.search(jid) for pattern in self._patterns):
            return True
        if "temp" in jid or "invalid" in jid:
            return True
        return not jid.endswith(VALID_SUFFIXES)

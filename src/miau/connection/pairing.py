from __future__ import annotations

import io
from typing import Protocol

import qrcode
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from ..logging import get_logger
from .session import Session

logger = get_logger(__name__)


class PairingFlow(Protocol):
    async def begin(self, session: Session) -> None: ...

    async def show(self, session: Session, code: str) -> None: ...


def render_qr(code: str) -> str:
    """Render ``code`` as a QR code made of half-block characters."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.make(fit=True)
    out = io.StringIO()
    # dark modules on a light terminal background read as inverted
    qr.print_ascii(out=out, invert=True)
    return out.getvalue().rstrip("\n")


class TerminalPairing:
    """Prints pairing QR codes to the terminal until the phone links the account."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    async def begin(self, session: Session) -> None:
        _ = session
        logger.info("pairing.required")

    async def show(self, session: Session, code: str) -> None:
        _ = session
        try:
            self._console.print(
                Panel.fit(
                    Text(render_qr(code), no_wrap=True),
                    title="link this device",
                    subtitle="scan with the phone app",
                    border_style="green",
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "pairing.render_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return
        logger.info("pairing.code_shown")

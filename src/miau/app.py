from __future__ import annotations

import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import anyio
from anyio.abc import TaskGroup

from .connection.auth import FileAuthStore
from .connection.manager import ConnectionFatalError, ConnectionManager
from .connection.pairing import PairingFlow, TerminalPairing
from .connection.session import MessageHandler, SessionFactory
from .jids import JidFilter
from .lockfile import LockError, acquire_lock
from .logging import get_logger
from .settings import ConnectionSettings

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BotConfig:
    name: str
    factory: SessionFactory
    auth_dir: Path
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    handlers: tuple[MessageHandler, ...] = ()
    jid_filter: JidFilter = field(default_factory=JidFilter)
    pairing: PairingFlow = field(default_factory=TerminalPairing)


def build_manager(
    cfg: BotConfig,
    *,
    task_group: TaskGroup,
    on_fatal: Callable[[ConnectionFatalError], None] | None = None,
) -> ConnectionManager:
    conn = cfg.connection
    manager = ConnectionManager(
        factory=cfg.factory,
        auth_store=FileAuthStore(cfg.auth_dir),
        task_group=task_group,
        pairing=cfg.pairing,
        max_reconnect_attempts=conn.max_reconnect_attempts,
        reconnect_delay_s=conn.reconnect_delay_s,
        open_timeout_s=conn.open_timeout_s,
        mark_online_on_connect=conn.mark_online_on_connect,
        jid_filter=cfg.jid_filter,
        on_fatal=on_fatal,
    )
    for handler in cfg.handlers:
        manager.on_message(handler)
    return manager


async def _wait_for_shutdown_signal() -> None:
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.info("bot.shutdown", signal=signal.Signals(signum).name)
            return


async def run_bot(cfg: BotConfig) -> int:
    try:
        lock = acquire_lock(auth_dir=cfg.auth_dir)
    except LockError as exc:
        logger.error("bot.lock_failed", error=str(exc))
        return 1

    exit_code = 0
    with lock:
        async with anyio.create_task_group() as tg:

            def on_fatal(exc: ConnectionFatalError) -> None:
                nonlocal exit_code
                logger.error("bot.fatal", error=str(exc))
                exit_code = 1
                tg.cancel_scope.cancel()

            manager = build_manager(cfg, task_group=tg, on_fatal=on_fatal)
            logger.info(
                "bot.starting",
                name=cfg.name,
                handlers=len(cfg.handlers),
                auth_dir=str(cfg.auth_dir),
            )
            try:
                await manager.connect()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "bot.start_failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                exit_code = 1
            else:
                logger.info("bot.started")
                await _wait_for_shutdown_signal()
            await manager.aclose()
            tg.cancel_scope.cancel()
    return exit_code

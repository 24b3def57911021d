"""
Config reloader - polls the config file in dev mode and swaps in a new
snapshot when it changes.
"""
from __future__ import annotations

import asyncio
import os
from typing import Callable, Optional, Tuple

from htmz_proxy.errors import ConfigError
from htmz_proxy.logging import get_logger
from htmz_proxy.state import ProxySnapshot, load_snapshot

logger = get_logger(__name__)

# Listener fields that only take effect on restart
RESTART_FIELDS = ("host", "port", "socket")


class ConfigWatcher:
    """Watches one config file by polling its mtime and size."""

    def __init__(
        self,
        path: str,
        on_reload: Callable[[ProxySnapshot], None],
        current: Callable[[], Optional[ProxySnapshot]],
        interval: float = 1.0,
    ):
        self.path = path
        self.interval = interval
        self._on_reload = on_reload
        self._current = current
        self._fingerprint = self._stat()
        self._task: Optional[asyncio.Task] = None

    def _stat(self) -> Optional[Tuple[int, int]]:
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        return st.st_mtime_ns, st.st_size

    def reload(self) -> bool:
        """
        Load the file and swap in the new snapshot.

        A file that fails to load leaves the current snapshot in service.

        Returns:
            True if a new snapshot was installed
        """
        try:
            snapshot = load_snapshot(self.path)
        except ConfigError as e:
            logger.error(f"Config reload failed, keeping previous config: {e}")
            return False

        previous = self._current()
        if previous is not None:
            changed = [
                name for name in RESTART_FIELDS
                if getattr(previous.config.proxy, name) != getattr(snapshot.config.proxy, name)
            ]
            if changed:
                logger.warning(f"Listener settings changed ({', '.join(changed)}); restart to apply")

        self._on_reload(snapshot)
        logger.info(f"Config reloaded: {len(snapshot.allow_list)} allowed origins")
        return True

    def check(self) -> bool:
        """Reload if the file changed since the last check."""
        fingerprint = self._stat()
        if fingerprint == self._fingerprint:
            return False
        self._fingerprint = fingerprint
        if fingerprint is None:
            logger.warning(f"Config file {self.path} disappeared, keeping previous config")
            return False
        logger.info(f"Config file {self.path} changed, reloading...")
        return self.reload()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()

    def start(self) -> asyncio.Task:
        logger.info(f"Development mode - watching {self.path} for changes")
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

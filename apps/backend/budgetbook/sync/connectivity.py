"""
Connectivity monitor: tracks whether the remote backend is reachable.

Runs as a background asyncio task that periodically probes the backend's
health endpoint; listeners are notified on offline → online and
online → offline transitions. Hosts that already know the network state
(OS hooks, tests) can call :meth:`ConnectivityMonitor.set_online`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(
        self,
        probe_url: str | None = None,
        *,
        interval: float = 15.0,
        timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        online: bool = True,
    ) -> None:
        self._probe_url = probe_url
        self._interval = interval
        self._timeout = timeout
        self._headers = headers or {}
        self._online = online
        self._callbacks: list[ConnectivityCallback] = []
        self._task: asyncio.Task | None = None

    @property
    def online(self) -> bool:
        return self._online

    def on_change(self, callback: ConnectivityCallback) -> None:
        self._callbacks.append(callback)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity %s", "restored" if online else "lost")
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity callback failed")

    async def probe(self) -> bool:
        if not self._probe_url:
            return self._online
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self._probe_url, headers=self._headers)
            # 4xx 도 서버에 도달했다는 의미
            return resp.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            return False

    def start(self) -> None:
        if self._task is None and self._probe_url:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            self.set_online(await self.probe())
            await asyncio.sleep(self._interval)

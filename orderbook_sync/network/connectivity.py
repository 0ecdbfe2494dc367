"""
connectivity.py - Connectivity Monitor

This module tracks network reachability and notifies listeners when the
device goes online or offline. Reconnect callbacks fire once per
offline -> online transition, never once per signal.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional
from datetime import datetime, timezone

import aiohttp

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Connectivity")


class TransportKind(Enum):
    """Network transport reported by the platform."""
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    NONE = "none"
    UNKNOWN = "unknown"


class ConnectivityStatus:
    """Snapshot of the last known connectivity state."""

    __slots__ = ("connected", "reachable", "transport", "changed_at")

    def __init__(self, connected: bool = False, reachable: Optional[bool] = None,
                 transport: TransportKind = TransportKind.UNKNOWN,
                 changed_at: Optional[datetime] = None):
        self.connected = connected
        self.reachable = reachable
        self.transport = transport
        self.changed_at = changed_at

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "reachable": self.reachable,
            "transport": self.transport.value,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


class ConnectivityMonitor:
    """
    Keeps the last known connectivity status.

    Platform signals arrive through handle_signal(). Every signal is passed
    to status subscribers; reconnect callbacks only run on the edge from
    not-connected to connected.
    """

    def __init__(self):
        self._status = ConnectivityStatus()
        self._subscribers: List[Callable] = []
        self._reconnect_callbacks: List[Callable] = []
        self.signal_count = 0

        logger.info("ConnectivityMonitor initialized")

    # ==================== Status ====================

    def get_status(self) -> ConnectivityStatus:
        """Get the last known status."""
        return self._status

    def is_online(self) -> bool:
        return self._status.connected

    def handle_signal(self, connected: bool, reachable: Optional[bool] = None,
                      transport: TransportKind = TransportKind.UNKNOWN):
        """
        Recompute status from a platform signal.

        Args:
            connected: Whether the platform reports an active link
            reachable: Whether the internet is reachable; None when unknown
            transport: Transport kind of the link
        """
        self.signal_count += 1
        was_online = self._status.connected
        is_online = bool(connected) and reachable is not False

        if not is_online and transport == TransportKind.UNKNOWN and not connected:
            transport = TransportKind.NONE

        changed_at = self._status.changed_at
        if is_online != was_online or changed_at is None:
            changed_at = datetime.now(timezone.utc)

        self._status = ConnectivityStatus(is_online, reachable, transport, changed_at)

        for callback in list(self._subscribers):
            try:
                callback(self._status)
            except Exception as e:
                logger.error(f"Status subscriber error: {e}")

        if is_online == was_online:
            return

        logger.info(f"Network state: {'ONLINE' if is_online else 'OFFLINE'} ({transport.value})")

        if is_online:
            for callback in list(self._reconnect_callbacks):
                try:
                    callback()
                except Exception as e:
                    logger.error(f"Reconnect callback error: {e}")

    # ==================== Callbacks ====================

    def subscribe(self, callback: Callable) -> Callable:
        """
        Register a callback for every status update.

        Callback signature: (status: ConnectivityStatus)

        Returns:
            A function that removes the callback
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_reconnect(self, callback: Callable) -> Callable:
        """
        Register a callback for when connection is restored.

        Callback signature: ()

        Returns:
            A function that removes the callback
        """
        self._reconnect_callbacks.append(callback)

        def unsubscribe():
            if callback in self._reconnect_callbacks:
                self._reconnect_callbacks.remove(callback)

        return unsubscribe


class ReachabilityProbe:
    """
    Periodically checks a URL and feeds the result to a ConnectivityMonitor.

    A Python process has no platform network callbacks, so a lightweight
    HTTP check stands in for them.
    """

    def __init__(self, monitor: ConnectivityMonitor, url: str,
                 interval: float = 15.0, timeout: float = 5.0):
        self.monitor = monitor
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self._task: Optional[asyncio.Task] = None

    async def _check(self) -> bool:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.url,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Probe failed: {e}")
            return False

    async def check_once(self) -> bool:
        """Probe once and report the result to the monitor."""
        reachable = await self._check()
        # The link itself is assumed up; only reachability is measured here
        self.monitor.handle_signal(True, reachable, TransportKind.UNKNOWN)
        return reachable

    async def _run(self):
        while True:
            await self.check_once()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self._run())
            logger.info(f"Reachability probe started: {self.url} every {self.interval}s")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

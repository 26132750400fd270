# MIT License
#
# Copyright (c) 2025 WatchLink Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
WakeHold - keep the host awake for a bounded duration

The reconnect scheduler holds one of these for the lifetime of a reconnect
window. On Linux the hold is a systemd-logind sleep inhibitor lock taken
over D-Bus; the lock lives as long as the file descriptor logind hands back.
"""

import asyncio
import os
import threading
from abc import ABC, abstractmethod

import RNS

try:
    from dbus_fast import BusType
    from dbus_fast.aio import MessageBus
    HAS_DBUS = True
except ImportError:
    HAS_DBUS = False


class WakeHold(ABC):
    """
    Bounded wake hold.

    ``acquire`` is idempotent while held and ``release`` is safe to call at
    any time. A hold is dropped automatically once its duration elapses.
    """

    @abstractmethod
    def acquire(self, duration):
        """Hold the host awake for at most ``duration`` seconds."""

    @abstractmethod
    def release(self):
        """Drop the hold if held."""

    @property
    @abstractmethod
    def held(self):
        """True while the hold is active."""


class NullWakeHold(WakeHold):
    """Tracks hold state without touching the host (tests, unsupported platforms)."""

    def __init__(self):
        self._held = False
        self.acquire_count = 0

    def acquire(self, duration):
        if not self._held:
            self._held = True
            self.acquire_count += 1

    def release(self):
        self._held = False

    @property
    def held(self):
        return self._held


class LogindWakeHold(WakeHold):
    """
    Sleep inhibitor lock from systemd-logind.

    Requires dbus-fast and a system bus; any failure to take the lock is
    logged and leaves the hold released, the link keeps working without it.
    The D-Bus round trip runs outside the internal lock, so ``release`` never
    waits on logind.
    """

    LOGIND_SERVICE = "org.freedesktop.login1"
    LOGIND_PATH = "/org/freedesktop/login1"
    LOGIND_MANAGER = "org.freedesktop.login1.Manager"
    DBUS_TIMEOUT = 5.0

    def __init__(self, who="WatchLink", why="Reconnecting to watch", timeout=DBUS_TIMEOUT):
        self.who = who
        self.why = why
        self.timeout = timeout
        self._fd = None
        self._timer = None
        self._acquiring = False
        self._released_while_acquiring = False
        self._lock = threading.Lock()

    @property
    def held(self):
        return self._fd is not None

    def acquire(self, duration):
        with self._lock:
            if self._fd is not None or self._acquiring:
                return
            if not HAS_DBUS:
                RNS.log(f"{self} dbus-fast not available, not holding wake lock", RNS.LOG_WARNING)
                return
            self._acquiring = True
            self._released_while_acquiring = False

        fd = None
        try:
            fd = asyncio.run(asyncio.wait_for(self._inhibit(), self.timeout))
        except Exception as e:
            RNS.log(f"{self} could not take sleep inhibitor: {type(e).__name__}: {e}", RNS.LOG_WARNING)

        with self._lock:
            self._acquiring = False
            if fd is None:
                return
            if self._released_while_acquiring:
                self._close_fd(fd)
                RNS.log(f"{self} hold released before logind answered", RNS.LOG_DEBUG)
                return

            self._fd = fd
            self._timer = threading.Timer(duration, self.release)
            self._timer.daemon = True
            self._timer.start()
        RNS.log(f"{self} sleep inhibited for up to {duration:.0f}s", RNS.LOG_DEBUG)

    def release(self):
        with self._lock:
            if self._acquiring:
                self._released_while_acquiring = True

            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            if self._fd is None:
                return

            self._close_fd(self._fd)
            self._fd = None
        RNS.log(f"{self} sleep inhibitor released", RNS.LOG_DEBUG)

    def _close_fd(self, fd):
        try:
            os.close(fd)
        except OSError as e:
            RNS.log(f"{self} error closing inhibitor fd: {e}", RNS.LOG_DEBUG)

    async def _inhibit(self):
        bus = await MessageBus(bus_type=BusType.SYSTEM, negotiate_unix_fd=True).connect()
        try:
            introspection = await bus.introspect(self.LOGIND_SERVICE, self.LOGIND_PATH)
            manager_obj = bus.get_proxy_object(self.LOGIND_SERVICE, self.LOGIND_PATH, introspection)
            manager = manager_obj.get_interface(self.LOGIND_MANAGER)

            # The returned fd keeps the lock; closing it releases
            return await manager.call_inhibit("sleep", self.who, self.why, "block")
        finally:
            bus.disconnect()

    def __str__(self):
        return "LogindWakeHold"


def create_wake_hold(enabled=True, why="Reconnecting to watch"):
    """Logind hold where D-Bus is available, otherwise a no-op hold."""
    if enabled and HAS_DBUS:
        return LogindWakeHold(why=why)
    return NullWakeHold()

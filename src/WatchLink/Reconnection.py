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
Reconnection - time-boxed reconnect attempts while the link is down

When the link drops (or fails) and there is a reason to come back (auto
reconnect is allowed, or frames are waiting), the scheduler opens one
reconnect window: an attempt every interval until the deadline, the link
comes back, or the watch asks to be left alone with nothing left to send.

A wake hold keeps the host awake for the lifetime of the window.
"""

import threading
import time

import RNS

from WatchLink.config import get_config_obj
from WatchLink.LinkEngine import LinkState
from WatchLink.observable import LinkObservable
from WatchLink.WakeHold import NullWakeHold

STATUS_CONNECTED = "Connected"
STATUS_IDLE = "Idle (remote off)"
STATUS_RECONNECTING = "Reconnecting… {elapsed}s"


class ReconnectWindow:
    """One active reconnection cycle."""

    def __init__(self, duration, interval, now=None):
        self.started_at = time.monotonic() if now is None else now
        self.deadline = self.started_at + duration
        self.interval = interval
        self.cancelled = threading.Event()

    def elapsed(self, now=None):
        if now is None:
            now = time.monotonic()
        return now - self.started_at

    def expired(self, now=None):
        if now is None:
            now = time.monotonic()
        return now >= self.deadline


class ReconnectScheduler:
    """
    Drives ``engine.reconnect()`` on a fixed interval inside a bounded window.

    The scheduler observes ``engine.state``:

    - Connected: the active window is cancelled
    - Disconnected/Error: a window opens if auto reconnect is allowed or
      frames are pending, otherwise any active window is cancelled

    ``status`` publishes a short human readable description of what the
    scheduler is doing.
    """

    RECONNECT_WINDOW = 5 * 60  # seconds
    RECONNECT_INTERVAL = 15  # seconds
    WAKE_HOLD_MARGIN = 10  # seconds beyond the window

    def __init__(self, engine, wake_hold=None, configuration=None):
        c = get_config_obj(configuration)

        self.engine = engine
        self.wake_hold = wake_hold if wake_hold is not None else NullWakeHold()
        self.window_duration = float(c.get("reconnect_window", ReconnectScheduler.RECONNECT_WINDOW))
        self.interval = float(c.get("reconnect_interval", ReconnectScheduler.RECONNECT_INTERVAL))
        self.wake_hold_margin = float(c.get("wake_hold_margin", ReconnectScheduler.WAKE_HOLD_MARGIN))

        self.status = LinkObservable("status", "Maintaining link")
        self.window = None
        self.window_thread = None
        self.windows_opened = 0
        self._lock = threading.Lock()

        self.engine.state.subscribe(self._on_state_changed)

    @property
    def is_active(self):
        return self.window is not None

    def start(self):
        """Open an initial window, as a freshly started service does."""
        RNS.log(f"{self} started", RNS.LOG_DEBUG)
        self.schedule_window()

    def stop(self):
        self.engine.state.unsubscribe(self._on_state_changed)
        self.cancel()
        RNS.log(f"{self} stopped", RNS.LOG_DEBUG)

    def schedule_window(self):
        """
        Open a reconnect window unless one is already running.

        Returns:
            bool: True if a new window was opened
        """
        with self._lock:
            if self.window is not None:
                return False

            window = ReconnectWindow(self.window_duration, self.interval)
            self.window = window
            self.windows_opened += 1
            self.window_thread = threading.Thread(
                target=self._run_window,
                args=(window,),
                daemon=True,
                name="WatchLink-Reconnect",
            )
            self.window_thread.start()

        RNS.log(f"{self} reconnect window opened ({self.window_duration:.0f}s, every {self.interval:.0f}s)", RNS.LOG_INFO)
        return True

    def cancel(self):
        """Cancel the active window, if any. Never blocks on the window thread."""
        with self._lock:
            window = self.window
            self.window = None
            if window is None:
                return False
            window.cancelled.set()
            self.wake_hold.release()

        RNS.log(f"{self} reconnect window cancelled", RNS.LOG_DEBUG)
        return True

    def _on_state_changed(self, state):
        if state is LinkState.CONNECTED:
            self.cancel()
            self.status.publish(STATUS_CONNECTED)

        elif state in (LinkState.DISCONNECTED, LinkState.ERROR):
            if self.engine.should_auto_reconnect() or self.engine.has_pending_to_send():
                self.schedule_window()
            else:
                # The watch asked to be left alone and nothing is waiting
                self.cancel()
                self.status.publish(STATUS_IDLE)

    def _run_window(self, window):
        with self._lock:
            if self.window is not window:
                return

        # Acquire may block on D-Bus: never under self._lock
        self.wake_hold.acquire(self.window_duration + self.wake_hold_margin)
        with self._lock:
            if self.window is not window:
                if self.window is None:
                    self.wake_hold.release()
                return

        try:
            while not window.cancelled.is_set() and not window.expired():
                if not self.engine.should_auto_reconnect() and not self.engine.has_pending_to_send():
                    RNS.log(f"{self} auto reconnect suppressed and nothing pending, stopping", RNS.LOG_INFO)
                    self.status.publish(STATUS_IDLE)
                    break

                try:
                    self.engine.reconnect()
                except Exception as e:
                    RNS.log(f"{self} reconnect attempt failed: {type(e).__name__}: {e}", RNS.LOG_ERROR)

                # The attempt itself may have connected and cancelled us
                if window.cancelled.is_set():
                    break

                self.status.publish(STATUS_RECONNECTING.format(elapsed=int(window.elapsed())))
                window.cancelled.wait(window.interval)

            if window.expired() and not window.cancelled.is_set():
                RNS.log(f"{self} reconnect window elapsed", RNS.LOG_DEBUG)

        finally:
            with self._lock:
                if self.window is window:
                    self.window = None
                    self.wake_hold.release()

    def __str__(self):
        return f"ReconnectScheduler[{self.engine.name}]"

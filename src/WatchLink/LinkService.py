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
LinkService - owns one watch link for the lifetime of the process

Wires transport adapter, peer store, engine, wake hold and reconnect
scheduler together from one configuration, and tears them down in reverse.
"""

import threading

import RNS

from WatchLink.config import get_config_obj, parse_bool
from WatchLink.LinkEngine import LinkEngine, LinkState
from WatchLink.PeerStore import PeerStore
from WatchLink.Reconnection import ReconnectScheduler
from WatchLink.WakeHold import create_wake_hold


class LinkService:
    """
    Usage:
        service = LinkService(load_configuration("~/.watchlink/config"))
        service.start()
        service.engine.send_notification("com.chat", "Alice", "Hi")
        ...
        service.stop()

    Any collaborator can be injected, which is how tests run without a
    Bluetooth stack.
    """

    SHUTDOWN_TIMEOUT = 5.0

    def __init__(self, configuration=None, adapter=None, store=None, wake_hold=None, send_hold=None):
        c = get_config_obj(configuration)
        self.configuration = c

        if adapter is None:
            from WatchLink.linux_bleak_adapter import LinuxBleakAdapter
            adapter = LinuxBleakAdapter(c)

        self.adapter = adapter
        self.store = store if store is not None else PeerStore(c.get("storage_path", None))
        hold_enabled = parse_bool(c.get("wake_hold", True), default=True)
        # Sends and reconnect windows hold independently
        self.wake_hold = wake_hold if wake_hold is not None else create_wake_hold(hold_enabled)
        self.send_hold = send_hold if send_hold is not None else create_wake_hold(hold_enabled, why="Sending to watch")
        self.engine = LinkEngine(self.adapter, store=self.store, configuration=c, wake_hold=self.send_hold)
        self.scheduler = ReconnectScheduler(self.engine, wake_hold=self.wake_hold, configuration=c)
        self.auto_start = parse_bool(c.get("auto_start", True), default=True)
        self.shutdown_timeout = float(c.get("shutdown_timeout", LinkService.SHUTDOWN_TIMEOUT))
        self.running = False

    def start(self):
        """Start the transport and, with ``auto_start``, reconnect to the last watch."""
        if self.running:
            RNS.log(f"{self} already running", RNS.LOG_WARNING)
            return

        start = getattr(self.adapter, "start", None)
        if start is not None:
            start()

        self.running = True
        RNS.log(f"{self} started", RNS.LOG_INFO)

        if self.auto_start:
            self.scheduler.start()

    def stop(self):
        if not self.running:
            return

        self.scheduler.stop()
        self._disconnect_engine()

        stop = getattr(self.adapter, "stop", None)
        if stop is not None:
            stop()

        self.wake_hold.release()
        self.send_hold.release()
        self.running = False
        RNS.log(f"{self} stopped", RNS.LOG_INFO)

    def _disconnect_engine(self):
        """Disconnect and wait for the transport to confirm before it is stopped."""
        if self.engine.state.value is LinkState.DISCONNECTED:
            return

        done = threading.Event()

        def on_state(state):
            if state is LinkState.DISCONNECTED:
                done.set()

        self.engine.state.subscribe(on_state)
        try:
            self.engine.disconnect()
            if not done.wait(self.shutdown_timeout):
                RNS.log(f"{self} transport did not confirm disconnect within {self.shutdown_timeout:.0f}s", RNS.LOG_WARNING)
        finally:
            self.engine.state.unsubscribe(on_state)

    def __str__(self):
        return f"LinkService[{self.engine.name}]"

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
Linux transport for the watch link, built on bleak (BlueZ backend).

THREADING MODEL:
- bleak runs on a dedicated asyncio event loop in a daemon thread
- Engine -> loop: asyncio.run_coroutine_threadsafe()
- Loop -> engine: events are posted to a queue.Queue and delivered by a
  dispatcher thread, so the loop never blocks on the engine's lock

Every event carries the session generation it was produced for. ``close()``
bumps the generation, which silently drops anything still in flight for the
old session.
"""

import asyncio
import queue
import re
import threading
import time

import RNS
from bleak import BleakClient
from bleak.exc import BleakDBusError, BleakError

from WatchLink.config import get_config_obj
from WatchLink.transport_adapter import (
    CCC_DESCRIPTOR_UUID,
    EventKind,
    GattCharacteristic,
    TransportAdapter,
    TransportEvent,
)

try:
    from dbus_fast import BusType
    from dbus_fast.aio import MessageBus
    HAS_DBUS = True
except ImportError:
    HAS_DBUS = False

ADDRESS_PATTERN = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")

# BlueZ errors that mean the host refused us rather than the peer
PERMISSION_ERRORS = (
    "org.bluez.Error.NotAuthorized",
    "org.bluez.Error.NotPermitted",
    "org.freedesktop.DBus.Error.AccessDenied",
)


def build_service_map(services):
    """
    Convert a bleak service collection into ``{service: {char: GattCharacteristic}}``.

    BlueZ manages the CCC descriptor itself and does not export it, so a
    characteristic that can notify or indicate is reported with one.
    """
    result = {}
    for service in services:
        characteristics = {}
        for char in service.characteristics:
            properties = frozenset(p.lower() for p in char.properties)
            descriptors = {d.uuid.lower() for d in char.descriptors}
            if "notify" in properties or "indicate" in properties:
                descriptors.add(CCC_DESCRIPTOR_UUID)
            characteristics[char.uuid.lower()] = GattCharacteristic(
                uuid=char.uuid.lower(),
                properties=properties,
                descriptors=frozenset(descriptors),
            )
        result[service.uuid.lower()] = characteristics
    return result


class LinuxBleakAdapter(TransportAdapter):
    """
    Single-peer GATT client on BlueZ.

    Configuration keys: ``adapter`` (default ``hci0``),
    ``connection_timeout``, ``write_timeout``.
    """

    CONNECTION_TIMEOUT = 10.0
    WRITE_TIMEOUT = 5.0
    DBUS_TIMEOUT = 5.0

    def __init__(self, configuration=None):
        super().__init__()
        c = get_config_obj(configuration)

        self.adapter = c.get("adapter", "hci0")
        self.adapter_path = f"/org/bluez/{self.adapter}"
        self.connection_timeout = float(c.get("connection_timeout", LinuxBleakAdapter.CONNECTION_TIMEOUT))
        self.write_timeout = float(c.get("write_timeout", LinuxBleakAdapter.WRITE_TIMEOUT))

        self.loop = None
        self.loop_thread = None
        self.dispatch_thread = None
        self.client = None
        self.address = None

        self._generation = 0
        self._events = queue.Queue()
        self._write_lock = None
        self._lock = threading.Lock()
        self._running = False

    # --- Lifecycle ---

    def start(self):
        """Start the event loop and dispatcher threads."""
        with self._lock:
            if self._running:
                return
            self._running = True

        self.loop_thread = threading.Thread(target=self._run_event_loop, daemon=True, name="WatchLink-EventLoop")
        self.loop_thread.start()

        timeout = 5.0
        start_time = time.time()
        while self.loop is None and (time.time() - start_time) < timeout:
            time.sleep(0.01)

        if self.loop is None:
            self._running = False
            raise RuntimeError("Failed to start event loop within timeout")

        self.dispatch_thread = threading.Thread(target=self._dispatch_events, daemon=True, name="WatchLink-Dispatch")
        self.dispatch_thread.start()
        RNS.log(f"{self} started on {self.adapter_path}", RNS.LOG_DEBUG)

    def stop(self):
        if not self._running:
            return

        self.close()
        self._running = False
        self._events.put(None)
        if self.loop is not None:
            self.loop.call_soon_threadsafe(self.loop.stop)

        for thread in (self.dispatch_thread, self.loop_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=2.0)

        self.loop = None
        RNS.log(f"{self} stopped", RNS.LOG_DEBUG)

    def _ensure_running(self):
        if not self._running:
            self.start()

    def _run_event_loop(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._write_lock = asyncio.Lock()
        self.loop = loop
        loop.run_forever()
        loop.close()

    def _dispatch_events(self):
        while True:
            item = self._events.get()
            if item is None:
                break

            generation, event = item
            if generation != self._generation:
                RNS.log(f"{self} dropping stale {event.kind.value} event", RNS.LOG_EXTREME)
                continue

            try:
                self._emit(event)
            except Exception as e:
                RNS.log(f"{self} error handling {event.kind.value} event: {type(e).__name__}: {e}", RNS.LOG_ERROR)

    def _post(self, generation, kind, **fields):
        self._events.put((generation, TransportEvent(kind=kind, address=fields.pop("address", self.address), **fields)))

    # --- TransportAdapter ---

    def is_available(self):
        if not HAS_DBUS:
            # Nothing to ask; bleak reports a missing adapter on connect
            return True

        self._ensure_running()
        future = asyncio.run_coroutine_threadsafe(self._adapter_powered(), self.loop)
        try:
            return bool(future.result(timeout=LinuxBleakAdapter.DBUS_TIMEOUT))
        except Exception as e:
            RNS.log(f"{self} could not read adapter state: {type(e).__name__}: {e}", RNS.LOG_WARNING)
            return False

    def connect(self, address):
        if not ADDRESS_PATTERN.match(address or ""):
            raise ValueError(f"not a Bluetooth device address: {address!r}")

        self._ensure_running()
        with self._lock:
            self._generation += 1
            generation = self._generation
            self.address = address

        RNS.log(f"{self} connecting to {address} (timeout {self.connection_timeout:.0f}s)", RNS.LOG_DEBUG)
        asyncio.run_coroutine_threadsafe(self._connect(address, generation), self.loop)

    def discover_services(self):
        generation = self._generation
        self._ensure_running()
        asyncio.run_coroutine_threadsafe(self._discover_services(generation), self.loop)

    def enable_notifications(self, char_uuid):
        generation = self._generation
        self._ensure_running()
        asyncio.run_coroutine_threadsafe(self._enable_notifications(generation, char_uuid), self.loop)

    def request_mtu(self, mtu):
        generation = self._generation
        self._ensure_running()
        asyncio.run_coroutine_threadsafe(self._request_mtu(generation, mtu), self.loop)

    def write(self, char_uuid, data, with_response):
        client = self.client
        if client is None or self.loop is None:
            return False

        generation = self._generation
        future = asyncio.run_coroutine_threadsafe(
            self._write(generation, client, char_uuid, bytes(data), with_response),
            self.loop,
        )
        try:
            future.result(timeout=self.write_timeout)
            return True
        except Exception as e:
            future.cancel()
            RNS.log(f"{self} write of {len(data)} bytes failed: {type(e).__name__}: {e}", RNS.LOG_ERROR)
            return False

    def disconnect(self):
        generation = self._generation
        address = self.address
        client = self.client

        if client is None or self.loop is None:
            self._post(generation, EventKind.DISCONNECTED, address=address)
            return

        asyncio.run_coroutine_threadsafe(self._disconnect(generation, client, address), self.loop)

    def close(self):
        with self._lock:
            self._generation += 1
            client = self.client
            self.client = None
            self.address = None

        if client is not None and self.loop is not None:
            asyncio.run_coroutine_threadsafe(self._release(client), self.loop)

    # --- Coroutines (event loop thread) ---

    async def _connect(self, address, generation):
        def disconnected_callback(_client):
            RNS.log(f"{self} link to {address} dropped", RNS.LOG_DEBUG)
            self._post(generation, EventKind.DISCONNECTED, address=address)

        client = BleakClient(address, disconnected_callback=disconnected_callback, timeout=self.connection_timeout)

        try:
            await client.connect()
        except PermissionError as e:
            self._post(generation, EventKind.PERMISSION_DENIED, address=address, success=False, message=str(e))
            return
        except BleakDBusError as e:
            if e.dbus_error in PERMISSION_ERRORS:
                self._post(generation, EventKind.PERMISSION_DENIED, address=address, success=False, message=str(e))
            else:
                self._post(generation, EventKind.CONNECTION_FAILED, address=address, success=False, message=str(e))
            return
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            self._post(
                generation,
                EventKind.CONNECTION_FAILED,
                address=address,
                success=False,
                message=f"Connection failed: {type(e).__name__}: {e}",
            )
            return

        with self._lock:
            current = generation == self._generation
            if current:
                self.client = client

        if not current:
            # Session was closed while connecting
            await self._release(client)
            return

        self._post(generation, EventKind.CONNECTED, address=address, name=self._peer_name(client, address))

    async def _discover_services(self, generation):
        client = self.client
        if client is None:
            self._post(generation, EventKind.SERVICES_DISCOVERED, success=False, message="not connected")
            return

        try:
            services = build_service_map(client.services)
        except Exception as e:
            self._post(generation, EventKind.SERVICES_DISCOVERED, success=False, message=f"{type(e).__name__}: {e}")
            return

        RNS.log(f"{self} discovered {len(services)} service(s)", RNS.LOG_DEBUG)
        self._post(generation, EventKind.SERVICES_DISCOVERED, services=services)

    async def _enable_notifications(self, generation, char_uuid):
        client = self.client
        if client is None:
            self._post(generation, EventKind.NOTIFICATIONS_ENABLED, success=False, message="not connected")
            return

        def notification_handler(_sender, data):
            self._post(generation, EventKind.DATA_RECEIVED, data=bytes(data))

        try:
            await client.start_notify(char_uuid, notification_handler)
        except Exception as e:
            self._post(generation, EventKind.NOTIFICATIONS_ENABLED, success=False, message=f"{type(e).__name__}: {e}")
            return

        self._post(generation, EventKind.NOTIFICATIONS_ENABLED)

    async def _request_mtu(self, generation, mtu):
        client = self.client
        if client is None:
            self._post(generation, EventKind.MTU_CHANGED, success=False, message="not connected")
            return

        # BlueZ negotiates the MTU on its own; older versions only expose it
        # after acquiring a write/notify socket
        backend = getattr(client, "_backend", None)
        if backend is not None and hasattr(backend, "_acquire_mtu"):
            try:
                await backend._acquire_mtu()
            except Exception as e:
                RNS.log(f"{self} could not acquire MTU: {e}", RNS.LOG_DEBUG)

        try:
            negotiated = client.mtu_size
        except Exception as e:
            RNS.log(f"{self} MTU not reported: {e}", RNS.LOG_DEBUG)
            negotiated = None

        RNS.log(f"{self} requested MTU {mtu}, stack reports {negotiated}", RNS.LOG_DEBUG)
        self._post(generation, EventKind.MTU_CHANGED, mtu=negotiated)

    async def _write(self, generation, client, char_uuid, data, with_response):
        async with self._write_lock:
            await client.write_gatt_char(char_uuid, data, response=with_response)
        if with_response:
            self._post(generation, EventKind.WRITE_COMPLETE)

    async def _disconnect(self, generation, client, address):
        try:
            await client.disconnect()
        except Exception as e:
            RNS.log(f"{self} error disconnecting from {address}: {type(e).__name__}: {e}", RNS.LOG_WARNING)
        finally:
            self._post(generation, EventKind.DISCONNECTED, address=address)

    async def _release(self, client):
        try:
            if client.is_connected:
                await client.disconnect()
        except Exception as e:
            RNS.log(f"{self} error releasing client: {type(e).__name__}: {e}", RNS.LOG_DEBUG)

    async def _adapter_powered(self):
        bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        try:
            introspection = await bus.introspect("org.bluez", self.adapter_path)
            obj = bus.get_proxy_object("org.bluez", self.adapter_path, introspection)
            properties = obj.get_interface("org.freedesktop.DBus.Properties")
            powered = await properties.call_get("org.bluez.Adapter1", "Powered")
            return powered.value if hasattr(powered, "value") else powered
        finally:
            bus.disconnect()

    @staticmethod
    def _peer_name(client, address):
        try:
            name = client.name
        except Exception:
            return None
        if not name or name.replace("-", ":").upper() == address.upper():
            return None
        return name

    def __str__(self):
        return f"LinuxBleakAdapter[{self.adapter}]"

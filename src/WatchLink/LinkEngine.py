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
LinkEngine - connection state machine and framed messaging for one watch

The engine keeps a single logical link to one peripheral speaking JSON lines
over the Nordic UART Service:

- Connection lifecycle: connect, settle, discover services, resolve RX/TX,
  subscribe to notifications, negotiate MTU
- Outbound frames are chunked to the negotiated MTU, or queued (with expiry)
  while the link is down
- Inbound notifications are reassembled into lines, checked for control
  intents, and published to observers

THREADING MODEL:
- All transport events enter through handle_event() under the engine lock
  (single writer for state, identity and link parameters)
- Frame transmission is serialized by a separate transmit lock. The transmit
  path never takes the engine lock while holding the transmit lock
- Queued frames are flushed by a short-lived worker thread once Connected
"""

import threading
import time
from enum import Enum

import RNS

from WatchLink.config import get_config_obj
from WatchLink.errors import (
    CharacteristicNotFound,
    LinkError,
    NoSavedPeer,
    NotificationSubscribeFailed,
    PermissionDenied,
    ServiceNotFound,
    TransportUnavailable,
    WriteFailed,
)
from WatchLink.LinkFraming import (
    LineFragmenter,
    LineReassembler,
    build_ack_frame,
    build_datetime_frame,
    build_notification_frame,
    build_status_frame,
    encode_json,
)
from WatchLink.observable import LinkObservable
from WatchLink.OutboundQueue import OutboundQueue
from WatchLink.PeerStore import PeerIdentity, PeerStore
from WatchLink.RemoteControl import DeviceTelemetry, RemoteControlInterpreter
from WatchLink.transport_adapter import (
    CCC_DESCRIPTOR_UUID,
    PROPERTY_WRITE_NO_RESPONSE,
    EventKind,
)
from WatchLink.WakeHold import NullWakeHold


class LinkState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class WriteMode(Enum):
    ACK_REQUIRED = "ack_required"
    NO_ACK = "no_ack"


class NegotiatedLinkParams:
    """Per-connection transfer parameters; cleared when the session ends."""

    def __init__(self, max_payload, write_mode):
        self.max_payload = max_payload
        self.write_mode = write_mode

    def __repr__(self):
        return f"NegotiatedLinkParams(max_payload={self.max_payload}, write_mode={self.write_mode.value})"


class LinkEngine:
    """
    Owns the link to one watch.

    Usage:
        engine = LinkEngine(adapter, configuration={"name": "S3"})
        engine.state.subscribe(on_state)
        engine.lines.subscribe(on_line)
        engine.connect("AA:BB:CC:DD:EE:FF", "S3 Watch")
        engine.send_status()
    """

    # Nordic UART Service, as exposed by the watch firmware
    SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
    CHARACTERISTIC_RX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # watch -> host (notify)
    CHARACTERISTIC_TX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # host -> watch (write)

    SERVICE_DISCOVERY_DELAY = 0.6  # seconds between link-up and service discovery
    REQUESTED_MTU = 128
    DEFAULT_MTU = 23  # BLE 4.0 minimum, used until the stack reports otherwise
    FLUSH_PACING = 0.01  # seconds between queued frames
    SEND_WAKE_HOLD = 10.0  # upper bound on the wake hold taken per frame

    def __init__(self, adapter, store=None, configuration=None, wake_hold=None):
        """
        Args:
            adapter: TransportAdapter for the watch
            store: PeerStore for the last known identity (built from
                ``storage_path`` if omitted)
            configuration: dict or ConfigObj section
            wake_hold: WakeHold held while a frame is being written
        """
        c = get_config_obj(configuration)

        self.name = c.get("name", "WatchLink")
        self.service_uuid = c.get("service_uuid", LinkEngine.SERVICE_UUID).lower()
        self.rx_char_uuid = c.get("rx_char_uuid", LinkEngine.CHARACTERISTIC_RX_UUID).lower()
        self.tx_char_uuid = c.get("tx_char_uuid", LinkEngine.CHARACTERISTIC_TX_UUID).lower()
        self.service_discovery_delay = float(c.get("service_discovery_delay", LinkEngine.SERVICE_DISCOVERY_DELAY))
        self.requested_mtu = int(c.get("requested_mtu", LinkEngine.REQUESTED_MTU))
        self.default_mtu = int(c.get("default_mtu", LinkEngine.DEFAULT_MTU))
        self.flush_pacing = float(c.get("flush_pacing", LinkEngine.FLUSH_PACING))
        self.send_wake_hold = float(c.get("send_wake_hold", LinkEngine.SEND_WAKE_HOLD))

        self.adapter = adapter
        self.adapter.on_event = self.handle_event
        self.store = store if store is not None else PeerStore(c.get("storage_path", None))
        self.wake_hold = wake_hold if wake_hold is not None else NullWakeHold()

        self.outbound = OutboundQueue(ttl=float(c.get("queue_ttl", OutboundQueue.DEFAULT_TTL)))
        self.reassembler = LineReassembler()
        self.interpreter = RemoteControlInterpreter(
            on_time_sync=self._respond_time_sync,
            on_disconnect_hint=self._suppress_auto_reconnect,
        )

        # Observable state
        self.state = LinkObservable("state", LinkState.DISCONNECTED)
        self.device_name = LinkObservable("device_name", None)
        self.last_error = LinkObservable("last_error", None, distinct=False)
        self.lines = LinkObservable("lines", None, distinct=False)
        self.telemetry = LinkObservable("telemetry", None)
        self.last_error_kind = None

        self.peer = None
        self.link_params = None
        self.auto_reconnect_suppressed = False

        self._session_address = None
        self._write_mode = WriteMode.ACK_REQUIRED
        self._settle_timer = None
        self._flushing = False
        self.flush_thread = None

        self._lock = threading.RLock()
        self._tx_lock = threading.Lock()

        self._event_handlers = {
            EventKind.CONNECTED: self._on_connected,
            EventKind.CONNECTION_FAILED: self._on_connection_failed,
            EventKind.PERMISSION_DENIED: self._on_permission_denied,
            EventKind.DISCONNECTED: self._on_disconnected,
            EventKind.SERVICES_DISCOVERED: self._on_services_discovered,
            EventKind.NOTIFICATIONS_ENABLED: self._on_notifications_enabled,
            EventKind.MTU_CHANGED: self._on_mtu_changed,
            EventKind.DATA_RECEIVED: self._on_data_received,
            EventKind.WRITE_COMPLETE: self._on_write_complete,
        }

        self._load_persisted_identity()
        RNS.log(f"{self} initialized for service {self.service_uuid}", RNS.LOG_DEBUG)

    # --- Public API ---

    def connect(self, address, name_hint=None):
        """
        User-initiated connect. Clears any reconnect suppression requested
        by the watch, then connects.
        """
        self.clear_reconnect_suppression()
        self._connect(address, name_hint)

    def reconnect(self):
        """Connect to the last persisted peer, if there is one."""
        identity = self._load_saved_peer()
        if identity is None:
            with self._lock:
                self._report(NoSavedPeer("No saved device to reconnect."))
                self._set_state(LinkState.DISCONNECTED)
            return

        RNS.log(f"{self} reconnecting to {identity.label} ({identity.address})", RNS.LOG_INFO)
        self._connect(identity.address, identity.display_name)

    def disconnect(self):
        """Drop the link. Safe to call in any state."""
        with self._lock:
            RNS.log(f"{self} disconnect requested", RNS.LOG_INFO)
            if self._session_address is None:
                self._close_session()
                self._set_state(LinkState.DISCONNECTED)
                RNS.log(f"{self} no active session, state forced to disconnected", RNS.LOG_DEBUG)
                return

            try:
                # The adapter answers with a DISCONNECTED event
                self.adapter.disconnect()
            except Exception as e:
                RNS.log(f"{self} transport disconnect failed: {type(e).__name__}: {e}", RNS.LOG_WARNING)
                self._close_session()
                self._set_state(LinkState.DISCONNECTED)

    def send(self, frame):
        """
        Send one frame (JSON bytes, no terminator).

        Never blocks on delivery: when the link is not ready, or earlier
        frames are still waiting, the frame is queued behind them.
        """
        if not isinstance(frame, (bytes, bytearray)):
            raise TypeError(f"Frame must be bytes, got {type(frame).__name__}")

        with self._lock:
            if not self._is_ready() or self._flushing or not self.outbound.is_empty():
                self._enqueue(frame)
                return

        self._transmit(bytes(frame))

    def send_json(self, obj):
        self.send(encode_json(obj))

    def send_datetime(self):
        self.send(build_datetime_frame())

    def send_status(self):
        self.send(build_status_frame())

    def send_notification(self, app_id, title, message):
        self.send(build_notification_frame(app_id, title, message))

    def should_auto_reconnect(self):
        return not self.auto_reconnect_suppressed

    def has_pending_to_send(self):
        return not self.outbound.is_empty()

    def clear_reconnect_suppression(self):
        if self.auto_reconnect_suppressed:
            RNS.log(f"{self} reconnect suppression cleared", RNS.LOG_DEBUG)
        self.auto_reconnect_suppressed = False

    @property
    def is_connected(self):
        return self.state.value is LinkState.CONNECTED

    # --- Transport events ---

    def handle_event(self, event):
        """Single entry point for every transport event."""
        with self._lock:
            if self._session_address is None or event.address != self._session_address:
                RNS.log(f"{self} ignoring {event.kind.value} for inactive session {event.address}", RNS.LOG_EXTREME)
                return

            handler = self._event_handlers.get(event.kind)
            if handler is None:
                RNS.log(f"{self} unhandled transport event {event.kind.value}", RNS.LOG_WARNING)
                return
            handler(event)

    def _on_connected(self, event):
        if self.state.value is not LinkState.CONNECTING:
            return

        if event.name:
            self.peer.display_name = event.name
        self.device_name.publish(self.peer.label)
        self._persist_peer()

        RNS.log(f"{self} connected to {self.peer.label} ({event.address}), discovering services...", RNS.LOG_INFO)

        if self.service_discovery_delay > 0:
            self._settle_timer = threading.Timer(
                self.service_discovery_delay,
                self._begin_service_discovery,
                args=(event.address,),
            )
            self._settle_timer.daemon = True
            self._settle_timer.start()
        else:
            self._begin_service_discovery(event.address)

    def _begin_service_discovery(self, address):
        with self._lock:
            self._settle_timer = None
            if address != self._session_address or self.state.value is not LinkState.CONNECTING:
                return
            try:
                self.adapter.discover_services()
            except Exception as e:
                self._fail(LinkError(f"Service discovery failed: {e}"))

    def _on_services_discovered(self, event):
        if self.state.value is not LinkState.CONNECTING:
            return

        if not event.success:
            self._fail(LinkError(f"Service discovery failed: {event.message or event.status}"))
            return

        services = {uuid.lower(): chars for uuid, chars in event.services.items()}
        service = services.get(self.service_uuid)
        if service is None:
            self._fail(ServiceNotFound("UART service not found."))
            return

        characteristics = {uuid.lower(): char for uuid, char in service.items()}
        rx_char = characteristics.get(self.rx_char_uuid)
        tx_char = characteristics.get(self.tx_char_uuid)
        if rx_char is None or tx_char is None:
            self._fail(CharacteristicNotFound("UART RX/TX characteristic not found."))
            return

        if CCC_DESCRIPTOR_UUID not in {d.lower() for d in rx_char.descriptors}:
            self._fail(NotificationSubscribeFailed("CCC descriptor not found."))
            return

        if PROPERTY_WRITE_NO_RESPONSE in tx_char.properties:
            self._write_mode = WriteMode.NO_ACK
        else:
            self._write_mode = WriteMode.ACK_REQUIRED

        RNS.log(f"{self} UART service resolved, write mode {self._write_mode.value}", RNS.LOG_DEBUG)

        try:
            self.adapter.enable_notifications(self.rx_char_uuid)
        except Exception as e:
            self._fail(NotificationSubscribeFailed(f"Failed to set notification: {e}"))

    def _on_notifications_enabled(self, event):
        if self.state.value is not LinkState.CONNECTING:
            return

        if not event.success:
            self._fail(NotificationSubscribeFailed(f"Failed to enable notifications: {event.message or event.status}"))
            return

        self.link_params = NegotiatedLinkParams(self.default_mtu, self._write_mode)
        self._clear_error()
        self._set_state(LinkState.CONNECTED)
        RNS.log(f"{self} RX notifications enabled, link ready", RNS.LOG_INFO)

        # An observer may already have torn the link down again
        if not self._is_ready():
            return

        try:
            self.adapter.request_mtu(self.requested_mtu)
        except Exception as e:
            RNS.log(f"{self} MTU request failed, keeping {self.link_params.max_payload}: {e}", RNS.LOG_WARNING)

        self._start_flush()

    def _on_mtu_changed(self, event):
        if self.link_params is None:
            return

        if not event.success:
            RNS.log(f"{self} MTU change failed with status={event.status}", RNS.LOG_WARNING)
            return

        self.link_params.max_payload = event.mtu if event.mtu else self.default_mtu
        RNS.log(f"{self} MTU negotiated: {self.link_params.max_payload} bytes", RNS.LOG_INFO)

    def _on_data_received(self, event):
        for line in self.reassembler.receive(event.data):
            RNS.log(f"{self} RX line: {line}", RNS.LOG_DEBUG)
            self.interpreter.handle_line(line)
            telemetry = DeviceTelemetry.from_line(line)
            if telemetry is not None:
                self.telemetry.publish(telemetry)
            self.lines.publish(line)

    def _on_write_complete(self, event):
        if event.success:
            RNS.log(f"{self} TX chunk acknowledged", RNS.LOG_EXTREME)
        else:
            self._report(WriteFailed(f"Failed to send data: {event.message or event.status}"))

    def _on_disconnected(self, event):
        RNS.log(f"{self} disconnected from {self.peer.label if self.peer else event.address}", RNS.LOG_INFO)
        self._close_session()
        self._set_state(LinkState.DISCONNECTED)

    def _on_connection_failed(self, event):
        self._fail(LinkError(event.message or f"GATT Error: {event.status}"))

    def _on_permission_denied(self, event):
        self._fail(PermissionDenied(event.message or "Bluetooth permission needed."))

    # --- Internals ---

    def _connect(self, address, name_hint):
        available = self._adapter_available()

        with self._lock:
            current = self.state.value
            if current is LinkState.CONNECTING or (current is LinkState.CONNECTED and self._session_address == address):
                RNS.log(f"{self} already connected or connecting to {address}", RNS.LOG_WARNING)
                return

            if not available:
                self._close_session()
                self._report(TransportUnavailable("Bluetooth is not enabled."))
                self._set_state(LinkState.DISCONNECTED)
                return

            self._close_session()

            display_name = name_hint
            if display_name is None and self.peer is not None and self.peer.address == address:
                display_name = self.peer.display_name
            self.peer = PeerIdentity(address, display_name)
            self.device_name.publish(self.peer.label)

            self._session_address = address
            self._set_state(LinkState.CONNECTING)
            RNS.log(f"{self} attempting to connect to {self.peer.label} ({address})...", RNS.LOG_INFO)

            try:
                self.adapter.connect(address)
            except PermissionError as e:
                self._session_address = None
                self._report(PermissionDenied(f"Bluetooth permission needed: {e}"))
                self._set_state(LinkState.DISCONNECTED)
            except ValueError as e:
                self._fail(LinkError(f"Invalid Bluetooth address {address}: {e}"))
            except Exception as e:
                self._fail(LinkError(f"Connection failed: {type(e).__name__}: {e}"))

    def _adapter_available(self):
        try:
            return self.adapter.is_available()
        except Exception as e:
            RNS.log(f"{self} could not query adapter: {type(e).__name__}: {e}", RNS.LOG_WARNING)
            return False

    def _is_ready(self):
        return (self.state.value is LinkState.CONNECTED
                and self.link_params is not None
                and self._session_address is not None)

    def _enqueue(self, frame):
        self.outbound.enqueue(frame)
        if self._is_ready():
            self._start_flush()
        elif self.state.value not in (LinkState.CONNECTING, LinkState.CONNECTED):
            RNS.log(f"{self} frame queued while disconnected, reconnecting to deliver", RNS.LOG_INFO)
            self.reconnect()

    def _start_flush(self):
        if self._flushing:
            return
        self._flushing = True
        self.flush_thread = threading.Thread(target=self._flush_pending, daemon=True, name="WatchLink-Flush")
        self.flush_thread.start()

    def _flush_pending(self):
        expired = self.outbound.purge_expired()
        if expired:
            RNS.log(f"{self} {expired} queued frame(s) expired before delivery ({self.outbound.expired_count} in total)", RNS.LOG_DEBUG)

        sent = 0
        try:
            while True:
                with self._lock:
                    entry = self.outbound.peek() if self._is_ready() else None
                    if entry is None:
                        self._flushing = False
                        break

                if not self._transmit(entry.payload):
                    with self._lock:
                        self._flushing = False
                    break

                self.outbound.remove(entry)
                sent += 1
                if self.flush_pacing > 0:
                    time.sleep(self.flush_pacing)
        except Exception as e:
            RNS.log(f"{self} flush aborted: {type(e).__name__}: {e}", RNS.LOG_ERROR)
            with self._lock:
                self._flushing = False

        if sent:
            RNS.log(f"{self} flushed {sent} queued frame(s)", RNS.LOG_DEBUG)

    def _transmit(self, payload):
        """Write one frame chunk by chunk. Returns True if every chunk was accepted."""
        failure = None
        with self._tx_lock:
            params = self.link_params
            if params is None:
                failure = WriteFailed("Not connected or TX characteristic unavailable.")
            else:
                fragmenter = LineFragmenter(mtu=params.max_payload)
                with_response = params.write_mode is WriteMode.ACK_REQUIRED
                RNS.log(f"{self} TX: {len(payload)} bytes in {fragmenter.get_chunk_count(len(payload))} chunk(s)", RNS.LOG_EXTREME)

                # Keep the host awake until the last chunk is out
                self.wake_hold.acquire(self.send_wake_hold)
                try:
                    fragmenter.transmit(payload, lambda chunk: self._write_chunk(chunk, with_response))
                except WriteFailed as e:
                    failure = e
                finally:
                    self.wake_hold.release()

        if failure is not None:
            with self._lock:
                self._report(failure)
            return False

        return True

    def _write_chunk(self, chunk, with_response):
        try:
            return bool(self.adapter.write(self.tx_char_uuid, chunk, with_response))
        except Exception as e:
            RNS.log(f"{self} chunk write raised {type(e).__name__}: {e}", RNS.LOG_ERROR)
            return False

    def _respond_time_sync(self):
        # Both frames go through the queue so they keep their order behind
        # anything already waiting
        self._enqueue(build_datetime_frame())
        self._enqueue(build_ack_frame("datetime"))

    def _suppress_auto_reconnect(self):
        self.auto_reconnect_suppressed = True

    def _fail(self, error):
        """Transport-level failure: release the session first, then enter Error."""
        self._close_session()
        self._report(error)
        self._set_state(LinkState.ERROR)

    def _report(self, error):
        level = RNS.LOG_WARNING if isinstance(error, NoSavedPeer) else RNS.LOG_ERROR
        RNS.log(f"{self} {type(error).__name__}: {error}", level)
        self.last_error_kind = type(error)
        self.last_error.publish(str(error))

    def _clear_error(self):
        self.last_error_kind = None
        if self.last_error.value is not None:
            self.last_error.publish(None)

    def _set_state(self, state):
        previous = self.state.value
        if self.state.publish(state):
            RNS.log(f"{self} state {previous.value} -> {state.value}", RNS.LOG_DEBUG)

    def _close_session(self):
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None

        if self._session_address is not None:
            self._session_address = None
            try:
                self.adapter.close()
            except Exception as e:
                RNS.log(f"{self} error closing transport session: {e}", RNS.LOG_ERROR)

        self.link_params = None
        if self.reassembler.pending_bytes:
            RNS.log(f"{self} discarding {self.reassembler.pending_bytes} bytes of unterminated input", RNS.LOG_DEBUG)
        self.reassembler.reset()

    def _persist_peer(self):
        try:
            self.store.save(self.peer)
        except OSError as e:
            RNS.log(f"{self} could not persist peer identity: {e}", RNS.LOG_WARNING)

    def _load_saved_peer(self):
        try:
            return self.store.load()
        except OSError as e:
            RNS.log(f"{self} could not load peer identity: {e}", RNS.LOG_WARNING)
            return None

    def _load_persisted_identity(self):
        identity = self._load_saved_peer()
        if identity is not None:
            self.peer = identity
            self.device_name.publish(identity.label)
            RNS.log(f"{self} last known watch: {identity.label} ({identity.address})", RNS.LOG_DEBUG)

    def __str__(self):
        return f"LinkEngine[{self.name}]"

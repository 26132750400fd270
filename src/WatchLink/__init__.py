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
WatchLink - keeps a low-power link to a smart watch over BLE UART

Connection lifecycle, MTU-aware line framing, an expiring outbound queue,
bounded reconnection and the watch's small remote-control protocol.
"""

from WatchLink.config import load_configuration
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
from WatchLink.LinkEngine import LinkEngine, LinkState, NegotiatedLinkParams, WriteMode
from WatchLink.LinkService import LinkService
from WatchLink.PeerStore import PeerIdentity, PeerStore
from WatchLink.Reconnection import ReconnectScheduler
from WatchLink.RemoteControl import ControlIntent, DeviceTelemetry
from WatchLink.transport_adapter import EventKind, TransportAdapter, TransportEvent

__version__ = "0.1.0"

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
Error taxonomy for the watch link engine.

The engine never lets these escape its public API. They are created at the
point of failure, logged, and surfaced to observers through
``LinkEngine.last_error`` (message) and ``LinkEngine.last_error_kind``
(class), after which the engine settles in Disconnected or Error.
"""


class LinkError(Exception):
    """Base error for watch link failures."""


class TransportUnavailable(LinkError):
    """Bluetooth adapter is missing or powered off."""


class PermissionDenied(LinkError):
    """Host platform refused access to the Bluetooth stack."""


class ServiceNotFound(LinkError):
    """Peer does not expose the UART service."""


class CharacteristicNotFound(LinkError):
    """UART service is missing its RX or TX characteristic."""


class NotificationSubscribeFailed(LinkError):
    """Peer did not accept the notification subscription."""


class NoSavedPeer(LinkError):
    """Reconnect requested but no peer identity was ever persisted."""


class WriteFailed(LinkError):
    """A chunk write was rejected by the transport.

    Aborts the frame in flight but leaves the link up.
    """

    def __init__(self, message, chunk_index=None, chunk_count=None):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.chunk_count = chunk_count

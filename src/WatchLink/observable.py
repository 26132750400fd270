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
Minimal observable values for engine state.

Observers are plain callables invoked synchronously with the new value.
An exception raised by one observer is logged and does not stop the others.
"""

import threading

import RNS


class LinkObservable:
    """
    Holds a value and notifies subscribers when it changes.

    With ``distinct=False`` every ``publish`` is delivered even if the value
    repeats, which suits event streams such as received lines.
    """

    def __init__(self, name, initial=None, distinct=True):
        self.name = name
        self._value = initial
        self._distinct = distinct
        self._observers = []
        self._lock = threading.Lock()

    @property
    def value(self):
        return self._value

    def subscribe(self, callback):
        with self._lock:
            if callback not in self._observers:
                self._observers.append(callback)

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._observers:
                self._observers.remove(callback)

    def publish(self, value):
        """
        Set the value and notify observers.

        Returns:
            bool: True if observers were notified
        """
        if self._distinct and value == self._value:
            return False
        self._value = value

        with self._lock:
            observers = list(self._observers)

        for callback in observers:
            try:
                callback(value)
            except Exception as e:
                RNS.log(f"Observer of {self.name} failed: {type(e).__name__}: {e}", RNS.LOG_ERROR)
        return True

    def __repr__(self):
        return f"LinkObservable({self.name}={self._value!r})"

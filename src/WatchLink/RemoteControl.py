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
RemoteControl - control intents embedded in the watch's data stream

The watch firmware mixes a handful of requests into its normal status
output. These are recognised best-effort: any line that is not a JSON
object, or does not match a known intent, is ignored.
"""

import json
from enum import Enum

import RNS


class ControlIntent(Enum):
    TIME_SYNC = "time_sync"
    DISCONNECT_HINT = "disconnect_hint"


TIME_SYNC_REQUESTS = {"datetime", "time"}
TIME_SYNC_COMMANDS = {"get_datetime", "get_time", "time_sync"}
SLEEP_STATES = {"sleep", "power_save"}
TELEMETRY_KEYS = {"battery", "charging", "steps"}


def _opt_string(obj, key):
    value = obj.get(key)
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).lower()


def _opt_boolean(obj, key):
    value = obj.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() == "true"
    return False


def parse_object(line):
    """Parse a line as a JSON object; None for anything else."""
    try:
        obj = json.loads(line)
    except (ValueError, TypeError):
        return None
    if not isinstance(obj, dict):
        return None
    return obj


def classify_line(line):
    """
    Map an inbound line to a control intent.

    Time-sync requests are checked before disconnect hints; the first match
    wins.

    Returns:
        ControlIntent or None
    """
    obj = parse_object(line)
    if obj is None:
        return None

    request = _opt_string(obj, "request")
    get = _opt_string(obj, "get")
    cmd = _opt_string(obj, "cmd")
    event = _opt_string(obj, "event")
    state = _opt_string(obj, "state")

    if (request in TIME_SYNC_REQUESTS or get in TIME_SYNC_REQUESTS
            or cmd in TIME_SYNC_COMMANDS or _opt_boolean(obj, "request_datetime")):
        return ControlIntent.TIME_SYNC

    if (request == "disconnect" or cmd == "disconnect"
            or event == "disconnecting" or state in SLEEP_STATES):
        return ControlIntent.DISCONNECT_HINT

    return None


class RemoteControlInterpreter:
    """
    Applies control intents to the link.

    Effects are injected as callables so the interpreter can be exercised
    without an engine:

    - ``on_time_sync()``: queue the datetime frame and its ack
    - ``on_disconnect_hint()``: suppress automatic reconnection
    """

    def __init__(self, on_time_sync, on_disconnect_hint):
        self.on_time_sync = on_time_sync
        self.on_disconnect_hint = on_disconnect_hint

    def handle_line(self, line):
        intent = classify_line(line)
        if intent is ControlIntent.TIME_SYNC:
            RNS.log(f"{self} watch requested datetime, responding", RNS.LOG_INFO)
            self.on_time_sync()
        elif intent is ControlIntent.DISCONNECT_HINT:
            RNS.log(f"{self} watch indicated disconnect/sleep, suppressing auto-reconnect", RNS.LOG_INFO)
            self.on_disconnect_hint()
        return intent

    def __str__(self):
        return "RemoteControlInterpreter"


class DeviceTelemetry:
    """Battery and activity figures the watch reports in its status lines."""

    def __init__(self, battery=0, charging=False, steps=0):
        self.battery = battery
        self.charging = charging
        self.steps = steps

    @staticmethod
    def from_line(line):
        """Parse a status line; None unless it is a JSON object carrying telemetry."""
        obj = parse_object(line)
        if obj is None or not TELEMETRY_KEYS.intersection(obj):
            return None

        def as_int(value):
            try:
                return int(value)
            except (TypeError, ValueError):
                return 0

        return DeviceTelemetry(
            battery=as_int(obj.get("battery", 0)),
            charging=_opt_boolean(obj, "charging"),
            steps=as_int(obj.get("steps", 0)),
        )

    def __eq__(self, other):
        if not isinstance(other, DeviceTelemetry):
            return NotImplemented
        return (self.battery, self.charging, self.steps) == (other.battery, other.charging, other.steps)

    def __repr__(self):
        return f"DeviceTelemetry(battery={self.battery}, charging={self.charging}, steps={self.steps})"

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
Configuration helpers shared by the link components.

Components take either a plain dictionary or a ConfigObj section, the same
way Reticulum hands interface sections to its interfaces. Values coming
from a config file are strings, so every reader converts explicitly.
"""

import os

from RNS.vendor.configobj import ConfigObj

CONFIG_SECTION = "WatchLink"
DEFAULT_STORAGE_DIR = os.path.expanduser("~/.watchlink")


def get_config_obj(configuration):
    """Return a dict-like view of ``configuration`` (None means empty)."""
    if configuration is None:
        return {}
    if isinstance(configuration, (dict, ConfigObj)):
        return configuration
    return ConfigObj(configuration)


def parse_bool(value, default=False):
    """Accept real booleans as well as "yes"/"no" style strings."""
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ["yes", "true", "1", "on"]
    return bool(value)


def load_configuration(path=None):
    """
    Load the [WatchLink] section from a config file.

    Args:
        path: Config file path. Defaults to ``~/.watchlink/config``.

    Returns:
        dict: The section contents, or an empty dict if the file or section
        does not exist.
    """
    if path is None:
        path = os.path.join(DEFAULT_STORAGE_DIR, "config")

    if not os.path.isfile(path):
        return {}

    config = ConfigObj(path)
    if CONFIG_SECTION not in config:
        return {}
    return dict(config[CONFIG_SECTION])

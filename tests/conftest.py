"""
pytest configuration for WatchLink tests.

This file is automatically loaded by pytest before test collection begins.
It sets up the Python path to allow imports from src/ without installing.
"""

import sys
import os

# Calculate paths relative to this file's location
tests_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(tests_dir)
src_dir = os.path.join(project_root, 'src')

if src_dir not in sys.path:
    sys.path.insert(0, src_dir)

import pytest
from unittest.mock import AsyncMock, MagicMock

import RNS

from WatchLink.LinkEngine import LinkEngine
from WatchLink.PeerStore import PeerStore
from WatchLink.Reconnection import ReconnectScheduler
from WatchLink.WakeHold import NullWakeHold
from mock_transport_adapter import MockTransportAdapter

# Keep test output readable; failures still print
RNS.loglevel = RNS.LOG_WARNING


# ============================================================================
# Configuration
# ============================================================================

@pytest.fixture
def fast_config(tmp_path):
    """Engine configuration with timings shrunk for tests."""
    return {
        'name': 'TestWatch',
        'service_discovery_delay': 0,
        'flush_pacing': 0,
        'queue_ttl': 60,
        'storage_path': str(tmp_path),
        'reconnect_window': 2.0,
        'reconnect_interval': 0.05,
        'wake_hold_margin': 0.5,
    }


@pytest.fixture
def sample_configuration():
    """Configuration as it arrives from a config file (all strings)."""
    return {
        'name': 'S3',
        'service_discovery_delay': '0.6',
        'requested_mtu': '128',
        'default_mtu': '23',
        'queue_ttl': '60',
        'flush_pacing': '0.01',
        'reconnect_window': '300',
        'reconnect_interval': '15',
        'wake_hold_margin': '10',
        'adapter': 'hci1',
        'auto_start': 'no',
    }


# ============================================================================
# Components
# ============================================================================

@pytest.fixture
def peer_store(tmp_path):
    return PeerStore(str(tmp_path))


@pytest.fixture
def adapter():
    return MockTransportAdapter()


@pytest.fixture
def engine(adapter, peer_store, fast_config):
    link = LinkEngine(adapter, store=peer_store, configuration=fast_config)
    yield link
    link.disconnect()


@pytest.fixture
def wake_hold():
    return NullWakeHold()


@pytest.fixture
def scheduler(engine, wake_hold, fast_config):
    sched = ReconnectScheduler(engine, wake_hold=wake_hold, configuration=fast_config)
    yield sched
    sched.stop()


# ============================================================================
# Mock BLE Components
# ============================================================================

@pytest.fixture
def mock_bleak_client():
    """Create a mock BleakClient for adapter tests."""
    client = AsyncMock()
    client.address = "AA:BB:CC:DD:EE:FF"
    client.name = "S3 Watch"
    client.is_connected = True
    client.mtu_size = 185
    client.connect = AsyncMock(return_value=True)
    client.disconnect = AsyncMock(return_value=True)
    client.start_notify = AsyncMock(return_value=True)
    client.stop_notify = AsyncMock(return_value=True)
    client.write_gatt_char = AsyncMock(return_value=None)
    client._backend = MagicMock(spec=[])
    return client


# ============================================================================
# Common Test Data
# ============================================================================

WATCH_ADDRESS = "AA:BB:CC:DD:EE:FF"


@pytest.fixture
def watch_address():
    return WATCH_ADDRESS


@pytest.fixture
def sample_frames():
    """Frames of different sizes relative to the default 20 byte chunk."""
    return {
        'small': b'{"status":"read"}',
        'exact': b'{"ack":"datetime"}x',  # 19 bytes + terminator = one chunk
        'large': b'{"notification":"2025-01-01T10:00:00","app":"x","title":"t","message":"' + b'm' * 200 + b'"}',
        'empty': b'',
    }

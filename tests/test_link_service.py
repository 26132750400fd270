#!/usr/bin/env python3
"""
Integration tests: service assembly with a scripted transport
"""

import json

from WatchLink.LinkEngine import LinkState
from WatchLink.LinkService import LinkService
from WatchLink.PeerStore import PeerIdentity
from WatchLink.WakeHold import NullWakeHold
from mock_transport_adapter import MockTransportAdapter, wait_until

ADDRESS = "AA:BB:CC:DD:EE:FF"


def build_service(fast_config, **overrides):
    adapter = MockTransportAdapter()
    wake_hold = NullWakeHold()
    config = dict(fast_config)
    config.update(overrides)
    service = LinkService(config, adapter=adapter, wake_hold=wake_hold, send_hold=NullWakeHold())
    return service, adapter, wake_hold


class TestLinkService:

    def test_start_reconnects_to_saved_watch(self, fast_config):
        service, adapter, _wake_hold = build_service(fast_config)
        service.store.save(PeerIdentity(ADDRESS, "S3 Watch"))

        service.start()

        assert wait_until(lambda: service.engine.state.value is LinkState.CONNECTED)
        assert service.engine.device_name.value == "S3 Watch"
        assert wait_until(lambda: service.scheduler.status.value == "Connected")
        service.stop()

    def test_auto_start_disabled(self, fast_config):
        service, adapter, _wake_hold = build_service(fast_config, auto_start="no")
        service.store.save(PeerIdentity(ADDRESS))

        service.start()

        assert service.running
        assert not service.scheduler.is_active
        assert adapter.count("connect") == 0
        service.stop()

    def test_stop_disconnects_and_releases(self, fast_config):
        service, adapter, wake_hold = build_service(fast_config, auto_start="no")
        service.start()
        service.engine.connect(ADDRESS)

        service.stop()

        assert service.engine.state.value is LinkState.DISCONNECTED
        assert not service.scheduler.is_active
        assert not wake_hold.held
        assert not service.running

    def test_start_twice(self, fast_config):
        service, adapter, _wake_hold = build_service(fast_config, auto_start="no")
        service.start()
        service.start()
        assert service.running
        service.stop()
        service.stop()

    def test_message_flow_with_sleeping_watch(self, fast_config):
        """
        Watch asks for the time, then goes to sleep and drops the link:
        no reconnection until there is something to deliver.
        """
        service, adapter, _wake_hold = build_service(fast_config, auto_start="no")
        engine = service.engine
        service.start()
        engine.connect(ADDRESS, "S3 Watch")

        adapter.simulate_notification(b'{"cmd":"get_time"}\n')
        assert wait_until(lambda: len(adapter.sent_lines()) == 2)
        assert json.loads(adapter.sent_lines()[1]) == {"ack": "datetime"}

        adapter.simulate_notification(b'{"state":"sleep"}\n')
        adapter.simulate_disconnect()
        assert not service.scheduler.is_active
        assert service.scheduler.status.value == "Idle (remote off)"

        connects = adapter.count("connect")
        engine.send_notification("com.chat", "Alice", "Lunch?")

        assert adapter.count("connect") == connects + 1
        assert wait_until(lambda: len(adapter.sent_lines()) == 3)
        assert json.loads(adapter.sent_lines()[2])["title"] == "Alice"
        service.stop()

    def test_stop_gives_up_on_silent_transport(self, fast_config, monkeypatch):
        service, adapter, _wake_hold = build_service(fast_config, auto_start="no", shutdown_timeout=0.1)
        service.start()
        service.engine.connect(ADDRESS)
        monkeypatch.setattr(adapter, "disconnect", lambda: adapter.calls.append(("disconnect",)))

        service.stop()

        assert adapter.count("disconnect") == 1
        assert not service.running
        assert service.engine.state.value is LinkState.CONNECTED

    def test_sends_and_windows_use_separate_holds(self, fast_config):
        service, adapter, wake_hold = build_service(fast_config, auto_start="no")

        assert service.scheduler.wake_hold is wake_hold
        assert service.engine.wake_hold is service.send_hold
        assert service.send_hold is not wake_hold

        service.start()
        service.engine.connect(ADDRESS)
        service.engine.send_status()

        assert wait_until(lambda: adapter.sent_lines() == ['{"status":"read"}'])
        assert wait_until(lambda: not service.send_hold.held)
        assert service.send_hold.acquire_count == 1
        assert wake_hold.acquire_count == 0
        service.stop()

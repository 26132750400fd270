#!/usr/bin/env python3
"""
WatchLink demo

Shows line framing without a radio, or keeps a live link to a watch and
prints everything it sends.

Usage:
    python watch_link_demo.py [framing|connect ADDRESS [NAME]]

Commands:
    framing - Chunk and reassemble sample frames (no BLE radio needed)
    connect - Connect to a watch, answer its time requests, print its lines
"""

import sys
import os
import time

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

import RNS

from WatchLink.LinkFraming import LineFragmenter, LineReassembler, build_notification_frame, build_status_frame


def demo_framing():
    """Chunk sample frames at a few MTUs and put them back together"""
    print("=" * 60)
    print("WatchLink Framing Demo")
    print("=" * 60)

    frames = [
        ("Status request", build_status_frame()),
        ("Notification", build_notification_frame("com.chat", "Alice", "Are we still on for lunch today?")),
    ]

    for mtu in (23, 128, 185):
        fragmenter = LineFragmenter(mtu=mtu)
        print(f"\nMTU {mtu} (chunk size {fragmenter.chunk_size}):")

        for description, frame in frames:
            reassembler = LineReassembler()
            chunks = fragmenter.fragment_frame(frame)
            lines = []
            for chunk in chunks:
                lines.extend(reassembler.receive(chunk))

            stats = reassembler.get_statistics()
            ok = (lines == [frame.decode("utf-8")]
                  and len(chunks) == fragmenter.get_chunk_count(len(frame))
                  and stats["pending_bytes"] == 0)
            print(f"  {description}: {len(frame)} bytes -> {len(chunks)} chunk(s), "
                  f"{stats['bytes_received']} bytes reassembled {'✓' if ok else '✗'}")
            if not ok:
                return False

    print("\n" + "=" * 60)
    print("Framing round trip OK ✓")
    print("=" * 60)
    return True


def run_link(address, name=None):
    """Hold a link to one watch until interrupted"""
    from WatchLink.config import load_configuration
    from WatchLink.LinkService import LinkService

    RNS.loglevel = RNS.LOG_INFO
    service = LinkService(load_configuration())
    engine = service.engine

    engine.state.subscribe(lambda state: print(f"[state] {state.value}"))
    engine.last_error.subscribe(lambda error: error and print(f"[error] {error}"))
    engine.lines.subscribe(lambda line: print(f"[watch] {line}"))
    engine.telemetry.subscribe(lambda t: print(f"[telemetry] battery={t.battery}% steps={t.steps}"))
    service.scheduler.status.subscribe(lambda status: print(f"[status] {status}"))

    service.start()
    engine.connect(address, name)
    engine.send_status()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping...")
        if engine.is_connected:
            print(f"Disconnecting from {engine.device_name.value}")
    finally:
        service.stop()


def show_help():
    print(__doc__)


def main():
    """Main entry point"""
    if len(sys.argv) < 2:
        command = "framing"
    else:
        command = sys.argv[1].lower()

    if command == "framing":
        sys.exit(0 if demo_framing() else 1)
    elif command == "connect" and len(sys.argv) >= 3:
        run_link(sys.argv[2], sys.argv[3] if len(sys.argv) > 3 else None)
    elif command == "help":
        show_help()
    else:
        print(f"Unknown command: {' '.join(sys.argv[1:])}")
        show_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

"""DCC Bus Monitor
===============
Passively follows the command/response traffic between a DCC recorder's
digital board and its front panel (or its DDU-2113 deck controller) and
prints what it means: key presses, drawer and tape state, tape time,
text fields.  Nothing is ever sent onto the bus.

Pipeline:
    byte-pairs -> FrameSynchronizer -> validate -> decode table -> ChangeFilter -> events

Usage:
    python monitor.py --file capture.txt          # replay a recorded capture
    python monitor.py --port /dev/ttyACM0         # live, from a capture adapter
    python monitor.py --port COM5 --deck          # deck controller bus
    python monitor.py --file capture.txt --raw    # hex dump every transaction
    python monitor.py --list                      # show serial ports

Press Ctrl+C to stop a live capture; transactions already buffered are
still decoded and printed before exiting.
"""

import argparse
import os
import sys
from collections import Counter
from typing import Callable, Optional

import serial

from framesync import FrameSynchronizer, Transaction, MAX_TRANSACTION_BYTES
from validator import validate, validation_events
from protocol import decode_transaction, FRONT_PANEL_RULES, FRONT_PANEL_CHATTY
from deckctl import DECK_CONTROL_RULES, DECK_CONTROL_CHATTY
from changefilter import ChangeFilter
from capture import (PairQueue, SerialCapture, parse_capture, list_adapters,
                     DEFAULT_BAUD)
from events import (Decoded, RawDump, ChecksumError, Malformed, ParityMismatch,
                    SequenceGap, CaptureOverrun)

# Force UTF-8 output on Windows
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")


BUSES = {
    "panel": (FRONT_PANEL_RULES, FRONT_PANEL_CHATTY),
    "deck": (DECK_CONTROL_RULES, DECK_CONTROL_CHATTY),
}

POLL_TIMEOUT_S = 0.1


# ====================================================================
#  PIPELINE
# ====================================================================

class BusMonitor:
    """Synchronizer, validator, decode table and change filter wired together.

    feed() pairs in, get events out.  One instance per bus.
    """

    def __init__(self, rules=None, chatty=None, verbose=False,
                 capacity=MAX_TRANSACTION_BYTES, check_sequence=False):
        self.rules = FRONT_PANEL_RULES if rules is None else rules
        self.sync = FrameSynchronizer(capacity)
        self.filter = ChangeFilter(FRONT_PANEL_CHATTY if chatty is None else chatty,
                                   verbose=verbose)
        self.check_sequence = check_sequence
        self.stats = Counter()
        self._last_parity: Optional[int] = None

    @classmethod
    def for_bus(cls, bus, **kwargs):
        rules, chatty = BUSES[bus]
        return cls(rules, chatty, **kwargs)

    def process(self, txn: Transaction) -> list:
        """Validate and decode one completed transaction."""
        v = validate(txn)
        events = validation_events(txn, v)

        if not v.malformed and self.check_sequence:
            parity = txn.command.parity
            if parity == self._last_parity:
                events.insert(0, SequenceGap(parity=parity, index=txn.index))
            self._last_parity = parity

        if v.ok:
            event = decode_transaction(txn, self.rules)
            if self.filter.passes(event):
                events.append(event)
            else:
                self.stats["suppressed"] += 1

        for e in events:
            self.stats[e.kind] += 1
        return events

    def feed(self, a: int, b: int) -> list:
        txn = self.sync.feed(a, b)
        return self.process(txn) if txn is not None else []

    def feed_all(self, pairs) -> list:
        events = []
        for a, b in pairs:
            events.extend(self.feed(a, b))
        return events

    def flush(self) -> list:
        """Decode the transaction still being accumulated, if any."""
        txn = self.sync.flush()
        return self.process(txn) if txn is not None else []

    def run(self, queue: PairQueue, sink: Callable):
        """Drain `queue` into `sink` until the queue is closed and empty."""
        while True:
            dropped = queue.take_overruns()
            if dropped:
                self.stats["overrun"] += 1
                sink(CaptureOverrun(dropped_pairs=dropped))

            pair = queue.get(block=True, timeout=POLL_TIMEOUT_S)
            if pair is None:
                if queue.closed and not len(queue):
                    break
                continue
            for event in self.feed(*pair):
                sink(event)

        dropped = queue.take_overruns()
        if dropped:
            self.stats["overrun"] += 1
            sink(CaptureOverrun(dropped_pairs=dropped))
        for event in self.flush():
            sink(event)


# ====================================================================
#  OUTPUT FORMATTING
# ====================================================================

def hexdump(data) -> str:
    return " ".join(f"{b:02X}" for b in data)


def quoted(text: str) -> str:
    """Text field with control characters escaped."""
    return '"' + "".join(c if 32 <= ord(c) < 0x7E else f"\\x{ord(c):02X}" for c in text) + '"'


def format_fields(fields: dict) -> str:
    parts = []
    for key, value in fields.items():
        if key in ("raw", "code", "status") or value is None:
            continue
        if isinstance(value, str) and key == "text":
            value = quoted(value)
        elif isinstance(value, list):
            value = ",".join(str(v) for v in value) or "-"
        elif isinstance(value, bytes):
            value = hexdump(value)
        parts.append(f"{key}={value}")
    return " ".join(parts)


def format_time(fields: dict) -> str:
    sign = "-" if fields.get("negative") else " "
    return f"{sign}{fields['hours']}:{fields['minutes']:02d}:{fields['seconds']:02d}"


def format_event(event) -> str:
    """One console line per event."""
    if isinstance(event, Decoded):
        if "hours" in event.fields and "minutes" in event.fields:
            rest = {k: v for k, v in event.fields.items()
                    if k not in ("hours", "minutes", "seconds", "negative", "elapsed")}
            detail = f"{format_time(event.fields)} {format_fields(rest)}"
        else:
            detail = format_fields(event.fields)
        return f"{event.opcode:02X} {event.tag.upper():24s} {detail}".rstrip()
    if isinstance(event, RawDump):
        op = f"{event.opcode:02X}" if event.opcode is not None else "--"
        return f"{op} ?? {hexdump(event.cmd_bytes)} -- {hexdump(event.rsp_bytes)}  ({event.reason})"
    if isinstance(event, ChecksumError):
        return (f"!! CHECKSUM ({event.which_segment}) "
                f"{hexdump(event.cmd_bytes)} -- {hexdump(event.rsp_bytes)}")
    if isinstance(event, ParityMismatch):
        return (f"!! PARITY cmd={event.cmd_parity} rsp={event.rsp_parity} "
                f"{hexdump(event.cmd_bytes)} -- {hexdump(event.rsp_bytes)}")
    if isinstance(event, Malformed):
        return f"!! MALFORMED ({event.reason}) {hexdump(event.raw_bytes)}"
    if isinstance(event, SequenceGap):
        return f"!! SEQUENCE parity {event.parity} repeated, exchange missed?"
    if isinstance(event, CaptureOverrun):
        return f"!! OVERRUN {event.dropped_pairs} byte-pairs dropped"
    return repr(event)


def format_transaction(txn: Transaction) -> str:
    return f"{hexdump(txn.command.data)} -- {hexdump(txn.response.data)}"


def print_summary(mon: BusMonitor):
    print(f"\n{'='*78}")
    print(f"  Transactions: {mon.sync.transactions} | "
          f"Dropped bytes: {mon.sync.dropped_bytes} | "
          f"Suppressed repeats: {mon.filter.suppressed}")
    if mon.stats:
        print("  Events: " + ", ".join(f"{k}={n}" for k, n in sorted(mon.stats.items())))
    print(f"{'='*78}")


# ====================================================================
#  RUNNERS
# ====================================================================

def replay_file(path, mon: BusMonitor, raw=False, sink=print):
    """Decode a capture file; with raw=True print transactions undecoded."""
    pairs = parse_capture(path)
    if raw:
        sync = mon.sync
        for txn in sync.feed_all(pairs) + [t for t in [sync.flush()] if t]:
            sink(format_transaction(txn))
        return
    for event in mon.feed_all(pairs) + mon.flush():
        sink(format_event(event))


def run_live(port, baud, mon: BusMonitor):
    cap = SerialCapture(port, baud)
    cap.start()
    print(f"Listening on {port} @ {baud} (Ctrl+C to stop)\n")
    try:
        mon.run(cap.queue, lambda e: print(format_event(e)))
    except KeyboardInterrupt:
        print(f"\nStopping capture, decoding {len(cap.queue)} buffered pairs...")
        cap.stop()
        mon.run(cap.queue, lambda e: print(format_event(e)))
    finally:
        cap.stop()
    if cap.error:
        print(f"Capture adapter error: {cap.error}")


# ====================================================================
#  MAIN
# ====================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="DCC recorder bus monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python monitor.py --file capture.txt
  python monitor.py --file capture.txt --deck --verbose
  python monitor.py --port /dev/ttyACM0
  python monitor.py --list
        """,
    )
    parser.add_argument("--file", type=str, help="Replay a capture file")
    parser.add_argument("--port", type=str, help="Capture adapter serial port")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD,
                        help=f"Adapter baud rate (default {DEFAULT_BAUD})")
    parser.add_argument("--deck", action="store_true",
                        help="Decode the deck controller bus instead of the front panel bus")
    parser.add_argument("--verbose", action="store_true",
                        help="Show every status poll, even when nothing changed")
    parser.add_argument("--sequence", action="store_true",
                        help="Report exchanges whose parity bit did not alternate")
    parser.add_argument("--raw", action="store_true",
                        help="Print transactions as hex, no decoding (with --file)")
    parser.add_argument("--list", action="store_true", help="List serial ports")
    args = parser.parse_args(argv)

    if args.list:
        ports = list_adapters()
        print("\n".join(ports) if ports else "No serial ports found")
        return 0

    mon = BusMonitor.for_bus("deck" if args.deck else "panel",
                             verbose=args.verbose, check_sequence=args.sequence)

    if args.file:
        if not os.path.exists(args.file):
            print(f"ERROR: File not found: {args.file}")
            return 1
        try:
            replay_file(args.file, mon, raw=args.raw)
        except ValueError as exc:
            print(f"ERROR: {exc}")
            return 1
    elif args.port:
        try:
            run_live(args.port, args.baud, mon)
        except serial.SerialException as exc:
            print(f"ERROR: {exc}")
            return 1
    else:
        parser.print_help()
        return 1

    if not args.raw:
        print_summary(mon)
    return 0


if __name__ == "__main__":
    sys.exit(main())

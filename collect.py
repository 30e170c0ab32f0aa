#!/usr/bin/env python3
"""collect.py — Record raw bus traffic from the capture adapter.

Reads interleaved byte-pairs from the adapter over USB serial and writes
them to a pair-text file ("46 FF" per line) that monitor.py --file can
replay later.  Nothing is decoded here, so a recording keeps every byte
even when the decode tables are still wrong.

Usage:
    python collect.py COM5                      # auto-names output
    python collect.py /dev/ttyACM0 drawer.txt   # explicit filename
    python collect.py COM5 out.txt --baud 2000000
"""

import sys
import time

import serial

from capture import SerialCapture, DEFAULT_BAUD, capture_name, write_capture
from framesync import IDLE

PROGRESS_EVERY_S = 1.0


def record(cap: SerialCapture, outfile, progress=print):
    """Pull pairs from a started capture until it stops or Ctrl+C.

    Returns (pairs written, pairs dropped by the queue).
    """
    written = 0
    dropped = 0
    busy = 0
    last = time.monotonic()

    with open(outfile, "a", encoding="utf-8") as f:
        try:
            while True:
                pair = cap.queue.get(block=True, timeout=0.1)
                if pair is None:
                    if cap.queue.closed and not len(cap.queue):
                        break
                else:
                    a, b = pair
                    f.write(f"{a:02X} {b:02X}\n")
                    written += 1
                    if a != IDLE or b != IDLE:
                        busy += 1

                dropped += cap.queue.take_overruns()
                now = time.monotonic()
                if now - last >= PROGRESS_EVERY_S:
                    f.flush()
                    progress(f"  {written:9d} pairs  {busy:9d} non-idle  {dropped} dropped")
                    last = now
        except KeyboardInterrupt:
            cap.stop()
            for a, b in cap.queue.drain():
                f.write(f"{a:02X} {b:02X}\n")
                written += 1
            dropped += cap.queue.take_overruns()

    return written, dropped


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)
    baud = DEFAULT_BAUD
    if "--baud" in args:
        i = args.index("--baud")
        try:
            baud = int(args[i + 1])
        except (IndexError, ValueError):
            print("ERROR: --baud needs a number")
            return 1
        del args[i:i + 2]

    if not args:
        print("Usage: python collect.py <PORT> [output.txt] [--baud N]")
        print("  e.g. python collect.py COM5")
        return 1

    port = args[0]
    outfile = args[1] if len(args) > 1 else capture_name(port)

    # Header first so the file says where it came from even if empty
    write_capture(outfile, [], comment=f"port {port} @ {baud}\n"
                                        f"started {time.strftime('%Y-%m-%d %H:%M:%S')}")

    cap = SerialCapture(port, baud)
    try:
        cap.start()
    except serial.SerialException as exc:
        print(f"ERROR: {exc}")
        return 1

    print(f"Listening on {port} — writing to {outfile}")
    print("Press Ctrl+C to stop\n")
    try:
        written, dropped = record(cap, outfile)
    finally:
        cap.stop()

    if cap.error:
        print(f"Capture adapter error: {cap.error}")
    print(f"\nStopped. {written} pairs → {outfile}")
    if dropped:
        print(f"WARNING: {dropped} pairs dropped (queue overrun), recording has gaps")
    return 0


if __name__ == "__main__":
    sys.exit(main())

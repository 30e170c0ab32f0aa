"""capture.py — Byte sources for the bus monitor.

Live capture:
    A capture adapter (microcontroller acting as a double SPI slave) clocks
    both bus lines and streams them over USB serial, interleaved:
        a0 b0 a1 b1 a2 b2 ...
    SerialCapture reads that stream on its own thread and pushes byte-pairs
    into a PairQueue; the monitor loop drains the queue.  The reader never
    waits for the monitor: when the queue is full the pair is dropped and
    counted, and the monitor reports the overrun.

Offline replay:
    parse_capture() reads a recorded capture file.  Formats (auto-detected):
        pair text   one "46 FF" hex pair per line, '#' starts a comment
        SPI CSV     logic analyzer SPI export with MOSI and MISO columns
        binary      .bin file, interleaved a/b bytes as sent by the adapter

Usage:
    from capture import SerialCapture
    cap = SerialCapture("/dev/ttyACM0")
    cap.start()
    ...
    cap.stop()          # buffered pairs stay readable in cap.queue
"""

import csv
import os
import threading
import time
from typing import Iterator, List, Optional, Tuple

import serial
from serial.tools import list_ports

from framesync import IDLE

Pair = Tuple[int, int]

QUEUE_SIZE = 4096            # pairs buffered between reader thread and monitor
DEFAULT_BAUD = 1_000_000     # adapter USB CDC link; ignored by most CDC devices
READ_CHUNK = 512
OPEN_ATTEMPTS = 5


# ====================================================================
#  SINGLE-PRODUCER / SINGLE-CONSUMER BUFFERS
# ====================================================================

class RingBuffer:
    """Bounded byte ring for exactly one writer and one reader.

    The writer only moves `_head`, the reader only moves `_tail`, so no lock
    is needed.  One slot stays empty to tell full from empty.
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"ring size must be positive, got {size}")
        self._buf = bytearray(size + 1)
        self._head = 0
        self._tail = 0

    @property
    def capacity(self) -> int:
        return len(self._buf) - 1

    def __len__(self):
        return (self._head - self._tail) % len(self._buf)

    def free(self) -> int:
        return self.capacity - len(self)

    def put(self, byte: int) -> bool:
        """Store one byte; False when full."""
        nxt = (self._head + 1) % len(self._buf)
        if nxt == self._tail:
            return False
        self._buf[self._head] = byte
        self._head = nxt
        return True

    def get(self) -> Optional[int]:
        if self._tail == self._head:
            return None
        byte = self._buf[self._tail]
        self._tail = (self._tail + 1) % len(self._buf)
        return byte


class PairQueue:
    """One RingBuffer per bus line, filled and drained in lockstep.

    put() is the producer side and never blocks.  A pair is stored whole or
    not at all, so the two lines cannot drift apart when the queue fills up.
    """

    def __init__(self, size: int = QUEUE_SIZE):
        self._a = RingBuffer(size)
        self._b = RingBuffer(size)
        self._ready = threading.Event()
        self.total_overruns = 0    # written by the producer only
        self._reported = 0         # written by the consumer only
        self.closed = False

    def __len__(self):
        return len(self._b)

    def put(self, a: int, b: int) -> bool:
        if self.closed:
            return False
        if self._a.free() == 0 or self._b.free() == 0:
            self.total_overruns += 1
            return False
        # Line B is written last: the consumer checks B, so a pair only
        # becomes visible once both halves are in.
        self._a.put(a)
        self._b.put(b)
        self._ready.set()
        return True

    def get(self, block: bool = False, timeout: Optional[float] = None) -> Optional[Pair]:
        """Next (a, b) pair, or None if nothing arrived (within `timeout`)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if len(self._b):
                b = self._b.get()
                return self._a.get(), b
            if not block or self.closed:
                return None
            self._ready.clear()
            if len(self._b):
                continue
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return None
            self._ready.wait(remaining)

    def drain(self) -> Iterator[Pair]:
        """Yield every pair currently buffered."""
        while True:
            pair = self.get()
            if pair is None:
                return
            yield pair

    def take_overruns(self) -> int:
        """Pairs dropped since the last call."""
        n = self.total_overruns - self._reported
        self._reported += n
        return n

    def close(self):
        """Stop accepting pairs; whatever is buffered can still be read."""
        self.closed = True
        self._ready.set()


# ====================================================================
#  SERIAL CAPTURE ADAPTER
# ====================================================================

def list_adapters() -> List[str]:
    """Serial devices that could be a capture adapter."""
    return [p.device for p in list_ports.comports()]


def open_serial(port, baud=DEFAULT_BAUD, timeout=0.1):
    """Open the adapter's serial port, retrying if it just re-enumerated."""
    for attempt in range(OPEN_ATTEMPTS):
        try:
            return serial.Serial(port, baud, timeout=timeout)
        except serial.SerialException:
            if attempt < OPEN_ATTEMPTS - 1:
                time.sleep(1)
    raise serial.SerialException(f"Cannot open {port} after {OPEN_ATTEMPTS} attempts")


class SerialCapture:
    """Producer: reads interleaved pairs from a capture adapter into a PairQueue."""

    def __init__(self, port, baud=DEFAULT_BAUD, queue: PairQueue = None):
        self.port = port
        self.baud = baud
        self.queue = queue if queue is not None else PairQueue()
        self.pairs = 0
        self.error: Optional[Exception] = None
        self._ser = None
        self._thread = None
        self._stop = threading.Event()
        self._odd: Optional[int] = None    # first half of a pair split across reads

    def start(self):
        self._ser = open_serial(self.port, self.baud)
        self._ser.reset_input_buffer()
        self._stop.clear()
        self._thread = threading.Thread(target=self._reader_loop, daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _push(self, data: bytes):
        i = 0
        if self._odd is not None and data:
            self.queue.put(self._odd, data[0])
            self.pairs += 1
            self._odd = None
            i = 1
        while i + 1 < len(data):
            self.queue.put(data[i], data[i + 1])
            self.pairs += 1
            i += 2
        if i < len(data):
            self._odd = data[i]

    def _reader_loop(self):
        ser = self._ser
        try:
            while not self._stop.is_set():
                data = ser.read(ser.in_waiting or READ_CHUNK)
                if data:
                    self._push(data)
        except (serial.SerialException, OSError) as exc:
            # Adapter unplugged: the consumer sees the closed queue
            self.error = exc
        finally:
            ser.close()
            self.queue.close()

    def stop(self, timeout: float = 1.0):
        """Stop capturing.  Pairs already queued are not discarded."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        # A reader still stuck in read() closes the port itself on the way out
        if not self.running and self._ser is not None:
            self._ser.close()
            self._ser = None
        self.queue.close()


# ====================================================================
#  CAPTURE FILES
# ====================================================================

def _hex_byte(text: str) -> int:
    text = text.strip()
    if text.lower().startswith("0x"):
        text = text[2:]
    value = int(text, 16)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"byte out of range: {text}")
    return value


def _parse_pair_text(lines, filepath) -> List[Pair]:
    pairs = []
    for lineno, line in enumerate(lines, 1):
        line = line.split("#", 1)[0].replace(",", " ").strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) != 2:
            raise ValueError(f"{filepath}:{lineno}: expected 2 hex bytes, got {len(parts)}")
        try:
            pairs.append((_hex_byte(parts[0]), _hex_byte(parts[1])))
        except ValueError as exc:
            raise ValueError(f"{filepath}:{lineno}: {exc}") from None
    return pairs


def _parse_spi_csv(lines, filepath) -> List[Pair]:
    reader = csv.reader(lines)
    header = [h.strip().upper() for h in next(reader)]
    mosi = next(i for i, h in enumerate(header) if "MOSI" in h)
    miso = next(i for i, h in enumerate(header) if "MISO" in h)
    pairs = []
    for lineno, row in enumerate(reader, 2):
        if len(row) <= max(mosi, miso):
            continue
        a, b = row[mosi].strip(), row[miso].strip()
        try:
            pairs.append((_hex_byte(a) if a else IDLE, _hex_byte(b) if b else IDLE))
        except ValueError as exc:
            raise ValueError(f"{filepath}:{lineno}: {exc}") from None
    return pairs


def parse_capture(filepath) -> List[Pair]:
    """Read a capture file into a list of (a, b) byte-pairs."""
    if filepath.endswith(".bin"):
        with open(filepath, "rb") as f:
            data = f.read()
        if len(data) % 2:
            raise ValueError(f"{filepath}: odd number of bytes ({len(data)})")
        return list(zip(data[0::2], data[1::2]))

    with open(filepath, encoding="utf-8") as f:
        lines = f.read().splitlines()
    if not lines:
        return []

    header = lines[0].upper()
    if "MOSI" in header and "MISO" in header:
        return _parse_spi_csv(lines, filepath)
    return _parse_pair_text(lines, filepath)


def write_capture(filepath, pairs, comment=None):
    """Write pairs in the pair-text format."""
    with open(filepath, "w", encoding="utf-8") as f:
        if comment:
            for line in comment.splitlines():
                f.write(f"# {line}\n")
        for a, b in pairs:
            f.write(f"{a:02X} {b:02X}\n")


def capture_name(port: str) -> str:
    """Default output filename for a recording from `port`."""
    stamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    return f"{stamp}_{os.path.basename(port)}.txt"

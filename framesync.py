"""framesync.py — Frame synchronizer for the two-wire deck/front-panel bus.

The bus is clocked synchronously: on every clock the capture adapter hands
us one byte from the originator line (A) and one byte from the responder
line (B).  A line that is not driving data reads 0xFF.

    (A, B) per clock  ->  FrameSynchronizer.feed()  ->  Transaction

Direction per clock:
    A != 0xFF          command byte A
    A == 0xFF, B != FF response byte B
    both 0xFF          idle; ends a transaction once a response byte was seen,
                       otherwise absorbed into the open command segment

A transaction that outgrows the capacity is closed as soon as the next byte
does not fit, with Segment.length still counting that byte, so it comes out
truncated.  The rest of that exchange is dropped up to the next idle cycle.

Known limitation: a checksum byte of 0xFF on the response line looks exactly
like idle and ends the transaction one byte early.
"""

from dataclasses import dataclass, field
from typing import List, Optional


# ====================================================================
#  BUS CONSTANTS
# ====================================================================

IDLE = 0xFF                  # Line value when nothing is driven
PARITY_MASK = 0x80           # Top bit of a segment's first byte
OPCODE_MASK = 0x7F
MAX_TRANSACTION_BYTES = 128  # Longest exchange seen is 43 + 42 bytes (set text / long text)


# ====================================================================
#  DATA STRUCTURES
# ====================================================================

@dataclass
class Segment:
    """One direction's bytes within a transaction, checksum byte last.

    `length` counts every byte observed on the bus; `data` holds only the
    bytes that fit in the capture buffer.
    """
    data: bytes = b""
    length: int = 0

    @property
    def truncated(self) -> bool:
        return self.length > len(self.data)

    @property
    def parity(self) -> Optional[int]:
        if not self.data:
            return None
        return (self.data[0] & PARITY_MASK) >> 7

    @property
    def body(self) -> bytes:
        """Segment bytes without the trailing checksum, parity bit stripped."""
        if len(self.data) < 2:
            return b""
        return bytes([self.data[0] & OPCODE_MASK]) + self.data[1:-1]

    def __len__(self):
        return self.length


@dataclass
class Transaction:
    """A command segment and the response segment that answered it."""
    command: Segment = field(default_factory=Segment)
    response: Segment = field(default_factory=Segment)
    index: int = 0                 # sequence number assigned by the synchronizer

    @property
    def truncated(self) -> bool:
        return self.command.truncated or self.response.truncated

    @property
    def opcode(self) -> Optional[int]:
        if not self.command.data:
            return None
        return self.command.data[0] & OPCODE_MASK

    @property
    def raw_bytes(self) -> bytes:
        return self.command.data + self.response.data


# ====================================================================
#  SYNCHRONIZER
# ====================================================================

class FrameSynchronizer:
    """Turns synchronized byte-pairs into complete Transactions.

    Single-threaded; one instance per bus.  Call feed() for every pair and
    keep whatever it returns, then flush() when the capture ends.
    """

    def __init__(self, capacity=MAX_TRANSACTION_BYTES):
        if capacity < 2:
            raise ValueError(f"capacity must hold at least 2 bytes, got {capacity}")
        self.capacity = capacity
        self.transactions = 0      # transactions emitted so far
        self.dropped_bytes = 0     # bytes lost to buffer overflow
        self._skipping = False     # after an overflow, until the bus goes idle
        self._reset()

    def _reset(self):
        self._cmd = bytearray()
        self._rsp = bytearray()
        self._cmd_len = 0
        self._rsp_len = 0
        self._open = False
        self._in_response = False

    @property
    def busy(self) -> bool:
        """True while a transaction is being accumulated."""
        return self._open

    def _append(self, response: bool, byte: int) -> Optional[Transaction]:
        """Store one byte; close the transaction if the buffer is already full."""
        if response:
            self._rsp_len += 1
        else:
            self._cmd_len += 1
        if len(self._cmd) + len(self._rsp) >= self.capacity:
            # Rest of this exchange is discarded up to the next idle cycle
            self.dropped_bytes += 1
            self._skipping = True
            return self._close()
        (self._rsp if response else self._cmd).append(byte)
        return None

    def _close(self) -> Transaction:
        self.transactions += 1
        txn = Transaction(
            command=Segment(bytes(self._cmd), self._cmd_len),
            response=Segment(bytes(self._rsp), self._rsp_len),
            index=self.transactions,
        )
        self._reset()
        return txn

    def feed(self, a: int, b: int) -> Optional[Transaction]:
        """Consume one clock's byte-pair; return a Transaction when one closes."""
        if self._skipping:
            if a == IDLE and b == IDLE:
                self._skipping = False
            else:
                self.dropped_bytes += 1
            return None

        done = None

        if a != IDLE:
            # Command byte.  If a response was in progress the previous
            # exchange ended without an idle gap.
            if self._in_response:
                done = self._close()
            self._open = True
            full = self._append(False, a)
            return full if full is not None else done

        elif b != IDLE:
            self._open = True
            self._in_response = True
            return self._append(True, b)

        elif self._in_response:
            done = self._close()

        elif self._open:
            # Idle cycle inside the command segment: kept, see module notes.
            return self._append(False, IDLE)

        return done

    def feed_all(self, pairs) -> List[Transaction]:
        """Feed an iterable of (a, b) pairs and collect the completed Transactions."""
        out = []
        for a, b in pairs:
            txn = self.feed(a, b)
            if txn is not None:
                out.append(txn)
        return out

    def flush(self) -> Optional[Transaction]:
        """Close and return the transaction still open, if any."""
        if not self._open:
            return None
        return self._close()

"""events.py — Events produced by the bus monitor.

Every completed transaction becomes exactly one of Decoded, RawDump,
ChecksumError or Malformed.  ParityMismatch and SequenceGap are reported
alongside; CaptureOverrun comes from the byte source, not from a transaction.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Decoded:
    """A transaction understood by the decode table."""
    opcode: int
    tag: str                        # e.g. "drawer closed", "key next"
    fields: dict = field(default_factory=dict)
    body: bytes = b""               # response body (status byte + data), used by the change filter
    index: int = 0

    kind = "decoded"


@dataclass
class RawDump:
    """A checksum-valid transaction the decode table could not interpret.

    cmd_bytes / rsp_bytes are the segments exactly as captured, checksums
    and parity bits included.
    """
    opcode: Optional[int]
    cmd_bytes: bytes
    rsp_bytes: bytes
    reason: str = "unknown opcode"
    index: int = 0

    kind = "raw"


@dataclass
class ChecksumError:
    cmd_bytes: bytes
    rsp_bytes: bytes
    which_segment: str              # "command", "response" or "both"
    index: int = 0

    kind = "checksum"


@dataclass
class Malformed:
    raw_bytes: bytes
    reason: str = ""
    truncated: bool = False
    index: int = 0

    kind = "malformed"


@dataclass
class ParityMismatch:
    cmd_bytes: bytes
    rsp_bytes: bytes
    cmd_parity: int
    rsp_parity: int
    index: int = 0

    kind = "parity"


@dataclass
class SequenceGap:
    """Two consecutive exchanges carried the same parity bit; one was probably missed."""
    parity: int
    index: int = 0

    kind = "sequence"


@dataclass
class CaptureOverrun:
    """The capture queue was full and byte-pairs were thrown away."""
    dropped_pairs: int

    kind = "overrun"

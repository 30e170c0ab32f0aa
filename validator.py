"""validator.py — Integrity checks for completed transactions.

Each segment ends in a checksum byte chosen so that all bytes of the segment,
checksum included, add up to 0xFF (mod 256).  The top bit of each segment's
first byte is the parity bit; command and response must agree on it.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from framesync import Transaction
from events import ChecksumError, Malformed, ParityMismatch


CHECKSUM_TARGET = 0xFF
MIN_SEGMENT_BYTES = 2    # opcode/status byte + checksum


def segment_sum(data) -> int:
    return sum(data) & 0xFF


def segment_checksum_ok(data) -> bool:
    """True if the segment's bytes, checksum included, sum to 0xFF."""
    return len(data) > 0 and segment_sum(data) == CHECKSUM_TARGET


def checksum_byte(data) -> int:
    """Checksum byte that makes `data` + checksum a valid segment."""
    return (CHECKSUM_TARGET - segment_sum(data)) & 0xFF


def parity_bit(data) -> Optional[int]:
    if not data:
        return None
    return data[0] >> 7


@dataclass
class Validation:
    """Outcome of validate().  `ok` means the transaction may be decoded."""
    malformed: bool = False
    truncated: bool = False
    command_ok: bool = False
    response_ok: bool = False
    parity_ok: bool = False
    failures: List[str] = field(default_factory=list)

    @property
    def checksum_ok(self) -> bool:
        return self.command_ok and self.response_ok

    @property
    def ok(self) -> bool:
        return not self.malformed and self.checksum_ok

    @property
    def bad_segment(self) -> Optional[str]:
        if self.command_ok and self.response_ok:
            return None
        if not self.command_ok and not self.response_ok:
            return "both"
        return "response" if self.command_ok else "command"


def validate(txn: Transaction) -> Validation:
    """Check framing, checksums and parity of a transaction."""
    cmd = txn.command.data
    rsp = txn.response.data
    v = Validation(truncated=txn.truncated)

    if txn.truncated:
        v.malformed = True
        v.failures.append("truncated")
        return v

    for name, data in (("command", cmd), ("response", rsp)):
        if not data:
            v.malformed = True
            v.failures.append(f"empty {name}")
        elif len(data) < MIN_SEGMENT_BYTES:
            v.malformed = True
            v.failures.append(f"short {name} ({len(data)} byte)")
    if v.malformed:
        return v

    v.command_ok = segment_checksum_ok(cmd)
    v.response_ok = segment_checksum_ok(rsp)
    if not v.command_ok:
        v.failures.append("command checksum")
    if not v.response_ok:
        v.failures.append("response checksum")

    v.parity_ok = parity_bit(cmd) == parity_bit(rsp)
    if not v.parity_ok:
        v.failures.append("parity mismatch")

    return v


def validation_events(txn: Transaction, v: Validation) -> list:
    """Error events for a failed validation (empty list when nothing to report)."""
    cmd = txn.command.data
    rsp = txn.response.data
    if v.malformed:
        return [Malformed(raw_bytes=txn.raw_bytes, reason=", ".join(v.failures),
                          truncated=v.truncated, index=txn.index)]
    out = []
    if not v.parity_ok:
        out.append(ParityMismatch(cmd, rsp, parity_bit(cmd), parity_bit(rsp), index=txn.index))
    if not v.checksum_ok:
        out.append(ChecksumError(cmd, rsp, v.bad_segment, index=txn.index))
    return out

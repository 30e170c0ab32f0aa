import pytest

from framesync import Segment, Transaction
from validator import (validate, validation_events, checksum_byte,
                       segment_checksum_ok, parity_bit)
from events import ChecksumError, Malformed, ParityMismatch


def txn(cmd, rsp, cmd_len=None, rsp_len=None):
    cmd, rsp = bytes(cmd), bytes(rsp)
    return Transaction(Segment(cmd, len(cmd) if cmd_len is None else cmd_len),
                       Segment(rsp, len(rsp) if rsp_len is None else rsp_len))


def test_checksum_helpers():
    assert segment_checksum_ok(bytes([0x46, 0xB9]))
    assert not segment_checksum_ok(bytes([0x46, 0xB8]))
    assert not segment_checksum_ok(b"")
    assert checksum_byte(bytes([0x46])) == 0xB9
    assert checksum_byte(bytes([0x00, 0x01])) == 0xFE
    assert parity_bit(bytes([0xC6])) == 1
    assert parity_bit(b"") is None


@pytest.mark.parametrize("last", range(256))
def test_checksum_accepts_only_sum_ff(last):
    data = bytes([0x46, last])
    ok = segment_checksum_ok(data)
    assert ok == (last == 0xB9)
    assert validate(txn(data, [0x00, 0x01, 0xFE])).command_ok == ok


def test_exactly_one_checksum_byte_per_prefix():
    for prefix in (b"\x46", b"\x00\x01", b"\xC6\x12\x34", bytes(range(40))):
        valid = [last for last in range(256) if segment_checksum_ok(prefix + bytes([last]))]
        assert valid == [checksum_byte(prefix)]


def test_valid_transaction():
    t = txn([0x46, 0xB9], [0x00, 0x01, 0xFE])
    v = validate(t)
    assert v.ok
    assert v.parity_ok
    assert v.bad_segment is None
    assert validation_events(t, v) == []


def test_bad_command_checksum():
    t = txn([0x46, 0xB8], [0x00, 0x01, 0xFE])
    v = validate(t)
    assert not v.ok
    assert v.bad_segment == "command"

    events = validation_events(t, v)
    assert len(events) == 1
    assert isinstance(events[0], ChecksumError)
    assert events[0].which_segment == "command"
    assert events[0].cmd_bytes == bytes([0x46, 0xB8])


def test_both_checksums_bad():
    v = validate(txn([0x46, 0xB8], [0x00, 0x01, 0xFD]))
    assert v.bad_segment == "both"
    assert "command checksum" in v.failures
    assert "response checksum" in v.failures


def test_parity_mismatch_still_decodable():
    t = txn([0xC6, 0x39], [0x00, 0x01, 0xFE])
    v = validate(t)
    assert v.checksum_ok
    assert not v.parity_ok
    assert v.ok

    events = validation_events(t, v)
    assert len(events) == 1
    assert isinstance(events[0], ParityMismatch)
    assert (events[0].cmd_parity, events[0].rsp_parity) == (1, 0)


def test_empty_command_is_malformed():
    t = txn([], [0x05, 0xFA])
    v = validate(t)
    assert v.malformed
    assert not v.ok

    events = validation_events(t, v)
    assert len(events) == 1
    assert isinstance(events[0], Malformed)
    assert "empty command" in events[0].reason
    assert events[0].raw_bytes == bytes([0x05, 0xFA])


def test_short_segment_is_malformed():
    v = validate(txn([0x46], [0x00, 0x01, 0xFE]))
    assert v.malformed
    assert v.failures == ["short command (1 byte)"]


def test_truncated_is_malformed():
    t = txn([0x46, 0xB9], [0x00, 0x01], rsp_len=200)
    v = validate(t)
    assert v.malformed
    assert v.truncated

    event = validation_events(t, v)[0]
    assert isinstance(event, Malformed)
    assert event.truncated
    assert event.reason == "truncated"

import pytest

from framesync import Segment, Transaction
from events import Decoded, RawDump
from protocol import (decode_transaction, bcd, bcd_number, le16, sign_flag,
                      text_field, vu_segments, FRONT_PANEL_RULES)
from busdata import make_txn


def raw(cmd, rsp):
    cmd, rsp = bytes(cmd), bytes(rsp)
    return Transaction(Segment(cmd, len(cmd)), Segment(rsp, len(rsp)), index=7)


# ====================================================================
#  Field helpers
# ====================================================================

def test_bcd():
    assert bcd(0x59) == 59
    assert bcd(0x00) == 0
    with pytest.raises(ValueError):
        bcd(0x5A)
    with pytest.raises(ValueError):
        bcd(0xA0)


def test_bcd_number_is_big_endian():
    assert bcd_number(b"\x12\x34") == 1234
    assert bcd_number(b"\x00\x07") == 7


def test_le16_and_sign_flag():
    assert le16(0x34, 0x12) == 0x1234
    assert sign_flag(0x85, 0x80) == (True, 0x05)
    assert sign_flag(0x05, 0x80) == (False, 0x05)


def test_text_field_strips_padding():
    assert text_field(b"HELLO\x00\x00\x00") == "HELLO"
    assert text_field(b"A B   ") == "A B"


def test_vu_segments():
    assert vu_segments(0) == 40
    assert vu_segments(10) == 30
    assert vu_segments(94) == 1
    assert vu_segments(95) == 0
    assert vu_segments(0xFF) == 0


# ====================================================================
#  Drawer status
# ====================================================================

def test_drawer_closed():
    event = decode_transaction(raw([0x46, 0xB9], [0x00, 0x01, 0xFE]))
    assert isinstance(event, Decoded)
    assert event.opcode == 0x46
    assert event.tag == "drawer closed"
    assert event.fields["drawer"] == "CLOSED"
    assert event.index == 7


def test_drawer_open():
    event = decode_transaction(raw([0x46, 0xB9], [0x00, 0x02, 0xFD]))
    assert event.tag == "drawer open"


def test_drawer_unknown_state_is_raw():
    cmd, rsp = bytes([0x46, 0xB9]), bytes([0x00, 0x09, 0xF6])
    event = decode_transaction(raw(cmd, rsp))
    assert isinstance(event, RawDump)
    assert event.reason == "unrecognized value"
    assert event.cmd_bytes == cmd
    assert event.rsp_bytes == rsp


def test_length_mismatch_is_raw():
    event = decode_transaction(raw([0x46, 0xB9], [0x00, 0x01, 0x02, 0xFC]))
    assert isinstance(event, RawDump)
    assert event.reason.startswith("length mismatch")
    assert event.rsp_bytes == bytes([0x00, 0x01, 0x02, 0xFC])


def test_error_status_is_raw():
    event = decode_transaction(raw([0x46, 0xB9], [0x05, 0x01, 0xF9]))
    assert isinstance(event, RawDump)
    assert event.reason == "status 0x05"


def test_unknown_opcode_is_raw():
    event = decode_transaction(make_txn([0x7E], [0x00, 0x11], parity=1))
    assert isinstance(event, RawDump)
    assert event.opcode == 0x7E
    assert event.reason == "unknown opcode"


def test_parity_bit_does_not_change_opcode():
    event = decode_transaction(make_txn([0x46], [0x00, 0x02], parity=1))
    assert event.tag == "drawer open"


# ====================================================================
#  Other opcodes
# ====================================================================

def test_panel_key():
    event = decode_transaction(make_txn([0x10, 0x11], [0x00], parity=1))
    assert event.tag == "key next"
    assert event.fields["source"] == "panel"


def test_remote_key():
    event = decode_transaction(make_txn([0x10, 0x25], [0x00], parity=1))
    assert event.tag == "remote 5"
    assert event.fields["source"] == "remote"


def test_unknown_key_is_raw():
    event = decode_transaction(make_txn([0x10, 0x7A], [0x00], parity=1))
    assert isinstance(event, RawDump)


def test_repeat_mode_reads_command():
    event = decode_transaction(make_txn([0x23, 0x02], [0x00], parity=1))
    assert event.tag == "repeat track"


def test_search_directions():
    fwd = decode_transaction(make_txn([0x37, 0x03, 0x00], [0x00], parity=1))
    assert fwd.fields["direction"] == "forward"
    assert fwd.fields["tracks"] == 3

    back = decode_transaction(make_txn([0x37, 0xEC, 0x00], [0x00], parity=1))
    assert back.fields["direction"] == "backward"
    assert back.fields["tracks"] == 2

    bad = decode_transaction(make_txn([0x37, 0x80, 0x00], [0x00], parity=1))
    assert isinstance(bad, RawDump)
    assert "out of range" in bad.reason


def test_poll_status_flags():
    event = decode_transaction(make_txn([0x41], [0x00, 0x12, 0x20, 0x41]))
    assert event.tag == "poll status"
    assert event.fields["flags"] == ["DRAWER", "TRACK", "TAPETIME"]
    assert event.fields["sector"] == 1
    assert event.body == bytes([0x00, 0x12, 0x20, 0x41])


def test_poll_status_tacho_bits_not_named():
    event = decode_transaction(make_txn([0x41], [0x00, 0x06, 0x00, 0x00]))
    assert event.fields["flags"] == []


def test_function_state_unnamed_code_still_decodes():
    named = decode_transaction(make_txn([0x58], [0x00, 0x04]))
    assert named.tag == "function play"

    event = decode_transaction(make_txn([0x58], [0x00, 0x34]))
    assert isinstance(event, Decoded)
    assert event.tag == "function 0x34"
    assert event.fields == {"function": None, "code": 0x34}


def test_system_status_and_marker_unnamed_codes():
    system = decode_transaction(make_txn([0x44], [0x00, 0x0D]))
    assert system.tag == "system 0x0D"
    assert system.fields["status"] is None

    marker = decode_transaction(make_txn([0x57], [0x00, 0x0E]))
    assert marker.tag == "marker 0x0E"


def test_tape_type():
    event = decode_transaction(make_txn([0x49], [0x00, 0x4C]))
    assert event.tag == "tape dcc90"
    assert event.fields["minutes"] == 90
    assert event.fields["dcc"]
    assert event.fields["record_allowed"]

    protected = decode_transaction(make_txn([0x49], [0x00, 0x44]))
    assert not protected.fields["record_allowed"]

    empty = decode_transaction(make_txn([0x49], [0x00, 0x7B]))
    assert empty.tag == "tape no cassette"
    assert not empty.fields["cassette"]
    assert empty.fields["minutes"] is None


def test_short_text():
    text = b"HELLO".ljust(12, b"\x00")
    event = decode_transaction(make_txn([0x53, 0xFA], b"\x00" + text, parity=1))
    assert event.tag == "short text"
    assert event.fields["kind"] == "TRACK"
    assert event.fields["text"] == "HELLO"


def test_set_text_unknown_selector_still_decodes():
    text = b"MY DECK".ljust(40, b" ")
    event = decode_transaction(make_txn(b"\x36\x10" + text, [0x00], parity=1))
    assert event.tag == "set text"
    assert event.fields["kind"] is None
    assert event.fields["text"] == "MY DECK"


def test_vu():
    event = decode_transaction(make_txn([0x5E], [0x00, 0x00, 0x5F]))
    assert event.fields["left_level"] == 40
    assert event.fields["right_level"] == 0
    assert event.fields["right_db"] == -95


def test_head_errors():
    pattern = decode_transaction(make_txn([0x5F, 0x10], [0x00, 0xA0], parity=1))
    assert pattern.fields["heads"] == [1, 3]

    single = decode_transaction(make_txn([0x5F, 0x03], [0x00, 0x04], parity=1))
    assert single.fields["percent"] == 20


def test_deck_time():
    rsp = [0x00, 0x03, 0x12, 0x81, 0x23, 0x45, 0x00, 0x01, 0x23, 0x00]
    event = decode_transaction(make_txn([0x60], rsp))
    assert event.tag == "deck time"
    f = event.fields
    assert f["track"] == 12
    assert f["negative"]
    assert (f["hours"], f["minutes"], f["seconds"]) == (1, 23, 45)
    assert f["elapsed"] == -(3600 + 23 * 60 + 45)
    assert f["counter"] == 123


def test_deck_time_bad_bcd_is_raw():
    rsp = [0x00, 0x03, 0x12, 0x01, 0x7A, 0x45, 0x00, 0x01, 0x23, 0x00]
    event = decode_transaction(make_txn([0x60], rsp))
    assert isinstance(event, RawDump)
    assert "0x7A" in event.reason


def test_every_rule_is_consistent():
    for opcode, rule in FRONT_PANEL_RULES.items():
        assert 0 <= opcode <= 0x7F
        assert rule.cmd_len >= 1
        assert rule.rsp_len >= 1

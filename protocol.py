"""DCC Front Panel Bus - Decode Table
==================================
Opcode-indexed decoding of validated transactions on the bus between the
front panel controller and the digital board of a DCC recorder (DCC-730,
DCC-951, FW-68).  All protocol knowledge is kept as structured data: a
table maps each opcode to a DecodeRule with the expected command and
response body lengths and an interpreter.

Segment layout (after the synchronizer):
    command:  [opcode|parity] [params...] [checksum]
    response: [status|parity] [data...]   [checksum]

"Body" below means the segment without its checksum and with the parity bit
stripped, so cmd[0] is the opcode and rsp[0] the status byte (0 = OK).

Decoding never guesses: a length mismatch, a non-zero status byte, an
enumerated value missing from its table or a malformed numeric field all
turn the transaction into a RawDump with the captured bytes intact.
System status, marker type and function state are the exception: their
tables are known to be incomplete, so other codes decode unnamed.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from framesync import Transaction
from events import Decoded, RawDump
from changefilter import masked, field_key


# ====================================================================
#  DECODE RULES & FIELD HELPERS
# ====================================================================

Interpretation = Optional[Tuple[str, dict]]


@dataclass(frozen=True)
class DecodeRule:
    name: str
    cmd_len: int        # command body length, opcode included
    rsp_len: int        # response body length, status byte included
    interpret: Callable[[bytes, bytes], Interpretation]
    success: int = 0    # expected status byte


def bcd(byte: int) -> int:
    """Decode one packed-BCD byte (0x59 -> 59)."""
    hi, lo = byte >> 4, byte & 0x0F
    if hi > 9 or lo > 9:
        raise ValueError(f"invalid BCD byte 0x{byte:02X}")
    return hi * 10 + lo


def bcd_number(data) -> int:
    """Big-endian multi-byte BCD (b"\\x12\\x34" -> 1234)."""
    value = 0
    for b in data:
        value = value * 100 + bcd(b)
    return value


def le16(lo: int, hi: int) -> int:
    return (hi << 8) | lo


def sign_flag(byte: int, flag: int) -> Tuple[bool, int]:
    """Split a sign-magnitude byte: (negative, byte with the flag bit cleared)."""
    return bool(byte & flag), byte & ~flag & 0xFF


def bit_names(byte: int, names: Dict[int, str]) -> list:
    return [name for bit, name in sorted(names.items()) if byte & bit]


def text_field(data) -> str:
    """Fixed-length text field; trailing NULs and padding removed."""
    return bytes(data).decode("latin-1").rstrip("\x00 ")


def simple(tag):
    """Interpreter for commands without parameters or return data."""
    return lambda cmd, rsp: (tag, {})


def lookup(prefix, table, key, source="rsp", known_only=True):
    """Interpreter for a single enumerated byte (cmd[1] or rsp[1]).

    Codes missing from `table` are unrecognized, unless known_only=False:
    then they decode with the name left as None and the code kept.
    """
    def interpret(cmd, rsp):
        code = (cmd if source == "cmd" else rsp)[1]
        name = table.get(code)
        if name is None:
            if known_only:
                return None
            return f"{prefix} 0x{code:02X}", {key: None, "code": code}
        return f"{prefix} {name.lower()}", {key: name, "code": code}
    return interpret


# ====================================================================
#  PROTOCOL KNOWLEDGE DATABASE
# ====================================================================

# -- 0x10 key codes.  Front panel keys match the numbers shown by the
#    Key Test program of the service mode. --
PANEL_KEYS = {
    0x01: "SIDE A/B",
    0x02: "OPEN/CLOSE",
    0x03: "EDIT",
    0x04: "REC/PAUSE",
    0x05: "STOP",
    0x06: "REPEAT",
    0x07: "DOLBY",
    0x08: "SCROLL",
    0x09: "RECLEVEL-",
    0x0A: "APPEND",
    0x0B: "PLAY",
    0x0C: "PRESETS",
    0x0D: "TIME",
    0x0E: "TEXT",
    0x0F: "RECLEVEL+",
    0x10: "RECORD",
    0x11: "NEXT",
    0x12: "PREV",
}

# Remote control.  PAUSE, COUNTER RESET and WRITE MARK never show up.
REMOTE_KEYS = {
    0x1C: "FFWD",
    0x1D: "OPEN/CLOSE",
    0x1F: "REWIND",
    0x20: "0",
    0x21: "1",
    0x22: "2",
    0x23: "3",
    0x24: "4",
    0x25: "5",
    0x26: "6",
    0x27: "7",
    0x28: "8",
    0x29: "9",
    0x2C: "STANDBY",
}

REPEAT_MODES = {1: "NONE", 2: "TRACK", 3: "ALL"}

# 0x38, issued after the TIME key
TIME_MODES = {
    1: "TOTAL TIME",            # prerecorded / DCC / analog
    2: "TOTAL REMAINING TIME",  # prerecorded
    3: "TRACK TIME",            # prerecorded / super user
    5: "REMAINING TIME",        # user tapes
}

SET_TEXT_KINDS = {0xFD: "DECK ID", 0xFA: "TITLE"}

LONG_TEXT_KINDS = {
    0xFA: "TRACK",
    0xE0: "TOC TRACK NAME",
    0x01: "LYRICS/ALBUM TITLE",
    0x03: "ARTIST",
}

SHORT_TEXT_KINDS = {0xFA: "TRACK"}

# -- 0x41 poll status bits.  Bits 0x02/0x04 of the first byte toggle
#    constantly while the tape runs (tacho) and are left out. --
POLL_FLAGS_A = {
    0x01: "SYSTEM",     # issue Get System Status
    0x08: "FUNCTION",   # issue Get Function State
    0x10: "DRAWER",     # issue Get Drawer Status
    0x20: "EOT",
    0x40: "BOT",
    0x80: "FAST",       # winding without heads applied
}
POLL_FLAGS_B = {
    0x01: "LYRICS",
    0x02: "MARKER",
    0x04: "B4",
    0x08: "B8",
    0x10: "B10",
    0x20: "TRACK",
    0x40: "ABSTIME",
    0x80: "TOTALTIME",
}
POLL_FLAGS_C = {
    0x40: "TAPETIME",
    0x80: "DECKTIME",
}
POLL_TACHO_MASK = 0xF9

SYSTEM_STATUS = {
    0x06: "CHECK DIG IN",
    0x10: "CLEAN HEADS",
    0x1F: "POWER FAIL",
}
# Also seen, meaning unknown: 0x0D (A/B on remote right after open/close twice),
# 0x1A (DCC175 recorded tape in service mode)

DRAWER_STATES = {
    1: "CLOSED",
    2: "OPEN",
    3: "CLOSING",
    4: "OPENING",
    5: "BLOCKED",
    6: "UNKNOWN",
}

# -- 0x49 tape type.  Codes match the "Switches Test" service program. --
TAPE_TYPES = {
    0x00: "ACC FERRO",
    0x02: "ACC CHROME",
    0x04: "PDCC",
    0x14: "UDCC(PROT)",
    0x1C: "UDCC",
    0x24: "DCC120(PROT)",
    0x2C: "DCC120",
    0x34: "DCC105(PROT)",
    0x3C: "DCC105",
    0x44: "DCC90(PROT)",
    0x4C: "DCC90",
    0x54: "DCC75(PROT)",
    0x5C: "DCC75",
    0x64: "DCC60(PROT)",
    0x6C: "DCC60",
    0x74: "DCC45(PROT)",
    0x7B: "NO CASSETTE",
    0x7C: "DCC45",
}
TAPE_NO_CASSETTE = 0x01
TAPE_CHROME = 0x02
TAPE_DCC = 0x04
TAPE_RECORD_ALLOWED = 0x08
TAPE_HOLES_MASK = 0x70

# Length holes "5"/"4"/"3" (bits 0x40/0x20/0x10) -> minutes
TAPE_LENGTHS = {
    0x70: 45,
    0x60: 60,
    0x50: 75,
    0x40: 90,
    0x30: 105,
    0x20: 120,
}

MARKER_TYPES = {
    0x02: "TRACK",
    0x03: "REVERSE",        # switch to side B
    0x07: "SKIP +1",
    0x0B: "REUSE",          # end of recording, reusable tape follows
    0x0D: "INTRO SKIP",
    0x14: "BEGIN SECTOR",   # after reversing
}

# 0x58, drives the symbols on the front panel display
FUNCTION_STATES = {
    0x01: "STANDBY",
    0x02: "STOP",
    0x03: "READ",
    0x04: "PLAY",
    0x0A: "FFWD",
    0x0B: "REWIND",
    0x11: "NEXT",
    0x12: "PREV",
    0x15: "ARRIVING BACKWARD",
    0x16: "ARRIVING FORWARD",
    0x2A: "END OF RECORDING",
    0x30: "SKIP INTRO",
}
# Also seen, meaning unknown: 0x22-0x26 (title recording), 0x0E 0x19 0x32 0x34
# (APPEND), 0x2B (REC/PAUSE?)

ALL_HEADS = 0x10            # 0x5F parameter requesting the per-head bit pattern
HEAD_ERROR_PERCENT = 5      # service manual: error count x5 = percent

# VU value (negative dB, 0..95) -> lit segments on a 40-segment meter
VU_SEGMENTS = (
    40, 39, 38, 37, 36, 35, 34, 33, 32, 31,
    30, 29, 28, 27, 26, 25, 24, 23, 22, 21,
    20, 19, 18, 18, 17, 16, 15, 14, 13, 12,
    12, 11, 11, 10, 9, 9, 8, 7, 7, 6,
    6, 5, 5, 5, 4, 4, 4, 3, 3, 3,
    3, 2, 2, 2, 2, 2, 2, 2, 2, 2,
    2, 1, 1, 1, 1, 1, 1, 1, 1, 1,
    1, 1, 1, 1, 1, 1, 1, 1, 1, 1,
    1, 1, 1, 1, 1, 1, 1, 1, 1, 1,
    1, 1, 1, 1, 1, 0,
)
VU_SILENCE = 95

DECK_TIME_NEGATIVE = 0x80   # sign flag in the hours byte of 0x60


# ====================================================================
#  INTERPRETERS
# ====================================================================

def _key(cmd, rsp):
    code = cmd[1]
    if code in PANEL_KEYS:
        name, source = PANEL_KEYS[code], "panel"
    elif code in REMOTE_KEYS:
        name, source = REMOTE_KEYS[code], "remote"
    else:
        return None
    prefix = "key" if source == "panel" else "remote"
    return f"{prefix} {name.lower()}", {"key": name, "source": source, "code": code}


def _sector(cmd, rsp):
    return "sector", {"sector": cmd[1]}


def _go_to_track(cmd, rsp):
    return "go to track", {"track": cmd[1], "param": cmd[2]}


def _set_text(cmd, rsp):
    kind = SET_TEXT_KINDS.get(cmd[1])
    return "set text", {"kind": kind, "selector": cmd[1],
                        "text": text_field(cmd[2:]), "raw": bytes(cmd[2:])}


def _search(cmd, rsp):
    # Forward searches count up from 1; backward ones count down from
    # 0xEE ("-0"), 0xED is -1 and so on.
    n = cmd[1]
    if n < 100:
        direction, tracks = "forward", n
    elif 0xEE - 99 <= n <= 0xEE:
        direction, tracks = "backward", 0xEE - n
    else:
        raise ValueError(f"search offset 0x{n:02X} out of range")
    return "search", {"direction": direction, "tracks": tracks, "param": cmd[2]}


def _poll_status(cmd, rsp):
    a, b, c = rsp[1], rsp[2], rsp[3]
    flags = bit_names(a, POLL_FLAGS_A) + bit_names(b, POLL_FLAGS_B) + bit_names(c, POLL_FLAGS_C)
    return "poll status", {"flags": flags, "sector": c & 0x03, "status": bytes(rsp[1:4])}


def _tape_type(cmd, rsp):
    code = rsp[1]
    name = TAPE_TYPES.get(code)
    if name is None:
        return None
    dcc = bool(code & TAPE_DCC)
    minutes = TAPE_LENGTHS.get(code & TAPE_HOLES_MASK) if dcc else None
    return f"tape {name.lower()}", {
        "tape": name,
        "code": code,
        "cassette": not code & TAPE_NO_CASSETTE,
        "chrome": bool(code & TAPE_CHROME),
        "dcc": dcc,
        "record_allowed": bool(code & TAPE_RECORD_ALLOWED),
        "minutes": minutes,
    }


def _text(tag, kinds):
    def interpret(cmd, rsp):
        return tag, {"kind": kinds.get(cmd[1]), "selector": cmd[1],
                     "text": text_field(rsp[1:]), "raw": bytes(rsp[1:])}
    return interpret


def _track_text(tag):
    def interpret(cmd, rsp):
        return tag, {"track": cmd[1], "text": text_field(rsp[1:]), "raw": bytes(rsp[1:])}
    return interpret


def _controller_id(cmd, rsp):
    return "deck controller id", {"id": bytes(rsp[1:5]).hex(" ").upper()}


def _target_track(cmd, rsp):
    return "target track", {"track": rsp[1]}


def vu_segments(value: int) -> int:
    return VU_SEGMENTS[value] if value < VU_SILENCE else 0


def _vu(cmd, rsp):
    left, right = rsp[1], rsp[2]
    return "vu", {
        "left_db": -left,
        "right_db": -right,
        "left_level": vu_segments(left),
        "right_level": vu_segments(right),
    }


def _head_errors(cmd, rsp):
    request = cmd[1]
    if request == ALL_HEADS:
        # Head 1 is the top bit
        heads = [i + 1 for i in range(8) if rsp[1] & (0x80 >> i)]
        return "head errors", {"heads": heads, "pattern": rsp[1]}
    return "head errors", {"track": request, "errors": rsp[1],
                           "percent": rsp[1] * HEAD_ERROR_PERCENT}


def _deck_time(cmd, rsp):
    # BCD throughout: [1] state [2] track [3] flags/hours [4] min [5] sec
    # [6] ? [7..8] counter [9] ?
    negative, hours_byte = sign_flag(rsp[3], DECK_TIME_NEGATIVE)
    hours = bcd(hours_byte & 0x0F)
    minutes = bcd(rsp[4])
    seconds = bcd(rsp[5])
    total = hours * 3600 + minutes * 60 + seconds
    return "deck time", {
        "state": rsp[1],
        "track": bcd(rsp[2]),
        "negative": negative,
        "hours": hours,
        "minutes": minutes,
        "seconds": seconds,
        "elapsed": -total if negative else total,
        "time_flags": rsp[3] >> 4,
        "counter": bcd_number(rsp[7:9]),
        "unknown": (rsp[6], rsp[9]),
    }


def _prerec_info(cmd, rsp):
    return "prerecorded tape info", {
        "flags": rsp[1],
        "tracks": bcd(rsp[2]),
        "hours": bcd(rsp[3]),
        "minutes": bcd(rsp[4]),
        "seconds": bcd(rsp[5]),
    }


# ====================================================================
#  FRONT PANEL DECODE TABLE
# ====================================================================

FRONT_PANEL_RULES = {
    0x02: DecodeRule("DECK STOP", 1, 1, simple("deck stop")),
    0x03: DecodeRule("DECK PLAY", 1, 1, simple("deck play")),
    0x05: DecodeRule("DECK FFWD", 1, 1, simple("deck ffwd")),
    0x06: DecodeRule("DECK REWIND", 1, 1, simple("deck rewind")),
    0x0B: DecodeRule("DECK CLOSE", 1, 1, simple("deck close")),
    0x0C: DecodeRule("DECK OPEN", 1, 1, simple("deck open")),
    0x10: DecodeRule("KEY/RC", 2, 1, _key),
    0x23: DecodeRule("REPEAT MODE", 2, 1, lookup("repeat", REPEAT_MODES, "mode", source="cmd")),
    0x2A: DecodeRule("SECTOR", 2, 1, _sector),
    0x2F: DecodeRule("GO TO TRACK", 3, 1, _go_to_track),
    0x36: DecodeRule("SET TEXT", 42, 1, _set_text),
    0x37: DecodeRule("SEARCH", 3, 1, _search),
    0x38: DecodeRule("TIME MODE", 2, 1, lookup("time mode", TIME_MODES, "mode", source="cmd")),
    0x39: DecodeRule("READ DCC", 1, 1, simple("read dcc")),
    0x3C: DecodeRule("WRITE DCC", 1, 1, simple("write dcc")),
    0x41: DecodeRule("POLL STATUS", 1, 4, _poll_status),
    0x44: DecodeRule("GET SYSTEM STATUS", 1, 2, lookup("system", SYSTEM_STATUS, "status", known_only=False)),
    0x46: DecodeRule("GET DRAWER STATUS", 1, 2, lookup("drawer", DRAWER_STATES, "drawer")),
    0x49: DecodeRule("TAPE TYPE", 1, 2, _tape_type),
    0x51: DecodeRule("GET LONG TEXT", 2, 41, _text("long text", LONG_TEXT_KINDS)),
    0x52: DecodeRule("GET TRACK TITLE", 2, 41, _track_text("track title")),
    0x53: DecodeRule("GET SHORT TEXT", 2, 13, _text("short text", SHORT_TEXT_KINDS)),
    0x54: DecodeRule("GET SHORT TRACK TITLE", 2, 13, _track_text("short track title")),
    0x55: DecodeRule("GET DECK ID", 1, 5, _controller_id),
    0x57: DecodeRule("MARKER TYPE", 1, 2, lookup("marker", MARKER_TYPES, "marker", known_only=False)),
    0x58: DecodeRule("FUNCTION STATE", 1, 2, lookup("function", FUNCTION_STATES, "function", known_only=False)),
    0x5D: DecodeRule("GET TARGET TRACK", 1, 2, _target_track),
    0x5E: DecodeRule("VU", 1, 3, _vu),
    0x5F: DecodeRule("HEAD ERRORS", 2, 2, _head_errors),
    0x60: DecodeRule("DECK TIME", 1, 10, _deck_time),
    0x61: DecodeRule("PREREC TAPE INFO", 1, 6, _prerec_info),
}

# Opcodes polled continuously; see changefilter.ChangeFilter
FRONT_PANEL_CHATTY = {
    0x41: masked(0xFF, POLL_TACHO_MASK, 0xFF, 0xFF),
    0x5E: field_key("left_level", "right_level"),
    0x60: field_key("track"),
}


# ====================================================================
#  DISPATCHER
# ====================================================================

def decode_transaction(txn: Transaction, rules=None):
    """Decode a checksum-valid transaction into Decoded or RawDump.

    `rules` defaults to the front panel table.
    """
    if rules is None:
        rules = FRONT_PANEL_RULES

    cmd = txn.command.body
    rsp = txn.response.body
    opcode = txn.opcode

    def dump(reason):
        return RawDump(opcode=opcode, cmd_bytes=txn.command.data,
                       rsp_bytes=txn.response.data, reason=reason, index=txn.index)

    rule = rules.get(opcode)
    if rule is None:
        return dump("unknown opcode")
    if len(cmd) != rule.cmd_len or len(rsp) != rule.rsp_len:
        return dump(f"length mismatch ({len(cmd)}/{len(rsp)}, "
                    f"expected {rule.cmd_len}/{rule.rsp_len})")
    if rsp[0] != rule.success:
        return dump(f"status 0x{rsp[0]:02X}")

    try:
        result = rule.interpret(cmd, rsp)
    except ValueError as exc:
        return dump(str(exc))
    if result is None:
        return dump("unrecognized value")

    tag, fields = result
    return Decoded(opcode=opcode, tag=tag, fields=fields, body=rsp, index=txn.index)

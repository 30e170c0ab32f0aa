"""DDU-2113 Deck Controller Bus - Decode Table
===========================================
Traffic between the digital board microcontroller and the DDU-2113 deck
controller (DCC-730, DCC-951, FW-68).  The physical link is a 38400 8N1
serial pair; once the two lines are merged into byte-pairs it frames
exactly like the front panel bus and uses the same rule type and
dispatcher (protocol.decode_transaction).

Observations behind this table:
    * Commands are opcode + checksum, sent about every 35 ms.
    * Init 0x01 gets a single 00 byte back, with no checksum.
    * The status poll 0x45 gets an 11-byte reply, version 0x42 a 5-byte
      reply, every other command just status + checksum.
    * The parity bit of the command alternates and is echoed in the reply.
"""

from protocol import DecodeRule, simple, le16, sign_flag, bit_names
from changefilter import whole_body


# ====================================================================
#  PROTOCOL KNOWLEDGE DATABASE
# ====================================================================

# 0x45 byte 2, one letter per bit (bit 0 = H) as printed by the bus monitor
STATUS_FLAGS = {
    0x01: "H",    # heads engaged / fast forward?
    0x02: "T",    # time valid?
    0x04: "W",    # winding
    0x08: "R",    # reverse search
    0x10: "S",    # speed valid?
    0x20: "L",    # drawer loading
    0x40: "D",    # drawer opening
    0x80: "?",
}

STATUS_FLAG_NAMES = {
    "H": "heads",
    "T": "time valid",
    "W": "winding",
    "R": "reverse search",
    "S": "speed valid",
    "L": "drawer loading",
    "D": "drawer opening",
    "?": "unused",
}

WIND_STOP = 0
WIND_PLAY = 1
WIND_NEEDS_CALIBRATION = 255

COUNTER_MAX = 9999          # absolute tape counter wraps in decimal
HOURS_NEGATIVE = 0x08       # sign flag in the hours byte, not two's complement


def flag_string(byte: int) -> str:
    """Render status flags as "?DLSRWTH" with '_' for cleared bits."""
    return "".join(STATUS_FLAGS[1 << i] if byte & (1 << i) else "_" for i in reversed(range(8)))


def _version(cmd, rsp):
    return "version", {"version": bytes(rsp[1:4]).hex(" ").upper()}


def _status(cmd, rsp):
    # [1] deck status [2] flags [3] wind speed [4..5] counter, little endian
    # [6] sign+hours [7] minutes [8] seconds [9] ?
    counter = le16(rsp[4], rsp[5])
    if counter > COUNTER_MAX:
        raise ValueError(f"tape counter {counter} out of range")

    speed = rsp[3]
    if speed == WIND_STOP:
        motion = "STOP"
    elif speed == WIND_PLAY:
        motion = "PLAY"
    elif speed == WIND_NEEDS_CALIBRATION:
        motion = "CALIBRATE"
    else:
        motion = "WIND"

    negative, hours = sign_flag(rsp[6], HOURS_NEGATIVE)
    minutes, seconds = rsp[7], rsp[8]
    if hours > 7 or minutes > 59 or seconds > 59:
        raise ValueError(f"bad tape time {rsp[6]:02X}:{minutes:02X}:{seconds:02X}")
    total = hours * 3600 + minutes * 60 + seconds

    letters = bit_names(rsp[2], STATUS_FLAGS)
    return "deck status", {
        "deck": rsp[1],
        "flags": [STATUS_FLAG_NAMES[c] for c in letters],
        "flag_string": flag_string(rsp[2]),
        "motion": motion,
        "speed": speed,
        "counter": counter,
        "negative": negative,
        "hours": hours,
        "minutes": minutes,
        "seconds": seconds,
        "elapsed": -total if negative else total,
        "unknown": rsp[9],
    }


# ====================================================================
#  DECK CONTROL DECODE TABLE
# ====================================================================

# 0x01 (init) is answered with a lone 00 byte, no checksum, so it never
# validates and shows up as a Malformed short response instead.
DECK_CONTROL_RULES = {
    0x02: DecodeRule("STOP", 1, 1, simple("deck stop")),
    0x03: DecodeRule("PLAY", 1, 1, simple("deck play")),
    0x05: DecodeRule("FFWD", 1, 1, simple("deck ffwd")),
    0x06: DecodeRule("REWIND", 1, 1, simple("deck rewind")),
    0x07: DecodeRule("NEXT", 1, 1, simple("deck next")),        # ffwd with head contact
    0x08: DecodeRule("PREV", 1, 1, simple("deck prev")),        # rewind with head contact
    0x0B: DecodeRule("LOAD", 1, 1, simple("drawer load")),
    0x0C: DecodeRule("EJECT", 1, 1, simple("drawer open")),
    0x0D: DecodeRule("REVERSE", 1, 1, simple("deck reverse")),  # other side
    0x0E: DecodeRule("RESET COUNTER", 1, 1, simple("counter reset")),
    0x42: DecodeRule("VERSION", 1, 4, _version),
    0x45: DecodeRule("STATUS", 1, 10, _status),
    0x46: DecodeRule("CALIBRATE", 1, 1, simple("counter calibrate")),
}

DECK_CONTROL_CHATTY = {
    0x45: whole_body,
}


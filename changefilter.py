"""changefilter.py — Suppress repeated status reports from chatty opcodes.

Some opcodes are polled many times per second and nearly always return the
same thing.  The filter remembers, per opcode, a comparison key of the last
event it let through and drops events whose key has not changed.  Which part
of an event counts is decided per opcode by a key function, e.g. masking
out tachometer bits that flip on every poll.
"""

from typing import Callable, Dict, Hashable

from events import Decoded

KeyFunc = Callable[[Decoded], Hashable]


def masked(*masks: int) -> KeyFunc:
    """Key: the response body ANDed byte-by-byte with `masks`.

    Bytes past the end of `masks` are compared unmasked.
    """
    def key(event):
        body = event.body
        return tuple(b & masks[i] if i < len(masks) else b for i, b in enumerate(body))
    return key


def field_key(*names: str) -> KeyFunc:
    """Key: the values of the named decoded fields."""
    def key(event):
        return tuple(event.fields.get(n) for n in names)
    return key


def whole_body(event) -> bytes:
    return bytes(event.body)


class ChangeFilter:
    """Per-opcode change detection for decoded events.

    keys     opcode -> key function; opcodes not listed always pass
    verbose  let everything through (the cache is still kept up to date)
    """

    def __init__(self, keys: Dict[int, KeyFunc] = None, verbose: bool = False):
        self.keys = dict(keys or {})
        self.verbose = verbose
        self.suppressed = 0
        self._last: Dict[int, Hashable] = {}

    def passes(self, event) -> bool:
        """True if `event` should be emitted."""
        if not isinstance(event, Decoded):
            return True
        key_func = self.keys.get(event.opcode)
        if key_func is None:
            return True

        value = key_func(event)
        changed = event.opcode not in self._last or self._last[event.opcode] != value
        if changed:
            self._last[event.opcode] = value
        if changed or self.verbose:
            return True
        self.suppressed += 1
        return False

    def last(self, opcode):
        return self._last.get(opcode)

    def reset(self):
        """Forget every cached value; the next report of each opcode passes."""
        self._last.clear()
        self.suppressed = 0

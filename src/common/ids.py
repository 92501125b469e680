from __future__ import annotations

import secrets
import threading
import time

_lock = threading.Lock()
_last = 0

PREFIXES = {"session": "ses", "message": "msg", "part": "prt"}


def ascending(kind: str) -> str:
    """Return a new id that sorts after every id previously issued in this process.

    The id is the prefix, a 16 digit hex counter derived from the wall clock and
    a short random suffix. Plain string comparison orders ids by creation.
    """
    global _last
    prefix = PREFIXES.get(kind, kind)
    with _lock:
        value = max(_last + 1, int(time.time() * 1000) * 0x1000)
        _last = value
    return f"{prefix}_{value:016x}{secrets.token_hex(4)}"

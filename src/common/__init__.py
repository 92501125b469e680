from common import llm
from common.cancel import CancellationToken, CancelledError
from common.ids import ascending
from common.jsonio import load_json, atomic_write_json
from common.text_template import render_template

__all__ = [
    "llm",
    "CancellationToken",
    "CancelledError",
    "ascending",
    "load_json",
    "atomic_write_json",
    "render_template",
]

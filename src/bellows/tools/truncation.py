import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from common.ids import ascending

logger = logging.getLogger(__name__)

MAX_LINES = 2000
MAX_BYTES = 50 * 1024
OUTPUT_DIR = Path(tempfile.gettempdir()) / "bellows-tool-output"


@dataclass(frozen=True)
class Truncated:
    content: str
    truncated: bool
    output_path: Path | None = None


def truncate_output(
    text: str,
    max_lines: int = MAX_LINES,
    max_bytes: int = MAX_BYTES,
    output_dir: Path | None = None,
) -> Truncated:
    """Cap tool output at ``max_lines``/``max_bytes``, keeping the head.

    The complete output is written to ``output_dir`` so the model can page
    through it with the read or grep tools.
    """
    lines = text.split("\n")
    if len(lines) <= max_lines and len(text.encode("utf-8")) <= max_bytes:
        return Truncated(content=text, truncated=False)

    kept: list[str] = []
    size = 0
    for line in lines[:max_lines]:
        line_size = len(line.encode("utf-8")) + 1
        if size + line_size > max_bytes:
            break
        kept.append(line)
        size += line_size
    removed = len(lines) - len(kept)

    target_dir = output_dir or OUTPUT_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"{ascending('tool')}.txt"
    path.write_text(text, encoding="utf-8")
    logger.debug(f"Truncated tool output ({removed} lines removed), full copy at {path}")

    hint = (
        f"\n\n... {removed} lines truncated ...\n\n"
        f"The tool call succeeded but the output was truncated. Full output saved to: {path}\n"
        "Use grep to search the full content or read with offset/limit to view specific sections."
    )
    return Truncated(content="\n".join(kept) + hint, truncated=True, output_path=path)

"""
File writing for conf steps: optional backup, parent creation, write, chmod.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from ..document import RenderedFile
from ..exceptions import ConfIOError

logger = logging.getLogger(__name__)

DEFAULT_MODE = 0o644
MODE_PATTERN = re.compile(r"^(?:0o)?([0-7]{1,4})$")


def parse_mode(mode: Optional[str]) -> Optional[int]:
    """
    Parse an octal permission string such as '600', '0600' or '0o755'.

    Returns None when no mode is given and DEFAULT_MODE when it is unparsable.
    """
    if mode is None:
        return None
    match = MODE_PATTERN.match(str(mode).strip())
    if not match:
        logger.warning(f"Invalid file mode {mode!r}, falling back to {DEFAULT_MODE:o}")
        return DEFAULT_MODE
    return int(match.group(1), 8)


def backup_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".bak")


def write_rendered_file(rendered: RenderedFile) -> Path:
    """
    Write a rendered conf step to disk.

    If backup is set and the destination exists it is copied to
    '<dest>.bak' first; a failed copy aborts before anything is written.

    Returns:
        The destination path

    Raises:
        ConfIOError: On any backup, mkdir, write or chmod failure
    """
    dest = Path(rendered.dest)

    if rendered.backup and dest.exists():
        bak = backup_path(dest)
        try:
            shutil.copy2(dest, bak)
        except OSError as e:
            raise ConfIOError(f"Backup copy {dest} -> {bak} failed: {e}") from e
        print(f"[conf] backup -> {bak}")

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfIOError(f"Cannot create directory {dest.parent}: {e}") from e

    try:
        dest.write_text(rendered.content, encoding="utf-8")
    except OSError as e:
        raise ConfIOError(f"Cannot write {dest}: {e}") from e

    mode = parse_mode(rendered.mode)
    if mode is not None:
        try:
            dest.chmod(mode)
        except OSError as e:
            raise ConfIOError(f"Cannot set mode {mode:o} on {dest}: {e}") from e

    logger.debug(f"Wrote {len(rendered.content)} characters to {dest}")
    return dest

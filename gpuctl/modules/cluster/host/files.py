"""File helpers shared by the host collaborators and the installer."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional, Union

logger = logging.getLogger("gpuctl.host.files")

PathLike = Union[str, Path]


def read_text(path: PathLike, default: str = '') -> str:
    """Return the file content, or ``default`` when it does not exist."""
    try:
        return Path(path).read_text(encoding='utf-8')
    except FileNotFoundError:
        return default


def write_text_file(
    path: PathLike,
    content: str,
    mode: Optional[int] = None,
    dry_run: bool = False,
) -> bool:
    """Write a text file if its content differs from what is on disk.

    Args:
        path: Destination path; parent directories are created
        content: Full file content
        mode: Optional permission bits applied after writing
        dry_run: If True, only log what would be written

    Returns:
        bool: True if the file was (or would be) created or changed
    """
    path = Path(path)
    changed = not path.exists() or read_text(path) != content

    if dry_run:
        if changed:
            logger.info(f"[DRY RUN] Would write {path}")
        return changed

    if changed:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(content)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        logger.debug(f"Wrote {path}")
    elif mode is not None and (path.stat().st_mode & 0o777) != mode:
        os.chmod(path, mode)
    return changed


def write_json_file(path: PathLike, data: Any, mode: Optional[int] = None, dry_run: bool = False) -> bool:
    return write_text_file(path, json.dumps(data, indent=2, sort_keys=True) + "\n", mode=mode, dry_run=dry_run)


def read_json_file(path: PathLike) -> Any:
    """Read a JSON file, returning None when it does not exist."""
    text = read_text(path, default='')
    if not text.strip():
        return None
    return json.loads(text)


def edit_lines(
    path: PathLike,
    editor: Callable[[str], str],
    dry_run: bool = False,
) -> bool:
    """Rewrite a line-oriented system file through a pure editing function."""
    current = read_text(path)
    updated = editor(current)
    if updated == current:
        return False
    return write_text_file(path, updated, dry_run=dry_run)


def ensure_directory(path: PathLike, mode: int = 0o755, dry_run: bool = False) -> None:
    path = Path(path)
    if path.is_dir():
        return
    if dry_run:
        logger.info(f"[DRY RUN] Would create directory {path}")
        return
    path.mkdir(parents=True, exist_ok=True, mode=mode)

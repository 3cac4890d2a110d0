"""
File Utilities
Cross-platform file operations with safe filename handling
"""
import os
import re
import tempfile
from pathlib import Path
from typing import Union


def sanitize_filename(filename: str, max_length: int = 255) -> str:
    """
    Create a safe filename for cross-platform use

    Removes/replaces characters that are problematic on Windows, macOS, or Linux

    Args:
        filename: Original filename
        max_length: Maximum filename length (default 255)

    Returns:
        Sanitized filename
    """
    # Windows: < > : " / \ | ? * plus control characters
    invalid_chars = r'[<>:"/\\|?*\x00-\x1f]'
    safe = re.sub(invalid_chars, '_', filename)

    # Leading/trailing periods and spaces break on Windows
    safe = safe.strip('. ')

    reserved = {
        'CON', 'PRN', 'AUX', 'NUL',
        'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
        'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9'
    }

    name_parts = safe.rsplit('.', 1)
    base_name = name_parts[0].upper()

    if base_name in reserved:
        safe = f"_{safe}"

    if len(safe) > max_length:
        if len(name_parts) > 1:
            ext = name_parts[1]
            safe = name_parts[0][:max_length - len(ext) - 1] + '.' + ext
        else:
            safe = safe[:max_length]

    return safe or 'unnamed'


def ensure_path_exists(path: Union[str, Path]) -> Path:
    """
    Ensure a directory path exists, creating it if necessary

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> Path:
    """
    Write bytes so readers never observe a half-written file

    The payload goes to a temp file in the target directory, is flushed to
    disk, then renamed over the destination.

    Args:
        path: Destination file
        data: Payload

    Returns:
        Destination Path
    """
    path = Path(path)
    ensure_path_exists(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    return path


def atomic_write_text(path: Union[str, Path], text: str, encoding: str = "utf-8") -> Path:
    """Text flavour of atomic_write_bytes"""
    return atomic_write_bytes(path, text.encode(encoding))

"""Resource path helpers.

Supports normal execution and bundled executables (e.g., PyInstaller via _MEIPASS).
"""
from __future__ import annotations

import os
import sys
from pathlib import Path


def resource_root() -> Path:
    # PyInstaller unpacks bundled data next to the marqueefetch package
    meipass = getattr(sys, "_MEIPASS", None)
    if meipass:
        return Path(meipass) / "marqueefetch"
    # package root: .../marqueefetch
    return Path(__file__).resolve().parent.parent


def resource_path(*parts: str | os.PathLike[str]) -> str:
    return str(resource_root().joinpath(*map(str, parts)))

"""Path helpers shared by the configuration and pipeline modules."""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Optional


def _running_in_wsl() -> bool:
    if os.name == "nt":
        return False
    if os.environ.get("WSL_INTEROP") or os.environ.get("WSL_DISTRO_NAME"):
        return True
    try:
        release = Path("/proc/sys/kernel/osrelease").read_text(encoding="utf-8")
    except OSError:
        release = platform.uname().release
    return "microsoft" in release.lower()


def normalise_pathlike(value: str | Path | None) -> Optional[Path]:
    """Convert Windows-style paths to POSIX when running on WSL."""

    if value is None:
        return None

    text = str(value).strip()
    if text == "":
        return Path(text)

    # Windows drive letter (e.g., D:\data)
    if len(text) >= 2 and text[1] == ":" and _running_in_wsl():
        drive = text[0].lower()
        remainder = text[2:].lstrip("\\/")
        base = Path("/mnt") / drive
        if remainder:
            for part in remainder.replace("\\", "/").split("/"):
                if part:
                    base /= part
        return base

    if "\\" in text and os.name != "nt":
        text = text.replace("\\", "/")

    return Path(text)


def normalise_prefix(value: str | Path) -> str:
    """Normalise a file-name prefix without losing a trailing separator.

    Prefixes are joined to suffixes by plain string concatenation
    (``prefix + "0GenericAffine.mat"``), so ``out/`` and ``out`` address
    different files and the distinction must survive normalisation.
    """

    text = str(value).strip()
    if text == "":
        raise ValueError("prefix must not be empty")
    trailing = text.endswith(("/", "\\"))
    normalised = str(normalise_pathlike(text))
    if trailing:
        normalised += "/"
    return normalised


def prefix_directory(prefix: str) -> Path:
    """Directory that will hold files written under ``prefix``."""

    if prefix.endswith("/"):
        return Path(prefix)
    return Path(prefix).parent

"""Pytest bootstrap: adds local src packages to `sys.path`.

Lets the tests run from a fresh checkout without installing the service.
"""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Iterable


def _extend_sys_path(paths: Iterable[Path]) -> None:
    for p in paths:
        str_path = str(p)
        if str_path not in sys.path:
            sys.path.insert(0, str_path)


def _collect_src_paths(root: Path) -> list[Path]:
    candidates: list[Path] = [
        root / "services" / "realtime" / "src",
    ]
    return [p for p in candidates if p.exists()]


# Runs when conftest is imported
_extend_sys_path(_collect_src_paths(Path(__file__).parent.resolve()))

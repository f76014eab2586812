"""Read an uploaded or dropped file into text."""
from __future__ import annotations

import os

MAX_FILE_BYTES = 1024 * 1024


def read_code_file(path: str, max_bytes: int = MAX_FILE_BYTES) -> str:
    if not os.path.isfile(path):
        raise ValueError(f"Not a file: {path}")
    size = os.path.getsize(path)
    if size > max_bytes:
        raise ValueError(f"File too large ({size} bytes, limit {max_bytes})")
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        return handle.read()

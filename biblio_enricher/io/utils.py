from __future__ import annotations

import os
import tempfile
from typing import Callable


def _atomic_write(write_fn: Callable[[str], None], out_path: str, newline) -> None:
    d = os.path.dirname(out_path) or "."
    os.makedirs(d, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=d, newline=newline, encoding="utf-8") as tf:
        tmp_path = tf.name
    try:
        write_fn(tmp_path)
        os.replace(tmp_path, out_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def atomic_write_csv(write_fn: Callable[[str], None], out_path: str) -> None:
    _atomic_write(write_fn, out_path, newline="")


def atomic_write_text(write_fn: Callable[[str], None], out_path: str) -> None:
    _atomic_write(write_fn, out_path, newline=None)

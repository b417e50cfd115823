"""Time utilities."""
from __future__ import annotations
import time

def epoch_millis() -> int:
    return int(time.time() * 1000)

__all__ = ["epoch_millis"]

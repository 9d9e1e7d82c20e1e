"""Generate XCFrameworks by driving ``xcodebuild`` archive and merge steps."""
from __future__ import annotations

from .cli import main

__all__ = ["main"]

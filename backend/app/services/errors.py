from __future__ import annotations

from typing import Optional


class ScanError(RuntimeError):
    """Base class for scan pipeline failures."""


class PageLoadError(ScanError):
    """A single page could not be reached or rendered."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


class BrowserSessionError(ScanError):
    """The browser session could not be established at all."""


class ScanTimeoutError(ScanError):
    def __init__(self, max_duration_seconds: float) -> None:
        super().__init__(f"Scan exceeded maximum duration of {int(max_duration_seconds)} seconds")
        self.max_duration_seconds = max_duration_seconds


class PersistenceError(ScanError):
    def __init__(self, message: str, *, attempts: int = 0, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class InvalidTransition(ScanError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal scan transition {current} -> {target}")
        self.current = current
        self.target = target

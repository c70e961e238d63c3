"""Fatal error types raised by the reconstruction engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class HistoryError(Exception):
    """Raised when history cannot be reconstructed from the supplied graph."""

    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

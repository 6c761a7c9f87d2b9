"""
core/errors.py
──────────────
Error taxonomy for the decision and proposal pipeline.

    ValidationError         malformed ctx, non-positive quantity, bad address
    DuplicateProposalError  a PENDING order already exists for the triple
    UpstreamError           Chain Gateway / queue I/O failure or timeout
    ConfigurationError      malformed rule-set, wallet in two portfolios
    InvalidTransitionError  proposal status already left PENDING

A guard returning 0 is *not* an error and has no exception here.
"""
from __future__ import annotations

from typing import Any, Optional


class TradingError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        extra = ", ".join(f"{k}={v!r}" for k, v in self.details.items())
        return f"{self.message} ({extra})"


class ValidationError(TradingError, ValueError):
    """Input rejected before any guard or queue call."""


class DuplicateProposalError(TradingError):
    """A PENDING proposal already exists for (gamer, side, holder)."""

    def __init__(self, gamer: str, side: str, holder: Optional[str]) -> None:
        super().__init__(
            "pending proposal already exists",
            details={"gamer": gamer, "side": side, "holder": holder},
        )
        self.gamer = gamer
        self.side = side
        self.holder = holder


class UpstreamError(TradingError):
    """Chain Gateway or durable-queue call failed or timed out."""


class ConfigurationError(TradingError):
    """Fatal start-up configuration problem."""


class InvalidTransitionError(TradingError):
    """Proposal status change not allowed from its current state."""

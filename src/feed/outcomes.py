"""
Stage outcomes.

Every pipeline stage returns a ``StageOutcome``: the value to continue with
plus whether that value is the stage's documented fallback. Callers never need
a try/except around a stage; they inspect ``is_degraded`` instead.

    outcome = generator.generate(user_id)
    if outcome.is_degraded:
        degraded_stages.append(outcome.stage)
    candidates = outcome.value
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class StageOutcome(Generic[T]):
    """Result of one pipeline stage."""

    value: T
    stage: str
    is_degraded: bool = False
    reason: Optional[str] = None

    @classmethod
    def success(cls, stage: str, value: T) -> "StageOutcome[T]":
        return cls(value=value, stage=stage)

    @classmethod
    def fallback(cls, stage: str, value: T, reason: str) -> "StageOutcome[T]":
        """The stage failed and ``value`` is its documented default."""
        return cls(value=value, stage=stage, is_degraded=True, reason=reason)

    @property
    def ok(self) -> bool:
        return not self.is_degraded

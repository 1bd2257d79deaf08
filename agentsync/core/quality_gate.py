"""Minimum-quality checks applied to learnings put forward for review."""

from dataclasses import dataclass, field
from typing import Optional

from agentsync.core.config import settings


@dataclass
class QualityGateResult:
    """Outcome of running a learning through the gate."""
    passed: bool
    reason: str = ""

    @property
    def review_notes(self) -> str:
        return f"Auto-rejected: {self.reason}" if not self.passed else ""


@dataclass
class SubmissionQualityGate:
    """Length checks on title, description and trigger condition.

    Checks run in that order and the first failure is reported.
    """
    min_title_length: int = field(default_factory=lambda: settings.learning_min_title_length)
    min_description_length: int = field(
        default_factory=lambda: settings.learning_min_description_length
    )
    min_trigger_length: int = field(default_factory=lambda: settings.learning_min_trigger_length)

    def check(
        self,
        title: Optional[str],
        description: Optional[str],
        trigger_condition: Optional[str],
    ) -> QualityGateResult:
        if len(title or "") < self.min_title_length:
            return QualityGateResult(
                passed=False,
                reason=f"Title too short (min {self.min_title_length} chars)",
            )

        if len(description or "") < self.min_description_length:
            return QualityGateResult(
                passed=False,
                reason=f"Description too short (min {self.min_description_length} chars)",
            )

        if trigger_condition is None or len(trigger_condition) < self.min_trigger_length:
            return QualityGateResult(
                passed=False,
                reason="Missing or too short trigger condition",
            )

        return QualityGateResult(passed=True)

    def check_learning(self, learning) -> QualityGateResult:
        """Run the gate against a Learning row."""
        return self.check(learning.title, learning.description, learning.trigger_condition)

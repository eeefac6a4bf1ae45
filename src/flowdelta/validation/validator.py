"""Bounded validate-and-repair loop for rendered diagrams."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, Field

from flowdelta.exceptions import ValidationError
from flowdelta.validation.checkers import SyntaxChecker
from flowdelta.validation.repairs import DEFAULT_REPAIRS, Repair

logger = logging.getLogger("flowdelta.validation")

MAX_REPAIRS = 3


class ValidationOutcome(BaseModel):
    """Result of validating one diagram text."""

    ok: bool
    text: str  # the validated (possibly repaired) text, or the last attempt
    message: str = ""
    attempts: int = 0  # syntax checks performed
    repairs: list[str] = Field(default_factory=list)  # names of repairs applied


class DiagramValidator:
    """Validates diagram text with a SyntaxChecker, repairing up to `max_repairs` times.

    The initial check plus each repair's re-check make at most
    `max_repairs + 1` checks. Repairs are tried in order; the first one that
    changes the text is applied. When none changes it, validation stops early.
    """

    def __init__(
        self,
        checker: SyntaxChecker,
        repairs: Sequence[Repair] = DEFAULT_REPAIRS,
        max_repairs: int = MAX_REPAIRS,
    ) -> None:
        self.checker = checker
        self.repairs = list(repairs)
        self.max_repairs = max_repairs

    def validate(self, text: str) -> ValidationOutcome:
        """Check `text`, applying repairs while it fails.

        Never raises for invalid text; see `ensure_valid` for the raising form.
        """
        applied: list[str] = []
        result = self.checker.check(text)
        attempts = 1

        while not result.ok and len(applied) < self.max_repairs:
            repaired, name = self._repair_once(text)
            if repaired is None:
                logger.debug(f"No repair applies after {attempts} check(s): {result.message}")
                break
            logger.info(f"Diagram failed validation ({result.message}); applied repair '{name}'")
            text = repaired
            applied.append(name)
            result = self.checker.check(text)
            attempts += 1

        if result.ok and applied:
            logger.info(f"Diagram validated after {len(applied)} repair(s)")
        return ValidationOutcome(
            ok=result.ok,
            text=text,
            message=result.message,
            attempts=attempts,
            repairs=applied,
        )

    def ensure_valid(self, text: str) -> str:
        """Return the validated text.

        Raises:
            ValidationError: If the text still fails after the repair budget.
        """
        outcome = self.validate(text)
        if not outcome.ok:
            raise ValidationError(outcome.message or "diagram is invalid", attempts=outcome.attempts)
        return outcome.text

    def _repair_once(self, text: str) -> tuple[str | None, str]:
        for repair in self.repairs:
            repaired = repair(text)
            if repaired != text:
                return repaired, getattr(repair, "__name__", "repair")
        return None, ""

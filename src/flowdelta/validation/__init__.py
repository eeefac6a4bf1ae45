"""Syntax validation of rendered diagrams."""

from flowdelta.validation.checkers import (
    BuiltinChecker,
    CallableChecker,
    CheckResult,
    MermaidCliChecker,
    SyntaxChecker,
    create_checker,
)
from flowdelta.validation.repairs import DEFAULT_REPAIRS
from flowdelta.validation.validator import DiagramValidator, ValidationOutcome

__all__ = [
    "BuiltinChecker",
    "CallableChecker",
    "CheckResult",
    "DEFAULT_REPAIRS",
    "DiagramValidator",
    "MermaidCliChecker",
    "SyntaxChecker",
    "ValidationOutcome",
    "create_checker",
]

"""Syntax checkers: the collaborators that decide whether diagram text renders."""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path

from pydantic import BaseModel

from flowdelta.config import ValidatorConfig
from flowdelta.exceptions import CheckerUnavailableError, ParseError

logger = logging.getLogger("flowdelta.validation")

UNQUOTED_LABEL_RE = re.compile(r"\b\w+(?:\[|\(|\{)(?!\")[^\]\)\}\"]*?[\"<>]")
QUOTED_RE = re.compile(r'"[^"]*"')


class CheckResult(BaseModel):
    """Outcome of one syntax check."""

    ok: bool
    message: str = ""


class TransientCheckError(Exception):
    """The checker did not answer (timeout, no output); the call may be retried."""


class SyntaxChecker(ABC):
    """Abstract base for syntax checkers.

    Subclasses implement `_check`. `check` wraps it with bounded retries and
    exponential backoff for transient failures.
    """

    name = "checker"

    def __init__(
        self,
        retries: int = 2,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.retries = retries
        self.backoff = backoff
        self._sleep = sleep
        self.calls = 0

    def check(self, text: str) -> CheckResult:
        attempt = 0
        while True:
            self.calls += 1
            try:
                return self._check(text)
            except TransientCheckError as e:
                if attempt >= self.retries:
                    return CheckResult(ok=False, message=f"{self.name} did not respond: {e}")
                delay = self.backoff * (2**attempt)
                logger.warning(f"{self.name} failed ({e}); retrying in {delay:.1f}s")
                self._sleep(delay)
                attempt += 1

    @abstractmethod
    def _check(self, text: str) -> CheckResult:
        """Check `text` once. Raise TransientCheckError when the answer is unknown."""
        ...


class MermaidCliChecker(SyntaxChecker):
    """Runs the Mermaid CLI (`mmdc`) on the diagram and reports its verdict."""

    name = "mmdc"

    def __init__(
        self,
        command: list[str] | None = None,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(retries=retries, backoff=backoff, sleep=sleep)
        self.command = list(command or ["mmdc"])
        self.timeout = timeout

    def _check(self, text: str) -> CheckResult:
        with tempfile.TemporaryDirectory(prefix="flowdelta-") as tmp:
            source = Path(tmp) / "diagram.mmd"
            target = Path(tmp) / "diagram.svg"
            source.write_text(text, encoding="utf-8")
            try:
                result = subprocess.run(
                    [*self.command, "--quiet", "-i", str(source), "-o", str(target)],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError as e:
                raise CheckerUnavailableError(
                    f"Mermaid CLI not found: {self.command[0]}. "
                    "Install @mermaid-js/mermaid-cli or set validator.backend to 'builtin'."
                ) from e
            except subprocess.TimeoutExpired as e:
                raise TransientCheckError(f"timed out after {self.timeout}s") from e

            if result.returncode == 0:
                if not target.exists():
                    raise TransientCheckError("no output produced")
                return CheckResult(ok=True)
            message = (result.stderr or result.stdout).strip()
            if not message:
                raise TransientCheckError(f"exit code {result.returncode} without output")
            return CheckResult(ok=False, message=_first_error_lines(message))


class BuiltinChecker(SyntaxChecker):
    """Offline check: the text must parse, and flowchart labels must be quoted
    where they contain characters Mermaid's lexer treats specially."""

    name = "builtin"

    def _check(self, text: str) -> CheckResult:
        from flowdelta.diagram.core import parse
        from flowdelta.diagram.models import DiagramKind

        try:
            graph = parse(text)
        except ParseError as e:
            return CheckResult(ok=False, message=f"Parse error on {e}")
        if graph.kind != DiagramKind.FLOW:
            return CheckResult(ok=True)

        for lineno, line in enumerate(text.splitlines(), start=1):
            m = UNQUOTED_LABEL_RE.search(QUOTED_RE.sub('""', line))
            if m:
                return CheckResult(
                    ok=False,
                    message=f"Parse error on line {lineno}: special character in unquoted label "
                    f"'{m.group(0)}'",
                )
        conflict = _conflicting_declaration(text)
        if conflict:
            return CheckResult(ok=False, message=conflict)
        return CheckResult(ok=True)


class CallableChecker(SyntaxChecker):
    """Wraps a plain `validate(text)` function.

    The function returns None or True for valid text, or an error message
    (or False) for invalid text. A call that outlives `timeout` seconds, or
    raises TimeoutError, counts as transient. A timed-out call is abandoned,
    not interrupted.
    """

    name = "callable"

    def __init__(
        self, func: Callable[[str], object], timeout: float | None = 10.0, **kwargs
    ) -> None:
        super().__init__(**kwargs)
        self.func = func
        self.timeout = timeout

    def _check(self, text: str) -> CheckResult:
        try:
            verdict = self._call(text)
        except TimeoutError as e:
            raise TransientCheckError(str(e) or "timeout") from e
        if verdict is None or verdict is True:
            return CheckResult(ok=True)
        if isinstance(verdict, CheckResult):
            return verdict
        return CheckResult(ok=False, message=str(verdict) if verdict is not False else "invalid")

    def _call(self, text: str) -> object:
        if self.timeout is None:
            return self.func(text)
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="flowdelta-check")
        try:
            future = pool.submit(self.func, text)
            try:
                return future.result(timeout=self.timeout)
            except FuturesTimeoutError as e:
                raise TimeoutError(f"timed out after {self.timeout}s") from e
        finally:
            pool.shutdown(wait=False)


def create_checker(config: ValidatorConfig) -> SyntaxChecker:
    """Create a syntax checker from configuration.

    Raises:
        ValueError: If the backend is unknown.
    """
    backend = config.backend.lower()
    if backend == "mmdc":
        return MermaidCliChecker(
            command=config.command,
            timeout=config.timeout,
            retries=config.retries,
            backoff=config.backoff,
        )
    elif backend == "builtin":
        return BuiltinChecker(retries=config.retries, backoff=config.backoff)
    else:
        raise ValueError(f"Unknown validator backend: '{backend}'. Supported backends: mmdc, builtin")


def _first_error_lines(message: str, limit: int = 4) -> str:
    lines = [line for line in message.splitlines() if line.strip()]
    for i, line in enumerate(lines):
        if "error" in line.lower():
            return "\n".join(lines[i : i + limit])
    return "\n".join(lines[:limit])


DECLARATION_RE = re.compile(r"(?<![\w\"])(\w+)(\[\[|\[\(|\(\(\(|\(\(|\(\[|\{\{|\[|\(|\{)\"([^\"]*)\"")


def _conflicting_declaration(text: str) -> str:
    """Report a flowchart node id declared twice with different labels."""
    seen: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if stripped.startswith(("%%", "subgraph")):
            continue
        for m in DECLARATION_RE.finditer(stripped):
            node_id, label = m.group(1), m.group(3)
            if node_id in seen and seen[node_id] != label:
                return f"Parse error on line {lineno}: node '{node_id}' declared twice with different labels"
            seen.setdefault(node_id, label)
    return ""

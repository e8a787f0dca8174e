"""Error types and validation results shared by the analysis engines."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "AnalysisError",
    "QueryExecutionError",
    "ValidationIssue",
    "ValidationResult",
]


class AnalysisError(Exception):
    """Base class for errors raised by this package."""


class QueryExecutionError(AnalysisError):
    """A query could not be executed by the semantic layer."""

    def __init__(
        self,
        message: str,
        *,
        query: Any = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.query = query
        self.status_code = status_code

    @classmethod
    def wrap(cls, exc: BaseException, *, query: Any = None) -> QueryExecutionError:
        """Return ``exc`` unchanged if it already is one, else wrap it."""

        if isinstance(exc, cls):
            return exc
        return cls(str(exc) or type(exc).__name__, query=query)


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation finding.

    ``type`` is a stable machine-readable code (``missing_merge_key``,
    ``too_few_steps``) and ``index`` points at the offending query or step
    when there is one.
    """

    type: str
    message: str
    index: int | None = None
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def merge(self, other: ValidationResult) -> ValidationResult:
        return ValidationResult(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
        )


@dataclass
class _IssueCollector:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def error(self, type_: str, message: str, *, index: int | None = None, details: Iterable[str] = ()) -> None:
        self.errors.append(ValidationIssue(type_, message, index, tuple(details)))

    def warn(self, type_: str, message: str, *, index: int | None = None, details: Iterable[str] = ()) -> None:
        self.warnings.append(ValidationIssue(type_, message, index, tuple(details)))

    def result(self) -> ValidationResult:
        return ValidationResult(errors=tuple(self.errors), warnings=tuple(self.warnings))

"""Map processing failures to a dead-letter category."""

from collections.abc import Callable, Iterable
from dataclasses import dataclass

import pydantic

from orderrelay.core.errors import DataIntegrityError, MessageValidationError
from orderrelay.core.records import ErrorType

_VALIDATION_NAME_HINTS = ("validation", "illegalargument", "valueerror")
_VALIDATION_TEXT_HINTS = ("validation failed", "invalid")
_INTEGRITY_NAME_HINTS = ("dataintegrity", "integrity", "constraint")
_INTEGRITY_TEXT_HINTS = ("duplicate key", "foreign key", "constraint violation", "unique constraint")


@dataclass(frozen=True)
class ClassificationRule:
    """Extension point: errors matching ``predicate`` map to ``error_type``."""

    predicate: Callable[[BaseException], bool]
    error_type: ErrorType


class ErrorClassifier:
    """Decide whether a failure is permanent or needs investigation.

    Typed errors raised at the point of failure are authoritative. Custom
    rules come next, then a best-effort heuristic over the exception's class
    name and message for errors raised by code we do not own.
    """

    def __init__(
        self,
        rules: Iterable[ClassificationRule] = (),
        use_heuristics: bool = True,
    ) -> None:
        self._rules = list(rules)
        self._use_heuristics = use_heuristics

    def add_rule(self, rule: ClassificationRule) -> None:
        self._rules.append(rule)

    def classify(self, error: BaseException) -> ErrorType:
        typed = self._classify_typed(error)
        if typed is not None:
            return typed

        for rule in self._rules:
            if rule.predicate(error):
                return rule.error_type

        if self._use_heuristics:
            return self._classify_by_text(error)
        return ErrorType.UNKNOWN

    @staticmethod
    def _classify_typed(error: BaseException) -> ErrorType | None:
        if isinstance(error, (MessageValidationError, pydantic.ValidationError)):
            return ErrorType.VALIDATION_ERROR
        if isinstance(error, DataIntegrityError):
            return ErrorType.DATA_INTEGRITY
        return None

    @staticmethod
    def _classify_by_text(error: BaseException) -> ErrorType:
        name = type(error).__name__.lower()
        text = str(error).lower()

        if any(h in name for h in _VALIDATION_NAME_HINTS) or any(
            h in text for h in _VALIDATION_TEXT_HINTS
        ):
            return ErrorType.VALIDATION_ERROR

        if any(h in name for h in _INTEGRITY_NAME_HINTS) or any(
            h in text for h in _INTEGRITY_TEXT_HINTS
        ):
            return ErrorType.DATA_INTEGRITY

        return ErrorType.UNKNOWN

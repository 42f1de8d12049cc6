from __future__ import annotations


class RecurringError(Exception):
    """Base class for recurring-rule errors surfaced to callers."""

    kind = "error"


class NotFoundError(RecurringError):
    kind = "not_found"


class ForbiddenError(RecurringError):
    kind = "forbidden"


class OccurrenceAlreadyProcessed(RecurringError):
    """Raised when another pass already materialized this occurrence."""

    kind = "already_processed"

    def __init__(self, rule_id: int, occurrence: object) -> None:
        super().__init__(f"Rule {rule_id} already processed for {occurrence}.")
        self.rule_id = rule_id
        self.occurrence = occurrence


class RuleProcessingTimeout(RecurringError):
    kind = "timeout"

    def __init__(self, rule_id: int, elapsed: float, limit: float) -> None:
        super().__init__(
            f"Rule {rule_id} took {elapsed:.2f}s, exceeding the {limit:g}s limit."
        )
        self.rule_id = rule_id

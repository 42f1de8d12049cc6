from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from backend.categories import ExpenseCategory
from backend.errors import (
    OccurrenceAlreadyProcessed,
    RecurringError,
    RuleProcessingTimeout,
)
from backend.ledger import (
    LedgerAppender,
    LedgerEntry,
    append_ledger_record,
    occurrence_recorded,
)
from backend.recurrence import next_occurrence
from backend.recurring_store import RecurringRule, advance_rule, fetch_due_rules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingFailure:
    rule_id: int
    kind: str
    reason: str


@dataclass
class ProcessResult:
    scanned: int = 0
    materialized: int = 0
    expenses: int = 0
    incomes: int = 0
    failures: List[ProcessingFailure] = field(default_factory=list)


@dataclass(frozen=True)
class RuleOutcome:
    rule_id: int
    record_id: int
    occurrence: date
    next_occurrence: date
    is_active: bool


_LOCK_TIMEOUT_MARKERS = ("database is locked", "statement timeout", "lock timeout")


def plan_advance(rule: RecurringRule, today: date) -> tuple[date, bool]:
    """Return the cursor and active flag a rule should carry after ``today``.

    A next occurrence past the end date deactivates the rule and leaves the
    cursor on the occurrence just materialized.
    """
    candidate = next_occurrence(rule.schedule, rule.next_occurrence, today)
    if rule.end_date is not None and candidate > rule.end_date:
        return rule.next_occurrence, False
    return candidate, rule.is_active


def _limit_statements(conn, rule_timeout: float) -> None:
    """Make the driver give up on lock waits once the rule's budget is spent."""
    millis = max(int(rule_timeout * 1000), 1)
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql(f"PRAGMA busy_timeout = {millis}")
    elif conn.dialect.name == "postgresql":
        conn.exec_driver_sql(f"SET LOCAL statement_timeout = {millis}")


def _is_lock_timeout(exc: OperationalError) -> bool:
    message = str(exc.orig).lower()
    return any(marker in message for marker in _LOCK_TIMEOUT_MARKERS)


def _occurrence_recorded(engine: Engine, rule: RecurringRule) -> bool:
    with engine.begin() as conn:
        return occurrence_recorded(conn, rule.category, rule.id, rule.next_occurrence)


def _skip_recorded_occurrence(engine: Engine, rule: RecurringRule, today: date) -> None:
    """Advance past an occurrence whose ledger record already exists.

    Uses the same conditional update as a normal pass, so a rule another
    writer already moved or paused is left alone.
    """
    new_cursor, is_active = plan_advance(rule, today)
    with engine.begin() as conn:
        moved = advance_rule(conn, rule, new_cursor, is_active, today)
    if moved:
        logger.info(
            "Recurring rule %s already recorded %s; cursor moved to %s",
            rule.id,
            rule.next_occurrence,
            new_cursor,
        )


def process_rule(
    engine: Engine,
    rule: RecurringRule,
    today: date,
    *,
    appender: LedgerAppender = append_ledger_record,
    rule_timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> RuleOutcome:
    """Materialize the rule's current occurrence and advance its cursor.

    Both writes share one transaction; any error rolls both back. When the
    ledger already holds this occurrence the cursor is still moved on, then
    ``OccurrenceAlreadyProcessed`` is raised.
    """
    started = clock()
    occurrence = rule.next_occurrence
    try:
        with engine.begin() as conn:
            if rule_timeout:
                _limit_statements(conn, rule_timeout)
            record_id = appender(
                conn,
                LedgerEntry(
                    user_id=rule.user_id,
                    category=rule.category,
                    amount=rule.amount,
                    entry_date=occurrence,
                    description=rule.description,
                    recurring_rule_id=rule.id,
                ),
            )

            new_cursor, is_active = plan_advance(rule, today)
            if not advance_rule(conn, rule, new_cursor, is_active, today):
                raise OccurrenceAlreadyProcessed(rule.id, occurrence)

            if rule_timeout:
                elapsed = clock() - started
                if elapsed > rule_timeout:
                    raise RuleProcessingTimeout(rule.id, elapsed, rule_timeout)
    except IntegrityError as exc:
        if not _occurrence_recorded(engine, rule):
            raise
        _skip_recorded_occurrence(engine, rule, today)
        raise OccurrenceAlreadyProcessed(rule.id, occurrence) from exc
    except OperationalError as exc:
        if not rule_timeout or not _is_lock_timeout(exc):
            raise
        raise RuleProcessingTimeout(rule.id, clock() - started, rule_timeout) from exc

    return RuleOutcome(
        rule_id=rule.id,
        record_id=record_id,
        occurrence=occurrence,
        next_occurrence=new_cursor,
        is_active=is_active,
    )


def process_due_rules(
    engine: Engine,
    today: date,
    *,
    appender: LedgerAppender = append_ledger_record,
    rule_timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ProcessResult:
    with engine.begin() as conn:
        due_rules = fetch_due_rules(conn, today)
    return process_rules(
        engine,
        due_rules,
        today,
        appender=appender,
        rule_timeout=rule_timeout,
        clock=clock,
    )


def process_rules(
    engine: Engine,
    rules: List[RecurringRule],
    today: date,
    *,
    appender: LedgerAppender = append_ledger_record,
    rule_timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ProcessResult:
    """Process already-selected rules, isolating each rule's failure."""
    result = ProcessResult(scanned=len(rules))
    for rule in rules:
        try:
            outcome = process_rule(
                engine,
                rule,
                today,
                appender=appender,
                rule_timeout=rule_timeout,
                clock=clock,
            )
        except RecurringError as exc:
            logger.warning("Recurring rule %s not processed (%s): %s", rule.id, exc.kind, exc)
            result.failures.append(ProcessingFailure(rule.id, exc.kind, str(exc)))
            continue
        except Exception as exc:
            logger.warning("Recurring rule %s failed", rule.id, exc_info=True)
            result.failures.append(
                ProcessingFailure(rule.id, RecurringError.kind, str(exc) or type(exc).__name__)
            )
            continue

        result.materialized += 1
        if isinstance(rule.category, ExpenseCategory):
            result.expenses += 1
        else:
            result.incomes += 1
        if not outcome.is_active:
            logger.info("Recurring rule %s reached its end date on %s", rule.id, outcome.occurrence)

    logger.info(
        "Processed recurring rules for %s: scanned=%d materialized=%d failed=%d",
        today.isoformat(),
        result.scanned,
        result.materialized,
        len(result.failures),
    )
    return result

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from errors import NotFoundError
from models import (
    Property,
    RecurringPosting,
    RecurringTransaction,
    Transaction,
    TransactionSource,
    signed_amount_cents,
)
from periods import (
    add_months,
    compare_months,
    current_month,
    due_date_for_month,
    month_in_range,
    months_between,
    normalize_month,
    parse_month,
)


logger = logging.getLogger(__name__)


class PostingStatus(str, Enum):
    posted = "posted"
    already_posted = "already_posted"


@dataclass(frozen=True)
class PostingOutcome:
    rule_id: int
    month: str
    status: PostingStatus
    transaction_id: Optional[int] = None


@dataclass
class PostingSummary:
    target_month: str
    posted_count: int = 0
    skipped_count: int = 0
    months_processed: list[str] = field(default_factory=list)
    outcomes: list[PostingOutcome] = field(default_factory=list)


@dataclass(frozen=True)
class ScheduledRule:
    rule: RecurringTransaction
    due_date: date
    already_posted: bool


def candidate_months(
    rule: RecurringTransaction, target_month: str, last_posted: Optional[str]
) -> list[str]:
    start = rule.start_month
    if last_posted is not None:
        after_last = add_months(last_posted, 1)
        if compare_months(after_last, start) > 0:
            start = after_last
    end = target_month
    if rule.end_month and compare_months(rule.end_month, end) < 0:
        end = rule.end_month
    return months_between(start, end)


class RecurringEngine:
    """Materializes recurring rules into ledger transactions.

    Each (rule, month) is posted at most once. The posting marker and the
    transaction are written inside one SAVEPOINT; losing the unique-key race
    on ``recurring_postings`` rolls both back and is reported as
    ``already_posted``. The caller owns the outer commit.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def post_up_to_month(
        self, property_id: int, target_month: Optional[str] = None
    ) -> PostingSummary:
        target = normalize_month(target_month) if target_month else current_month()
        if self.session.get(Property, property_id) is None:
            raise NotFoundError("Property not found")

        summary = PostingSummary(target_month=target)
        processed: set[str] = set()
        for rule in self._active_rules(property_id):
            if compare_months(rule.start_month, target) > 0:
                continue
            last_posted = self._last_posted_month(rule)
            for month in candidate_months(rule, target, last_posted):
                outcome = self._post_month(rule, month)
                summary.outcomes.append(outcome)
                if outcome.status == PostingStatus.posted:
                    summary.posted_count += 1
                else:
                    summary.skipped_count += 1
                processed.add(month)

        summary.months_processed = sorted(processed, key=parse_month)
        logger.info(
            f"recurring_post: property_id={property_id} target={target} "
            f"posted={summary.posted_count} skipped={summary.skipped_count}"
        )
        return summary

    def scheduled_for_month(self, property_id: int, month: str) -> list[ScheduledRule]:
        month = normalize_month(month)
        rules = [
            rule
            for rule in self._active_rules(property_id)
            if month_in_range(month, rule.start_month, rule.end_month)
        ]
        if not rules:
            return []
        posted_ids = set(
            self.session.scalars(
                select(RecurringPosting.recurring_transaction_id).where(
                    RecurringPosting.recurring_transaction_id.in_(
                        [rule.id for rule in rules]
                    ),
                    RecurringPosting.month == month,
                )
            ).all()
        )
        return [
            ScheduledRule(
                rule=rule,
                due_date=due_date_for_month(month, rule.day_of_month),
                already_posted=rule.id in posted_ids,
            )
            for rule in rules
        ]

    def _active_rules(self, property_id: int) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.category))
            .where(
                RecurringTransaction.property_id == property_id,
                RecurringTransaction.is_active.is_(True),
            )
            .order_by(
                RecurringTransaction.day_of_month,
                RecurringTransaction.created_at,
                RecurringTransaction.id,
            )
        )
        return list(self.session.scalars(stmt).unique().all())

    def _last_posted_month(self, rule: RecurringTransaction) -> Optional[str]:
        months = self.session.scalars(
            select(RecurringPosting.month).where(
                RecurringPosting.recurring_transaction_id == rule.id
            )
        ).all()
        if not months:
            return None
        return max(months, key=parse_month)

    def _is_posted(self, rule_id: int, month: str) -> bool:
        return (
            self.session.scalar(
                select(RecurringPosting.id).where(
                    RecurringPosting.recurring_transaction_id == rule_id,
                    RecurringPosting.month == month,
                )
            )
            is not None
        )

    def _post_month(self, rule: RecurringTransaction, month: str) -> PostingOutcome:
        try:
            with self.session.begin_nested():
                txn = Transaction(
                    property_id=rule.property_id,
                    category_id=rule.category_id,
                    date=due_date_for_month(month, rule.day_of_month),
                    amount_cents=signed_amount_cents(
                        rule.amount_cents, rule.category.type
                    ),
                    memo=rule.memo or "Recurring",
                    statement_month=month,
                    source=TransactionSource.recurring,
                )
                self.session.add(txn)
                self.session.flush()
                self.session.add(
                    RecurringPosting(
                        recurring_transaction_id=rule.id,
                        month=month,
                        transaction_id=txn.id,
                    )
                )
                self.session.flush()
        except IntegrityError:
            if not self._is_posted(rule.id, month):
                raise
            logger.debug(f"recurring_post: rule_id={rule.id} month={month} already_posted")
            return PostingOutcome(rule.id, month, PostingStatus.already_posted)
        return PostingOutcome(rule.id, month, PostingStatus.posted, txn.id)

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, NamedTuple, Optional, Union

from errors import ConsistencyError, NotFoundError, ValidationError
from models import BudgetGoal, Expense
from periods import month_bucket_of
from schemas import BudgetGoalIn, load_input


logger = logging.getLogger(__name__)


class BucketKey(NamedTuple):
    category: str
    month: int
    year: int

    @classmethod
    def of(cls, expense: Expense) -> "BucketKey":
        month, year = month_bucket_of(expense.date)
        return cls(expense.category, month, year)


@dataclass(frozen=True)
class Drift:
    key: BucketKey
    tracked_cents: int
    actual_cents: int

    @property
    def delta_cents(self) -> int:
        return self.actual_cents - self.tracked_cents


@dataclass(frozen=True)
class BudgetProgress:
    category: str
    month: int
    year: int
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    utilization: Decimal


def recompute_totals(expenses: Iterable[Expense]) -> dict[BucketKey, int]:
    totals: dict[BucketKey, int] = {}
    for expense in expenses:
        key = BucketKey.of(expense)
        totals[key] = totals.get(key, 0) + expense.amount_cents
    return totals


def _as_ratio(value: Union[Decimal, float, int, str]) -> Decimal:
    try:
        ratio = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid threshold: {value!r}") from exc
    if not ratio.is_finite() or ratio < 0:
        raise ValidationError(f"Threshold must be a non-negative number, got {value!r}")
    return ratio


class BudgetLedger:
    """Per (category, month, year) budget limits and running spent totals.

    Spent totals are kept for every bucket that has expenses, whether or not a
    limit was set, so a limit set later starts from the correct total. Totals
    are adjusted by signed deltas from the expense hooks; ``reconcile`` checks
    them against a full recomputation.
    """

    def __init__(self) -> None:
        self._limits: dict[BucketKey, int] = {}
        self._spent: dict[BucketKey, int] = {}

    @classmethod
    def from_expenses(cls, expenses: Iterable[Expense]) -> "BudgetLedger":
        ledger = cls()
        ledger._spent = recompute_totals(expenses)
        return ledger

    def rebuild(self, expenses: Iterable[Expense]) -> None:
        self._limits = {}
        self._spent = recompute_totals(expenses)

    # Goals

    def set_budget(
        self, category: str, amount_cents: int, month: int, year: int
    ) -> BudgetGoal:
        data = load_input(
            BudgetGoalIn,
            {
                "category": category,
                "limit_cents": amount_cents,
                "month": month,
                "year": year,
            },
        )
        key = BucketKey(data.category, data.month, data.year)
        self._limits[key] = data.limit_cents
        return self._goal(key)

    def delete_budget(self, category: str, month: int, year: int) -> None:
        key = BucketKey(category, month, year)
        if key not in self._limits:
            raise NotFoundError("Budget not found")
        del self._limits[key]

    def get_budget(self, category: str, month: int, year: int) -> Optional[BudgetGoal]:
        key = BucketKey(category, month, year)
        if key not in self._limits:
            return None
        return self._goal(key)

    def goals(self) -> list[BudgetGoal]:
        keys = sorted(self._limits, key=lambda k: (k.year, k.month, k.category))
        return [self._goal(key) for key in keys]

    def restore_goals(self, goals: Iterable[BudgetGoal]) -> list[Drift]:
        """Re-apply persisted limits; report stored totals that disagree with ours."""
        drifts: list[Drift] = []
        for goal in goals:
            key = BucketKey(goal.category, goal.month, goal.year)
            self._limits[key] = goal.limit_cents
            tracked = goal.spent_cents or 0
            actual = self._spent.get(key, 0)
            if tracked != actual:
                drifts.append(Drift(key, tracked, actual))
        return drifts

    def _goal(self, key: BucketKey) -> BudgetGoal:
        return BudgetGoal(
            category=key.category,
            month=key.month,
            year=key.year,
            limit_cents=self._limits[key],
            spent_cents=self._spent.get(key, 0),
        )

    # Expense hooks

    def on_expense_created(self, expense: Expense) -> None:
        self._apply([(BucketKey.of(expense), expense.amount_cents)])

    def on_expense_updated(self, old: Expense, new: Expense) -> None:
        self._apply(
            [
                (BucketKey.of(old), -old.amount_cents),
                (BucketKey.of(new), new.amount_cents),
            ]
        )

    def on_expense_deleted(self, expense: Expense) -> None:
        self._apply([(BucketKey.of(expense), -expense.amount_cents)])

    def _apply(self, deltas: list[tuple[BucketKey, int]]) -> None:
        updated = {key: self._spent.get(key, 0) for key, _ in deltas}
        for key, delta in deltas:
            updated[key] += delta
        negative = [
            Drift(key, value, 0) for key, value in updated.items() if value < 0
        ]
        if negative:
            logger.error(f"budget_negative_total: buckets={[d.key for d in negative]}")
            raise ConsistencyError(negative)
        for key, value in updated.items():
            if value:
                self._spent[key] = value
            else:
                self._spent.pop(key, None)

    # Queries

    def spent_cents(self, category: str, month: int, year: int) -> int:
        return self._spent.get(BucketKey(category, month, year), 0)

    def get_utilization(self, category: str, month: int, year: int) -> Optional[Decimal]:
        key = BucketKey(category, month, year)
        limit = self._limits.get(key)
        if limit is None:
            return None
        return Decimal(self._spent.get(key, 0)) / Decimal(limit)

    def alerts_above(
        self, threshold_ratio: Union[Decimal, float, int, str]
    ) -> list[BucketKey]:
        threshold = _as_ratio(threshold_ratio)
        hits = [
            key
            for key, limit in self._limits.items()
            if Decimal(self._spent.get(key, 0)) / Decimal(limit) >= threshold
        ]
        return sorted(hits, key=lambda k: (k.year, k.month, k.category))

    def progress_for_month(self, year: int, month: int) -> list[BudgetProgress]:
        rows: list[BudgetProgress] = []
        for key in sorted(self._limits, key=lambda k: k.category):
            if key.year != year or key.month != month:
                continue
            limit = self._limits[key]
            spent = self._spent.get(key, 0)
            rows.append(
                BudgetProgress(
                    category=key.category,
                    month=key.month,
                    year=key.year,
                    limit_cents=limit,
                    spent_cents=spent,
                    remaining_cents=limit - spent,
                    utilization=Decimal(spent) / Decimal(limit),
                )
            )
        return rows

    def spent_by_category_for_month(self, year: int, month: int) -> dict[str, int]:
        return {
            key.category: spent
            for key, spent in self._spent.items()
            if key.year == year and key.month == month
        }

    # Reconciliation

    def reconcile(self, expenses: Iterable[Expense]) -> list[Drift]:
        actual = recompute_totals(expenses)
        drifts = [
            Drift(key, self._spent.get(key, 0), actual.get(key, 0))
            for key in set(actual) | set(self._spent)
            if self._spent.get(key, 0) != actual.get(key, 0)
        ]
        return sorted(drifts, key=lambda d: (d.key.year, d.key.month, d.key.category))

    def verify(self, expenses: Iterable[Expense]) -> None:
        drifts = self.reconcile(expenses)
        if drifts:
            raise ConsistencyError(drifts)

    def heal(self, expenses: Iterable[Expense]) -> list[Drift]:
        expenses = list(expenses)
        drifts = self.reconcile(expenses)
        for drift in drifts:
            logger.info(
                f"budget_heal: category={drift.key.category} "
                f"period={drift.key.year}-{drift.key.month:02d} "
                f"tracked={drift.tracked_cents} actual={drift.actual_cents}"
            )
        if drifts:
            self._spent = recompute_totals(expenses)
        return drifts

    def snapshot(self) -> tuple[dict[BucketKey, int], dict[BucketKey, int]]:
        return dict(self._limits), dict(self._spent)

    def restore(self, state: tuple[dict[BucketKey, int], dict[BucketKey, int]]) -> None:
        limits, spent = state
        self._limits = dict(limits)
        self._spent = dict(spent)

import random
from datetime import date
from decimal import Decimal

import pytest

from errors import ConsistencyError, NotFoundError, ValidationError
from ledger import BucketKey, BudgetLedger, recompute_totals
from models import BudgetGoal, Expense


def _expense(expense_id: str, amount_cents: int, on: date, category: str = "Food") -> Expense:
    return Expense(
        id=expense_id,
        title=f"Expense {expense_id}",
        amount_cents=amount_cents,
        date=on,
        category=category,
        currency_code="EUR",
    )


def test_utilization_tracks_created_expenses():
    ledger = BudgetLedger()
    ledger.set_budget("Food", 10000, 1, 2025)
    ledger.on_expense_created(_expense("a", 2500, date(2025, 1, 10)))

    assert ledger.get_utilization("Food", 1, 2025) == Decimal("0.25")
    assert ledger.get_utilization("Food", 2, 2025) is None


def test_set_budget_keeps_spent_total():
    ledger = BudgetLedger()
    ledger.on_expense_created(_expense("a", 3000, date(2025, 1, 10)))

    goal = ledger.set_budget("Food", 10000, 1, 2025)
    assert goal.spent_cents == 3000

    goal = ledger.set_budget("Food", 6000, 1, 2025)
    assert goal.limit_cents == 6000
    assert goal.spent_cents == 3000
    assert ledger.get_utilization("Food", 1, 2025) == Decimal("0.5")


def test_update_moves_amount_between_buckets():
    ledger = BudgetLedger()
    ledger.set_budget("Food", 10000, 1, 2025)
    old = _expense("a", 3000, date(2025, 1, 10))
    ledger.on_expense_created(old)

    new = _expense("a", 4000, date(2025, 2, 3), category="Travel")
    ledger.on_expense_updated(old, new)

    assert ledger.spent_cents("Food", 1, 2025) == 0
    assert ledger.get_utilization("Food", 1, 2025) == Decimal("0")
    assert ledger.spent_cents("Travel", 2, 2025) == 4000
    ledger.set_budget("Travel", 8000, 2, 2025)
    assert ledger.get_utilization("Travel", 2, 2025) == Decimal("0.5")


def test_update_within_same_bucket_applies_difference():
    ledger = BudgetLedger()
    old = _expense("a", 3000, date(2025, 1, 10))
    ledger.on_expense_created(old)
    ledger.on_expense_updated(old, _expense("a", 1200, date(2025, 1, 31)))
    assert ledger.spent_cents("Food", 1, 2025) == 1200


def test_delete_reduces_only_its_bucket():
    ledger = BudgetLedger()
    jan = _expense("a", 1000, date(2025, 1, 10))
    feb = _expense("b", 1000, date(2025, 2, 10))
    ledger.on_expense_created(jan)
    ledger.on_expense_created(feb)

    ledger.on_expense_deleted(jan)

    assert ledger.spent_cents("Food", 1, 2025) == 0
    assert ledger.spent_cents("Food", 2, 2025) == 1000


def test_cent_amounts_sum_exactly():
    ledger = BudgetLedger()
    ledger.set_budget("Coffee", 100, 3, 2025)
    for index in range(10):
        ledger.on_expense_created(_expense(str(index), 10, date(2025, 3, 1), "Coffee"))
    assert ledger.get_utilization("Coffee", 3, 2025) == Decimal(1)


def test_alerts_above_threshold():
    ledger = BudgetLedger()
    ledger.set_budget("Rent", 100000, 1, 2025)
    ledger.set_budget("Food", 10000, 1, 2025)
    ledger.set_budget("Fun", 5000, 2, 2025)
    ledger.on_expense_created(_expense("a", 8000, date(2025, 1, 5)))
    ledger.on_expense_created(_expense("b", 50000, date(2025, 1, 1), "Rent"))
    ledger.on_expense_created(_expense("c", 6000, date(2025, 2, 1), "Fun"))
    # No limit set, so no alert regardless of spend.
    ledger.on_expense_created(_expense("d", 99999, date(2025, 1, 1), "Misc"))

    assert ledger.alerts_above(Decimal("0.8")) == [
        BucketKey("Food", 1, 2025),
        BucketKey("Fun", 2, 2025),
    ]
    assert ledger.alerts_above("1.0") == [BucketKey("Fun", 2, 2025)]
    assert ledger.alerts_above(2) == []
    with pytest.raises(ValidationError):
        ledger.alerts_above("-1")
    with pytest.raises(ValidationError):
        ledger.alerts_above("lots")


def test_set_budget_validation():
    ledger = BudgetLedger()
    with pytest.raises(ValidationError):
        ledger.set_budget("Food", 0, 1, 2025)
    with pytest.raises(ValidationError):
        ledger.set_budget("Food", 1000, 13, 2025)
    with pytest.raises(ValidationError):
        ledger.set_budget("", 1000, 1, 2025)
    assert ledger.goals() == []


def test_delete_budget():
    ledger = BudgetLedger()
    ledger.set_budget("Food", 1000, 1, 2025)
    ledger.delete_budget("Food", 1, 2025)
    assert ledger.get_budget("Food", 1, 2025) is None
    with pytest.raises(NotFoundError):
        ledger.delete_budget("Food", 1, 2025)


def test_negative_total_is_rejected_without_mutation():
    ledger = BudgetLedger()
    ledger.on_expense_created(_expense("a", 500, date(2025, 1, 1)))
    with pytest.raises(ConsistencyError) as excinfo:
        ledger.on_expense_deleted(_expense("ghost", 900, date(2025, 1, 1)))
    assert excinfo.value.drifts[0].key == BucketKey("Food", 1, 2025)
    assert ledger.spent_cents("Food", 1, 2025) == 500


def test_incremental_totals_match_recomputation():
    rng = random.Random(1234)
    ledger = BudgetLedger()
    truth: dict[str, Expense] = {}
    categories = ["Food", "Rent", "Travel"]
    for category in categories:
        for month in (1, 2, 3):
            ledger.set_budget(category, 25000, month, 2025)

    for step in range(300):
        action = rng.choice(["create", "update", "delete"]) if truth else "create"
        if action == "create":
            expense = _expense(
                f"e{step}",
                rng.randint(1, 5000),
                date(2025, rng.randint(1, 3), rng.randint(1, 28)),
                rng.choice(categories),
            )
            truth[expense.id] = expense
            ledger.on_expense_created(expense)
        elif action == "update":
            old = truth[rng.choice(sorted(truth))]
            new = _expense(
                old.id,
                rng.randint(1, 5000),
                date(2025, rng.randint(1, 3), rng.randint(1, 28)),
                rng.choice(categories),
            )
            truth[new.id] = new
            ledger.on_expense_updated(old, new)
        else:
            ledger.on_expense_deleted(truth.pop(rng.choice(sorted(truth))))

    assert ledger.reconcile(truth.values()) == []
    totals = recompute_totals(truth.values())
    for category in categories:
        for month in (1, 2, 3):
            expected = Decimal(totals.get(BucketKey(category, month, 2025), 0)) / Decimal(25000)
            assert ledger.get_utilization(category, month, 2025) == expected


def test_reconcile_verify_and_heal():
    ledger = BudgetLedger()
    stray = _expense("a", 700, date(2025, 5, 1))
    ledger.on_expense_created(stray)

    drifts = ledger.reconcile([])
    assert len(drifts) == 1
    assert drifts[0].key == BucketKey("Food", 5, 2025)
    assert drifts[0].tracked_cents == 700
    assert drifts[0].actual_cents == 0
    assert drifts[0].delta_cents == -700

    with pytest.raises(ConsistencyError):
        ledger.verify([])

    assert ledger.heal([]) == drifts
    assert ledger.reconcile([]) == []
    ledger.verify([])


def test_restore_goals_reports_stored_drift():
    expenses = [_expense("a", 1200, date(2025, 1, 3))]
    ledger = BudgetLedger.from_expenses(expenses)

    drifts = ledger.restore_goals(
        [
            BudgetGoal(category="Food", year=2025, month=1, limit_cents=2400, spent_cents=1000),
            BudgetGoal(category="Rent", year=2025, month=1, limit_cents=9000, spent_cents=0),
        ]
    )

    assert [(d.key.category, d.tracked_cents, d.actual_cents) for d in drifts] == [
        ("Food", 1000, 1200)
    ]
    assert ledger.get_utilization("Food", 1, 2025) == Decimal("0.5")


def test_progress_and_spend_for_month():
    ledger = BudgetLedger()
    ledger.set_budget("Food", 10000, 1, 2025)
    ledger.on_expense_created(_expense("a", 2500, date(2025, 1, 2)))
    ledger.on_expense_created(_expense("b", 900, date(2025, 1, 2), "Books"))

    [row] = ledger.progress_for_month(2025, 1)
    assert row.category == "Food"
    assert row.remaining_cents == 7500
    assert row.utilization == Decimal("0.25")
    assert ledger.spent_by_category_for_month(2025, 1) == {"Food": 2500, "Books": 900}

from datetime import date

import pytest
from sqlalchemy import create_engine, event

from database import Base, build_session_factory
from errors import StorageError
from models import BudgetGoal, Expense, IntervalUnit, RecurringTemplate
from storage import RecordKind, SqlStorage


def _storage(create_tables: bool = True) -> SqlStorage:
    engine = create_engine("sqlite:///:memory:")
    if create_tables:
        Base.metadata.create_all(engine)
    return SqlStorage(build_session_factory(engine))


def _expense(expense_id: str, amount_cents: int = 1000) -> Expense:
    return Expense(
        id=expense_id,
        title="Rent",
        amount_cents=amount_cents,
        date=date(2025, 2, 1),
        category="Housing",
        currency_code="EUR",
        origin_template_id="tmpl-1",
    )


def test_expenses_round_trip():
    storage = _storage()
    storage.save(RecordKind.expense, [_expense("a"), _expense("b", 2500)])

    loaded = sorted(storage.load(RecordKind.expense), key=lambda e: e.id)

    assert [(e.id, e.amount_cents) for e in loaded] == [("a", 1000), ("b", 2500)]
    assert loaded[0].date == date(2025, 2, 1)
    assert loaded[0].origin_template_id == "tmpl-1"


def test_save_replaces_the_full_set():
    storage = _storage()
    storage.save(RecordKind.expense, [_expense("a"), _expense("b")])
    storage.save(RecordKind.expense, [_expense("b", 4200), _expense("c")])

    loaded = {e.id: e.amount_cents for e in storage.load(RecordKind.expense)}
    assert loaded == {"b": 4200, "c": 1000}

    storage.save(RecordKind.expense, [])
    assert storage.load(RecordKind.expense) == []


def test_templates_keep_pattern_and_watermark():
    storage = _storage()
    template = RecurringTemplate(
        id="tmpl-1",
        title="Gym",
        amount_cents=2990,
        category="Health",
        start_date=date(2025, 1, 31),
        interval_unit=IntervalUnit.monthly,
        interval_count=1,
        anchor_day_of_month=31,
        last_generated_date=date(2025, 2, 28),
        active=True,
    )
    storage.save(RecordKind.recurring_template, [template])

    [loaded] = storage.load(RecordKind.recurring_template)

    assert loaded.interval_unit == IntervalUnit.monthly
    assert loaded.anchor_day == 31
    assert loaded.last_generated_date == date(2025, 2, 28)
    assert loaded.pattern.describe() == "monthly"


def test_budget_goals_keyed_by_bucket():
    storage = _storage()
    goals = [
        BudgetGoal(category="Food", year=2025, month=1, limit_cents=1000, spent_cents=0),
        BudgetGoal(category="Food", year=2025, month=2, limit_cents=1500, spent_cents=300),
    ]
    storage.save(RecordKind.budget_goal, goals)
    storage.save(RecordKind.budget_goal, goals[1:])

    [loaded] = storage.load(RecordKind.budget_goal)
    assert (loaded.month, loaded.limit_cents, loaded.spent_cents) == (2, 1500, 300)


def test_database_errors_become_storage_errors():
    storage = _storage(create_tables=False)
    with pytest.raises(StorageError):
        storage.load(RecordKind.expense)
    with pytest.raises(StorageError):
        storage.save(RecordKind.expense, [_expense("a")])


def test_save_writes_only_changed_rows():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    storage = SqlStorage(build_session_factory(engine))
    records = [_expense(f"e{index:04d}") for index in range(300)]
    storage.save(RecordKind.expense, records)

    statements = []

    @event.listens_for(engine, "before_cursor_execute")
    def collect(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement.split()[0].upper())

    storage.save(RecordKind.expense, records)
    assert statements == ["SELECT"]

    statements.clear()
    changed = records[1:] + [_expense("new"), records[0].replace(id="e0000", amount_cents=77)]
    changed = [r for r in changed if r.id != "e0001"]
    storage.save(RecordKind.expense, changed)

    assert sorted(statements) == ["DELETE", "INSERT", "SELECT", "UPDATE"]
    loaded = {e.id: e.amount_cents for e in storage.load(RecordKind.expense)}
    assert len(loaded) == 300
    assert loaded["e0000"] == 77
    assert loaded["new"] == 1000
    assert "e0001" not in loaded


def test_large_removals_are_deleted_in_batches():
    storage = _storage()
    storage.save(RecordKind.expense, [_expense(f"e{index:04d}") for index in range(1200)])
    storage.save(RecordKind.expense, [_expense("e0005")])
    assert [e.id for e in storage.load(RecordKind.expense)] == ["e0005"]

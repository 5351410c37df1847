from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Iterator, Optional, Protocol, Union
from uuid import uuid4

from categorization import Categorizer, LearningCategorizer, resolve_category
from config import Settings, get_settings
from errors import ConsistencyError, NotFoundError, StorageError, ValidationError
from ledger import BucketKey, BudgetLedger, BudgetProgress, Drift
from models import UNCATEGORIZED, BudgetGoal, Expense, RecurringTemplate
from recurrence import (
    RecurrenceEngine,
    local_today,
    recurring_statistics,
    upcoming_occurrences,
)
from schemas import ExpenseIn, RecurringTemplateIn, load_input
from storage import RecordKind, StorageBackend


logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid4().hex


class ExpenseListener(Protocol):
    def on_expense_created(self, expense: Expense) -> None: ...

    def on_expense_updated(self, old: Expense, new: Expense) -> None: ...

    def on_expense_deleted(self, expense: Expense) -> None: ...


class ExpenseStore:
    """Canonical in-memory expense set.

    Records are never mutated in place: an update stores a new record, so the
    previous one can be handed to listeners as the "old" side of the change.
    """

    def __init__(
        self,
        *,
        ledger_currency: str,
        categorizer: Optional[Categorizer] = None,
    ) -> None:
        self.ledger_currency = ledger_currency
        self.categorizer = categorizer
        self._expenses: dict[str, Expense] = {}
        self._occurrences: dict[tuple[str, date], str] = {}
        self._listeners: list[ExpenseListener] = []

    def subscribe(self, listener: ExpenseListener) -> None:
        self._listeners.append(listener)

    def load(self, records: Iterable[Expense]) -> None:
        self._expenses = {}
        self._occurrences = {}
        for record in records:
            self._expenses[record.id] = record
            if record.origin_template_id:
                self._occurrences[(record.origin_template_id, record.date)] = record.id

    def __len__(self) -> int:
        return len(self._expenses)

    def all(self) -> list[Expense]:
        return list(self._expenses.values())

    def get(self, expense_id: str) -> Expense:
        expense = self._expenses.get(expense_id)
        if expense is None:
            raise NotFoundError("Expense not found")
        return expense

    def create(
        self,
        data: Union[ExpenseIn, dict[str, Any]],
        *,
        origin_template_id: Optional[str] = None,
    ) -> Expense:
        data = load_input(ExpenseIn, data)
        if origin_template_id and (origin_template_id, data.date) in self._occurrences:
            raise ValidationError(
                f"Occurrence {data.date} of template {origin_template_id} already exists"
            )
        expense = Expense(
            id=new_id(),
            title=data.title,
            amount_cents=data.amount_cents,
            date=data.date,
            category=resolve_category(data.title, data.category, self.categorizer),
            notes=data.notes,
            currency_code=data.currency_code or self.ledger_currency,
            origin_template_id=origin_template_id,
        )
        self._expenses[expense.id] = expense
        if origin_template_id:
            self._occurrences[(origin_template_id, expense.date)] = expense.id
        for listener in self._listeners:
            listener.on_expense_created(expense)
        return expense

    def update(
        self, expense_id: str, data: Union[ExpenseIn, dict[str, Any]]
    ) -> Expense:
        old = self.get(expense_id)
        data = load_input(ExpenseIn, data)
        origin = old.origin_template_id
        if origin and data.date != old.date:
            clash = self._occurrences.get((origin, data.date))
            if clash and clash != old.id:
                raise ValidationError(
                    f"Occurrence {data.date} of template {origin} already exists"
                )
        new = old.replace(
            title=data.title,
            amount_cents=data.amount_cents,
            date=data.date,
            category=resolve_category(data.title, data.category, self.categorizer),
            notes=data.notes,
            currency_code=data.currency_code or self.ledger_currency,
        )
        self._expenses[new.id] = new
        if origin:
            self._occurrences.pop((origin, old.date), None)
            self._occurrences[(origin, new.date)] = new.id
        for listener in self._listeners:
            listener.on_expense_updated(old, new)
        return new

    def delete(self, expense_id: str) -> Expense:
        expense = self.get(expense_id)
        del self._expenses[expense_id]
        if expense.origin_template_id:
            self._occurrences.pop((expense.origin_template_id, expense.date), None)
        for listener in self._listeners:
            listener.on_expense_deleted(expense)
        return expense

    def find_occurrence(self, template_id: str, on: date) -> Optional[Expense]:
        expense_id = self._occurrences.get((template_id, on))
        return self._expenses.get(expense_id) if expense_id else None

    def query(
        self,
        *,
        category: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        template_id: Optional[str] = None,
    ) -> list[Expense]:
        rows = [
            e
            for e in self._expenses.values()
            if (category is None or e.category == category)
            and (start is None or e.date >= start)
            and (end is None or e.date <= end)
            and (template_id is None or e.origin_template_id == template_id)
        ]
        return sorted(rows, key=lambda e: (e.date, e.id), reverse=True)

    def snapshot(self) -> tuple[dict[str, Expense], dict[tuple[str, date], str]]:
        return dict(self._expenses), dict(self._occurrences)

    def restore(
        self, state: tuple[dict[str, Expense], dict[tuple[str, date], str]]
    ) -> None:
        expenses, occurrences = state
        self._expenses = dict(expenses)
        self._occurrences = dict(occurrences)


class TemplateStore:
    def __init__(self) -> None:
        self._templates: dict[str, RecurringTemplate] = {}

    def load(self, records: Iterable[RecurringTemplate]) -> None:
        self._templates = {record.id: record for record in records}

    def __len__(self) -> int:
        return len(self._templates)

    def get(self, template_id: str) -> RecurringTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError("Recurring template not found")
        return template

    def list(self) -> list[RecurringTemplate]:
        return sorted(
            self._templates.values(), key=lambda t: (t.start_date, t.title, t.id)
        )

    def create(
        self, data: Union[RecurringTemplateIn, dict[str, Any]]
    ) -> RecurringTemplate:
        data = load_input(RecurringTemplateIn, data)
        template = RecurringTemplate(
            id=new_id(),
            last_generated_date=None,
            **data.model_dump(),
        )
        self._templates[template.id] = template
        return template

    def update(
        self, template_id: str, data: Union[RecurringTemplateIn, dict[str, Any]]
    ) -> RecurringTemplate:
        # The watermark survives edits: past occurrences are never regenerated.
        old = self.get(template_id)
        data = load_input(RecurringTemplateIn, data)
        changes = data.model_dump()
        if "active" not in data.model_fields_set:
            # Pausing only changes through set_active or an explicit flag.
            changes["active"] = old.active
        template = old.replace(**changes)
        self._templates[template.id] = template
        return template

    def set_active(self, template_id: str, active: bool) -> RecurringTemplate:
        template = self.get(template_id).replace(active=active)
        self._templates[template.id] = template
        return template

    def delete(self, template_id: str) -> RecurringTemplate:
        template = self.get(template_id)
        del self._templates[template_id]
        return template

    def snapshot(self) -> dict[str, RecurringTemplate]:
        # The engine advances watermarks in place, so copy the records.
        return {key: template.replace() for key, template in self._templates.items()}

    def restore(self, state: dict[str, RecurringTemplate]) -> None:
        self._templates = dict(state)


class Coordinator:
    """Wires the stores, the ledger, the recurrence engine and storage.

    Every mutation runs under one lock as a unit of work: on any error the
    in-memory state is rolled back and the error re-raised, so a rejected
    operation leaves no expense, no watermark advance and no ledger delta.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        settings: Optional[Settings] = None,
        categorizer: Optional[Categorizer] = None,
        engine: Optional[RecurrenceEngine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.storage = storage
        self.categorizer = categorizer if categorizer is not None else LearningCategorizer()
        self.expenses = ExpenseStore(
            ledger_currency=self.settings.ledger_currency,
            categorizer=self.categorizer,
        )
        self.templates = TemplateStore()
        self.ledger = BudgetLedger()
        self.expenses.subscribe(self.ledger)
        self.engine = engine or RecurrenceEngine(self.settings.max_catch_up)
        self._lock = threading.RLock()

    # Loading

    def load(self) -> None:
        with self._lock:
            expenses = self.storage.load(RecordKind.expense)
            templates = self.storage.load(RecordKind.recurring_template)
            goals = self.storage.load(RecordKind.budget_goal)

            self.expenses.load(expenses)
            self.templates.load(templates)
            self.ledger.rebuild(expenses)
            drifts = self.ledger.restore_goals(goals)
            for expense in expenses:
                if expense.category != UNCATEGORIZED:
                    self.categorizer.record(expense.title, expense.category)

            if drifts:
                if not self.settings.self_heal_on_load:
                    raise ConsistencyError(drifts)
                for drift in drifts:
                    logger.warning(
                        f"budget_drift_on_load: category={drift.key.category} "
                        f"period={drift.key.year}-{drift.key.month:02d} "
                        f"stored={drift.tracked_cents} actual={drift.actual_cents}"
                    )
            logger.info(
                f"coordinator_loaded: expenses={len(expenses)} "
                f"templates={len(templates)} budgets={len(goals)} drifts={len(drifts)}"
            )

    # Unit of work

    @contextmanager
    def _unit_of_work(self, *kinds: RecordKind) -> Iterator[None]:
        with self._lock:
            state = (
                self.expenses.snapshot(),
                self.templates.snapshot(),
                self.ledger.snapshot(),
            )
            saved: list[RecordKind] = []
            try:
                yield
                for kind in kinds:
                    self.storage.save(kind, self._records(kind))
                    saved.append(kind)
            except Exception:
                self.expenses.restore(state[0])
                self.templates.restore(state[1])
                self.ledger.restore(state[2])
                self._rewrite(saved)
                raise

    def _rewrite(self, kinds: list[RecordKind]) -> None:
        for kind in kinds:
            try:
                self.storage.save(kind, self._records(kind))
            except StorageError as exc:
                logger.error(f"storage_rollback_failed: kind={kind.value} error={exc}")

    def _records(self, kind: RecordKind) -> list:
        if kind == RecordKind.expense:
            return self.expenses.all()
        if kind == RecordKind.recurring_template:
            return self.templates.list()
        return self.ledger.goals()

    # Expenses

    def create_expense(self, data: Union[ExpenseIn, dict[str, Any]]) -> Expense:
        data = load_input(ExpenseIn, data)
        with self._unit_of_work(RecordKind.expense, RecordKind.budget_goal):
            expense = self.expenses.create(data)
        self._learn(data)
        return expense

    def update_expense(
        self, expense_id: str, data: Union[ExpenseIn, dict[str, Any]]
    ) -> Expense:
        data = load_input(ExpenseIn, data)
        with self._unit_of_work(RecordKind.expense, RecordKind.budget_goal):
            expense = self.expenses.update(expense_id, data)
        self._learn(data)
        return expense

    def delete_expense(self, expense_id: str) -> Expense:
        with self._unit_of_work(RecordKind.expense, RecordKind.budget_goal):
            return self.expenses.delete(expense_id)

    def get_expense(self, expense_id: str) -> Expense:
        with self._lock:
            return self.expenses.get(expense_id)

    def list_expenses(
        self,
        *,
        category: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        template_id: Optional[str] = None,
    ) -> list[Expense]:
        with self._lock:
            return self.expenses.query(
                category=category, start=start, end=end, template_id=template_id
            )

    def _learn(self, data: ExpenseIn) -> None:
        if data.category:
            with self._lock:
                self.categorizer.record(data.title, data.category)

    # Recurring templates

    def create_template(
        self, data: Union[RecurringTemplateIn, dict[str, Any]]
    ) -> RecurringTemplate:
        with self._unit_of_work(RecordKind.recurring_template):
            return self.templates.create(data)

    def update_template(
        self, template_id: str, data: Union[RecurringTemplateIn, dict[str, Any]]
    ) -> RecurringTemplate:
        with self._unit_of_work(RecordKind.recurring_template):
            return self.templates.update(template_id, data)

    def set_template_active(self, template_id: str, active: bool) -> RecurringTemplate:
        with self._unit_of_work(RecordKind.recurring_template):
            return self.templates.set_active(template_id, active)

    def delete_template(self, template_id: str) -> RecurringTemplate:
        with self._unit_of_work(RecordKind.recurring_template):
            return self.templates.delete(template_id)

    def get_template(self, template_id: str) -> RecurringTemplate:
        with self._lock:
            return self.templates.get(template_id)

    def list_templates(self) -> list[RecurringTemplate]:
        with self._lock:
            return self.templates.list()

    def upcoming(self, template_id: str, until: date) -> list[date]:
        with self._lock:
            return upcoming_occurrences(self.templates.get(template_id), until)

    def recurring_statistics(self) -> dict[str, object]:
        with self._lock:
            return recurring_statistics(self.templates.list())

    def generate_due_expenses(self, as_of: Optional[date] = None) -> list[Expense]:
        as_of = as_of or local_today()
        with self._unit_of_work(
            RecordKind.expense, RecordKind.recurring_template, RecordKind.budget_goal
        ):
            created = self.engine.generate_due_expenses(
                as_of, self.templates.list(), self.expenses
            )
        logger.info(f"recurring_run: as_of={as_of} occurrences_posted={len(created)}")
        return created

    # Budgets

    def set_budget(
        self, category: str, amount_cents: int, month: int, year: int
    ) -> BudgetGoal:
        with self._unit_of_work(RecordKind.budget_goal):
            return self.ledger.set_budget(category, amount_cents, month, year)

    def delete_budget(self, category: str, month: int, year: int) -> None:
        with self._unit_of_work(RecordKind.budget_goal):
            self.ledger.delete_budget(category, month, year)

    def get_budget(self, category: str, month: int, year: int) -> Optional[BudgetGoal]:
        with self._lock:
            return self.ledger.get_budget(category, month, year)

    def get_utilization(self, category: str, month: int, year: int) -> Optional[Decimal]:
        with self._lock:
            return self.ledger.get_utilization(category, month, year)

    def alerts(self, threshold: Optional[Union[Decimal, float, str]] = None) -> list[BucketKey]:
        if threshold is None:
            threshold = self.settings.alert_threshold
        with self._lock:
            return self.ledger.alerts_above(threshold)

    def budget_progress(self, year: int, month: int) -> list[BudgetProgress]:
        with self._lock:
            return self.ledger.progress_for_month(year, month)

    # Reconciliation

    def reconcile(self) -> list[Drift]:
        with self._lock:
            return self.ledger.reconcile(self.expenses.all())

    def verify(self) -> None:
        with self._lock:
            self.ledger.verify(self.expenses.all())

    def heal(self) -> list[Drift]:
        with self._unit_of_work(RecordKind.budget_goal):
            return self.ledger.heal(self.expenses.all())

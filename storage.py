import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import delete, insert, select, tuple_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base, session_scope
from errors import StorageError
from models import BudgetGoal, Expense, RecordMixin, RecurringTemplate


logger = logging.getLogger(__name__)

# Keeps each DELETE under the SQLite bound-parameter limit.
DELETE_CHUNK = 500


class RecordKind(str, Enum):
    expense = "expense"
    recurring_template = "recurring_template"
    budget_goal = "budget_goal"


RECORD_MODELS: dict[RecordKind, type[Base]] = {
    RecordKind.expense: Expense,
    RecordKind.recurring_template: RecurringTemplate,
    RecordKind.budget_goal: BudgetGoal,
}


class StorageBackend(ABC):
    """Loads and saves the full record set of one kind at a time.

    Implementations raise StorageError on failure; callers never retry.
    """

    @abstractmethod
    def load(self, kind: RecordKind) -> list:
        raise NotImplementedError

    @abstractmethod
    def save(self, kind: RecordKind, records: Sequence) -> None:
        raise NotImplementedError


class SqlStorage(StorageBackend):
    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory

    def create_schema(self) -> None:
        with session_scope(self.session_factory) as session:
            Base.metadata.create_all(session.get_bind())

    def load(self, kind: RecordKind) -> list:
        model = RECORD_MODELS[RecordKind(kind)]
        try:
            with session_scope(self.session_factory) as session:
                rows = session.scalars(select(model)).all()
                # Detach so callers own plain in-memory copies.
                records = [row.replace() for row in rows]
        except SQLAlchemyError as exc:
            logger.error(f"storage_load_failed: kind={kind.value} error={exc}")
            raise StorageError(f"Failed to load {kind.value} records") from exc
        return records

    def save(self, kind: RecordKind, records: Sequence) -> None:
        kind = RecordKind(kind)
        model = RECORD_MODELS[kind]
        key_columns = list(model.__table__.primary_key.columns)
        columns = [
            c for c in model.__table__.columns if c.key not in RecordMixin._copy_skip
        ]
        wanted: dict[tuple, dict] = {}
        for record in records:
            values = record.values()
            wanted[tuple(values[c.key] for c in key_columns)] = values
        try:
            with session_scope(self.session_factory) as session:
                stored: dict[tuple, dict] = {}
                for row in session.execute(select(*columns)):
                    values = dict(zip((c.key for c in columns), row))
                    stored[tuple(values[c.key] for c in key_columns)] = values

                missing = [key for key in stored if key not in wanted]
                inserts = [v for key, v in wanted.items() if key not in stored]
                updates = [
                    v for key, v in wanted.items() if key in stored and stored[key] != v
                ]
                for start in range(0, len(missing), DELETE_CHUNK):
                    chunk = missing[start : start + DELETE_CHUNK]
                    if len(key_columns) == 1:
                        clause = key_columns[0].in_([key[0] for key in chunk])
                    else:
                        clause = tuple_(*key_columns).in_(chunk)
                    session.execute(
                        delete(model)
                        .where(clause)
                        .execution_options(synchronize_session=False)
                    )
                if inserts:
                    session.execute(insert(model), inserts)
                if updates:
                    session.execute(update(model), updates)
        except SQLAlchemyError as exc:
            logger.error(f"storage_save_failed: kind={kind.value} error={exc}")
            raise StorageError(f"Failed to save {kind.value} records") from exc
        logger.debug(
            f"storage_saved: kind={kind.value} inserted={len(inserts)} "
            f"updated={len(updates)} deleted={len(missing)}"
        )

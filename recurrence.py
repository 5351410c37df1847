import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Protocol
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from models import Expense, IntervalUnit, RecurringTemplate
from periods import add_interval
from schemas import ExpenseIn, load_input


logger = logging.getLogger(__name__)


class ExpenseSink(Protocol):
    def create(
        self, data: ExpenseIn, *, origin_template_id: Optional[str] = None
    ) -> Expense: ...

    def find_occurrence(self, template_id: str, on: date) -> Optional[Expense]: ...


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def _check_template(template: RecurringTemplate) -> None:
    template.pattern  # raises ValidationError when unit or interval is malformed
    anchor = template.anchor_day_of_month
    if anchor is not None and not 1 <= anchor <= 31:
        raise ValidationError(f"Anchor day must be between 1 and 31, got {anchor}")


def next_occurrence(template: RecurringTemplate, after: Optional[date]) -> date:
    """The first scheduled date strictly after ``after`` (or the start date)."""
    if after is None:
        return template.start_date
    return add_interval(after, template.pattern, anchor_day=template.anchor_day)


def pending_dates(
    template: RecurringTemplate, until: date, *, limit: Optional[int] = None
) -> list[date]:
    """Dates after the watermark, up to ``until`` and the end date, in order."""
    _check_template(template)
    dates: list[date] = []
    candidate = next_occurrence(template, template.last_generated_date)
    end = template.end_date
    while candidate <= until and (end is None or candidate <= end):
        if limit is not None and len(dates) >= limit:
            break
        # A start date moved past the watermark must not backfill earlier dates.
        if candidate >= template.start_date:
            dates.append(candidate)
        candidate = next_occurrence(template, candidate)
    return dates


def upcoming_occurrences(
    template: RecurringTemplate, until: date, *, limit: int = 100
) -> list[date]:
    if not template.active:
        return []
    return pending_dates(template, until, limit=limit)


def monthly_amount_cents(template: RecurringTemplate) -> int:
    count = template.interval_count
    amount = Decimal(template.amount_cents)
    unit = template.pattern.unit
    if unit == IntervalUnit.daily:
        monthly = amount * Decimal("30.44") / count
    elif unit == IntervalUnit.weekly:
        monthly = amount * Decimal("4.35") / count
    elif unit == IntervalUnit.monthly:
        monthly = amount / count
    else:
        monthly = amount / (12 * count)
    return int(monthly.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def recurring_statistics(templates: Iterable[RecurringTemplate]) -> dict[str, object]:
    total = 0
    by_category: dict[str, int] = {}
    active_count = 0
    inactive_count = 0
    for template in templates:
        if not template.active:
            inactive_count += 1
            continue
        try:
            monthly = monthly_amount_cents(template)
        except ValidationError:
            logger.warning(f"recurring_stats_skip: template={template.id}")
            continue
        active_count += 1
        total += monthly
        by_category[template.category] = by_category.get(template.category, 0) + monthly

    breakdown = [
        {
            "category": name,
            "amount_cents": amount,
            "percent": (amount / total * 100) if total > 0 else 0,
        }
        for name, amount in sorted(by_category.items(), key=lambda x: x[1], reverse=True)
    ]
    return {
        "total_monthly_cents": total,
        "breakdown": breakdown,
        "template_counts": {
            "active": active_count,
            "inactive": inactive_count,
            "total": active_count + inactive_count,
        },
    }


class RecurrenceEngine:
    def __init__(self, max_occurrences: Optional[int] = None) -> None:
        self.max_occurrences = max_occurrences or get_settings().max_catch_up

    def generate_due_expenses(
        self,
        as_of: date,
        templates: Iterable[RecurringTemplate],
        sink: ExpenseSink,
    ) -> list[Expense]:
        """Materialize every due occurrence up to ``as_of`` exactly once.

        Each template's watermark (``last_generated_date``) moves to the last
        emitted date, so a second call with the same ``as_of`` emits nothing.
        A malformed template is skipped without emitting anything for it;
        the remaining templates are still processed.
        """
        created: list[Expense] = []
        for template in templates:
            if not template.active:
                continue
            try:
                emitted = self.generate_for_template(template, as_of, sink)
            except ValidationError as exc:
                logger.warning(f"recurring_skip: template={template.id} error={exc}")
                continue
            if emitted:
                logger.info(
                    f"recurring_posted: template={template.id} "
                    f"occurrences={len(emitted)} "
                    f"watermark={template.last_generated_date}"
                )
            created.extend(emitted)
        return created

    def generate_for_template(
        self, template: RecurringTemplate, as_of: date, sink: ExpenseSink
    ) -> list[Expense]:
        if not template.active:
            return []
        dates = pending_dates(template, as_of, limit=self.max_occurrences)
        if not dates:
            return []
        if len(dates) == self.max_occurrences:
            logger.info(
                f"recurring_catch_up_capped: template={template.id} "
                f"limit={self.max_occurrences}"
            )

        # Build and validate every occurrence before emitting the first one.
        payloads = [
            (occurrence, self._occurrence_input(template, occurrence))
            for occurrence in dates
        ]
        created: list[Expense] = []
        for occurrence, payload in payloads:
            if sink.find_occurrence(template.id, occurrence) is not None:
                continue
            created.append(sink.create(payload, origin_template_id=template.id))

        last = dates[-1]
        if template.last_generated_date is None or last > template.last_generated_date:
            template.last_generated_date = last
        return created

    @staticmethod
    def _occurrence_input(template: RecurringTemplate, occurrence: date) -> ExpenseIn:
        return load_input(
            ExpenseIn,
            {
                "title": template.title,
                "amount_cents": template.amount_cents,
                "date": occurrence,
                "category": template.category,
                "notes": template.notes,
                "currency_code": template.currency_code,
            },
        )

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from ledger import Drift


class ValidationError(ValueError):
    """Malformed input, rejected before any state change."""


class NotFoundError(ValueError):
    pass


class ConsistencyError(RuntimeError):
    """Incrementally maintained budget totals disagree with a full recomputation."""

    def __init__(self, drifts: Sequence["Drift"]) -> None:
        self.drifts = list(drifts)
        summary = ", ".join(
            f"{d.key.category}/{d.key.year}-{d.key.month:02d}: "
            f"tracked={d.tracked_cents} actual={d.actual_cents}"
            for d in self.drifts[:5]
        )
        more = f" (+{len(self.drifts) - 5} more)" if len(self.drifts) > 5 else ""
        super().__init__(f"Budget totals drifted for {len(self.drifts)} bucket(s): {summary}{more}")


class StorageError(RuntimeError):
    pass

"""
bill_projector.py
------------------
Due-date projection and the bill views built on it.

    project()               last payment + one period -> next_due_date
    upcoming()              bills due within a lookahead window
    missed()                bills whose due date passed without a payment
    due_for_notification()  bills inside their per-type reminder window

Monthly, quarterly and yearly periods are calendar based (relativedelta),
so a payment on Jan 31 is next due on the last day of February.
Patterns excluded from bills never appear in any of the views.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Iterable, List, Optional

from dateutil.relativedelta import relativedelta

from config.config_loader import get_bill_projection_config, get_frequency_period_days
from core.models import RecurringPattern

logger = logging.getLogger(__name__)


_CALENDAR_STEPS = {
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}


@dataclass(frozen=True)
class MissedPayment:
    """A bill whose projected due date has passed."""
    pattern: RecurringPattern
    days_past_due: int
    status: str                      # "late" | "overdue"
    urgency: str                     # "low" | "medium" | "high"


class BillProjector:
    """
    Usage:
        projector = BillProjector()
        pattern = projector.project(pattern, as_of=date.today())
        bills = projector.upcoming(patterns, as_of=date.today(), horizon_days=7)
    """

    def __init__(self):
        self.config = get_bill_projection_config()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def project(self, pattern: RecurringPattern, as_of: Optional[date] = None) -> RecurringPattern:
        """
        Returns a copy of the pattern with next_due_date derived from its
        last_transaction_date. Both dates are always written together.
        Unknown frequency gives no due date.

        With roll_forward_past_due enabled, a due date before as_of is
        advanced by whole periods until it is on or after as_of.
        """
        last = pattern.last_transaction_date
        next_due = self.next_due_date(last, pattern.frequency)

        if next_due is not None and as_of is not None and self.config["roll_forward_past_due"]:
            periods = 1
            while next_due < as_of:
                periods += 1
                next_due = self.next_due_date(last, pattern.frequency, periods)

        return replace(pattern, last_transaction_date=last, next_due_date=next_due)

    def next_due_date(self, last_date: date, frequency: str, periods: int = 1) -> Optional[date]:
        """last_date advanced by `periods` whole periods; None for an unknown frequency."""
        if frequency in _CALENDAR_STEPS:
            return last_date + _CALENDAR_STEPS[frequency] * periods
        if frequency in ("weekly", "biweekly"):
            return last_date + timedelta(days=get_frequency_period_days(frequency) * periods)
        return None

    def upcoming(
        self,
        patterns: Iterable[RecurringPattern],
        as_of: date,
        horizon_days: Optional[int] = None,
    ) -> List[RecurringPattern]:
        """
        Bills due in [as_of, as_of + horizon_days], soonest first; on the same
        day the larger bill comes first.
        """
        if horizon_days is None:
            horizon_days = self.config["default_horizon_days"]
        horizon_end = as_of + timedelta(days=horizon_days)

        due = [
            p for p in patterns
            if not p.exclude_from_bills
            and p.next_due_date is not None
            and as_of <= p.next_due_date <= horizon_end
        ]
        return sorted(due, key=self._bill_order)

    def missed(
        self,
        patterns: Iterable[RecurringPattern],
        as_of: date,
        grace_days: Optional[int] = None,
    ) -> List[MissedPayment]:
        """
        Bills whose due date passed at most grace_days ago, most overdue first.
        Up to late_max_days past due is "late", beyond that "overdue".
        """
        if grace_days is None:
            grace_days = self.config["missed_grace_days"]

        missed = []
        for pattern in patterns:
            if pattern.exclude_from_bills or pattern.next_due_date is None:
                continue
            days_past_due = (as_of - pattern.next_due_date).days
            if not 0 < days_past_due <= grace_days:
                continue
            missed.append(MissedPayment(
                pattern=pattern,
                days_past_due=days_past_due,
                status="overdue" if days_past_due > self.config["late_max_days"] else "late",
                urgency=self._urgency(days_past_due),
            ))

        if missed:
            logger.info(f"{len(missed)} bills past due as of {as_of.isoformat()}.")
        return sorted(missed, key=lambda m: (-m.days_past_due, self._bill_order(m.pattern)))

    def due_for_notification(self, patterns: Iterable[RecurringPattern], as_of: date) -> List[RecurringPattern]:
        """Bills whose reminder window (notification_days before the due date) contains as_of."""
        due = [
            p for p in patterns
            if not p.exclude_from_bills
            and p.next_due_date is not None
            and p.notification_days > 0
            and p.next_due_date - timedelta(days=p.notification_days) <= as_of <= p.next_due_date
        ]
        return sorted(due, key=self._bill_order)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _urgency(self, days_past_due: int) -> str:
        if days_past_due > self.config["high_urgency_after_days"]:
            return "high"
        if days_past_due > self.config["medium_urgency_after_days"]:
            return "medium"
        return "low"

    @staticmethod
    def _bill_order(pattern: RecurringPattern) -> tuple:
        return (pattern.next_due_date, -pattern.avg_amount, pattern.merchant_name, pattern.id)

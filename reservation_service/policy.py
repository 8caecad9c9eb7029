import datetime
from typing import Callable

from .models import BookingStatus

# (now in naive UTC, check-in date, current status) -> may the booking be canceled?
CancellationPolicy = Callable[[datetime.datetime, datetime.date, BookingStatus], bool]


def window_policy(cutoff_hours: int) -> CancellationPolicy:
    """
    Unpaid holds can always be dropped. Confirmed stays can be canceled, with
    a full refund, until `cutoff_hours` before check-in (00:00 UTC on the
    start date) and not at all after that.
    """
    cutoff = datetime.timedelta(hours=cutoff_hours)

    def allows(now: datetime.datetime, start_date: datetime.date, status: BookingStatus) -> bool:
        if status == BookingStatus.PENDING_PAYMENT:
            return True
        if status == BookingStatus.CONFIRMED:
            check_in = datetime.datetime.combine(start_date, datetime.time.min)
            return now <= check_in - cutoff
        return False

    return allows

from .recurrence import Recurrence
from .booking import Booking, BookingStatus, BookingStatusHistory, ImmutableHistoryError
from .availability import ProviderAvailability

__all__ = [
    "Booking",
    "BookingStatus",
    "BookingStatusHistory",
    "ImmutableHistoryError",
    "ProviderAvailability",
    "Recurrence",
]

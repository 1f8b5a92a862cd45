from .crud_booking import booking, booking_transaction

__all__ = ["booking", "booking_transaction"]

# backend/booking_core/api/api_booking.py

import logging
from datetime import datetime
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import ORJSONResponse
from sqlalchemy.orm import Session

from .. import crud
from ..crud import booking_transaction
from ..database import get_db
from ..models import Booking
from ..models.booking_status import BookingKind
from ..schemas.booking import (
    AddonLineCreate,
    AddonLinePriceUpdate,
    BookingCreate,
    BookingResponse,
    BookingStatusUpdate,
    ManualBookingCreate,
    to_naive_utc,
)
from ..utils import error_response

router = APIRouter(tags=["bookings"], default_response_class=ORJSONResponse)
logger = logging.getLogger(__name__)
# ‣ Note: no prefix here.  main.py already does:
#     app.include_router(router, prefix="/api/v1/bookings", …)


def _get_or_404(db: Session, booking_id: int) -> Booking:
    db_booking = crud.booking.get_booking(db, booking_id)
    if db_booking is None:
        raise error_response(
            "Booking not found",
            {"booking_id": "not found"},
            status.HTTP_404_NOT_FOUND,
            log_level=logging.INFO,
        )
    return db_booking


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    *,
    db: Session = Depends(get_db),
    booking_in: BookingCreate,
) -> Any:
    """
    Book a zero-fee (internal) provider directly. Providers that charge the
    platform fee are booked by the payment webhook once the fee settles.
    """
    return crud.booking.reserve(db, booking_in, BookingKind.INTERNAL)


@router.post("/manual", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_manual_booking(
    *,
    db: Session = Depends(get_db),
    booking_in: ManualBookingCreate,
) -> Any:
    """Administrative entry with caller-supplied amounts."""
    return crud.booking.reserve(
        db, booking_in, BookingKind.MANUAL, manual_amounts=booking_in.manual_amounts()
    )


@router.get("/provider/{provider_id}", response_model=List[BookingResponse])
def list_provider_bookings(
    provider_id: int,
    window_start: Optional[datetime] = Query(None),
    window_end: Optional[datetime] = Query(None),
    include_cancelled: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> Any:
    with booking_transaction(db):
        return crud.booking.list_provider_bookings(
            db,
            provider_id,
            window_start=to_naive_utc(window_start) if window_start else None,
            window_end=to_naive_utc(window_end) if window_end else None,
            include_cancelled=include_cancelled,
            skip=skip,
            limit=limit,
        )


@router.get("/{booking_id}", response_model=BookingResponse)
def read_booking(booking_id: int, db: Session = Depends(get_db)) -> Any:
    with booking_transaction(db):
        return crud.booking.load_view(db, _get_or_404(db, booking_id))


@router.patch("/{booking_id}/status", response_model=BookingResponse)
def update_booking_status(
    *,
    db: Session = Depends(get_db),
    booking_id: int,
    status_update: BookingStatusUpdate,
) -> Any:
    """Complete, cancel or mark a booking missed. Refund states come from the gateway only."""
    return crud.booking.update_status(db, booking_id, status_update.status)


@router.post("/{booking_id}/addons", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def add_addon_line(
    *,
    db: Session = Depends(get_db),
    booking_id: int,
    line_in: AddonLineCreate,
) -> Any:
    with booking_transaction(db):
        db_booking = crud.booking.get_booking_for_update(db, booking_id)
        crud.booking.add_addon_line(db, db_booking, line_in.addon_id)
        crud.booking.load_view(db, db_booking)
    return db_booking


@router.patch("/{booking_id}/addons/{line_id}", response_model=BookingResponse)
def change_addon_line_price(
    *,
    db: Session = Depends(get_db),
    booking_id: int,
    line_id: int,
    price_in: AddonLinePriceUpdate,
) -> Any:
    with booking_transaction(db):
        db_booking = crud.booking.get_booking_for_update(db, booking_id)
        crud.booking.change_addon_line_price(db, db_booking, line_id, price_in.price)
        crud.booking.load_view(db, db_booking)
    return db_booking


@router.delete("/{booking_id}/addons/{line_id}", response_model=BookingResponse)
def remove_addon_line(
    *,
    db: Session = Depends(get_db),
    booking_id: int,
    line_id: int,
) -> Any:
    with booking_transaction(db):
        db_booking = crud.booking.get_booking_for_update(db, booking_id)
        crud.booking.remove_addon_line(db, db_booking, line_id)
        crud.booking.load_view(db, db_booking)
    return db_booking

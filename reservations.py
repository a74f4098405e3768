"""Table reservations."""

import secrets
from datetime import date as date_type
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from database import Storage
from errors import ConflictError, InvalidRequestError, InvalidStateError, NotFoundError
from schemas import Reservation, utcnow

logger = structlog.get_logger(__name__)

CONFIRMATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CONFIRMATION_PREFIX = "HSC-"
MAX_TABLES = 10

# Café hours, one slot every 30 minutes
TIME_SLOTS = [f"{h:02d}:{m:02d}" for h in range(11, 22) for m in (0, 30) if (h, m) <= (21, 0)]


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SEATED = "seated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


_VALID_TRANSITIONS = {
    ReservationStatus.PENDING: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW},
    ReservationStatus.CONFIRMED: {ReservationStatus.SEATED, ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW},
    ReservationStatus.SEATED: {ReservationStatus.COMPLETED},
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.NO_SHOW: set(),
}

MODIFIABLE_STATES = {ReservationStatus.PENDING, ReservationStatus.CONFIRMED}
_ACTIVE = [ReservationStatus.PENDING.value, ReservationStatus.CONFIRMED.value]


def generate_confirmation_code() -> str:
    return CONFIRMATION_PREFIX + "".join(secrets.choice(CONFIRMATION_ALPHABET) for _ in range(6))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _get(storage: Storage, reservation_id: str) -> Reservation:
    doc = storage.get("reservation", reservation_id)
    if not doc:
        raise NotFoundError("Reservation")
    return Reservation.model_validate(doc)


def create_reservation(
    storage: Storage,
    guest_name: str,
    guest_email: str,
    guest_phone: str,
    date: datetime,
    time: str,
    party_size: int,
    user_id: Optional[str] = None,
    occasion: Optional[str] = None,
    special_requests: Optional[str] = None,
) -> Reservation:
    date = _aware(date)
    if date < utcnow():
        raise InvalidRequestError("Reservation date must be in the future")
    if time not in TIME_SLOTS:
        raise InvalidRequestError(f"Invalid time slot: {time}")

    reservation = None
    for _ in range(10):
        code = generate_confirmation_code()
        if storage.find_one("reservation", {"confirmation_code": code}) is None:
            reservation = Reservation(
                user_id=user_id,
                guest_name=guest_name,
                guest_email=guest_email.lower(),
                guest_phone=guest_phone,
                date=date,
                time=time,
                party_size=party_size,
                occasion=occasion,
                special_requests=special_requests,
                confirmation_code=code,
            )
            break
    if reservation is None:
        raise RuntimeError("Could not allocate a unique confirmation code")

    with storage.lock(_slot_lock_key(date, time)):
        _check_capacity(storage, date, time)
        reservation.id = storage.insert("reservation", reservation.to_document())
    logger.info("reservation_created", confirmation_code=reservation.confirmation_code, party_size=party_size)
    return reservation


def get_reservation(storage: Storage, reservation_id: str) -> Reservation:
    return _get(storage, reservation_id)


def lookup(storage: Storage, code: str) -> Reservation:
    doc = storage.find_one("reservation", {"confirmation_code": code.upper()})
    if not doc:
        raise NotFoundError("Reservation")
    return Reservation.model_validate(doc)


def list_user_reservations(
    storage: Storage, user_id: str, status: Optional[str] = None, upcoming: bool = False
) -> List[Reservation]:
    query: Dict[str, Any] = {"user_id": user_id}
    if status:
        query["status"] = status
    if upcoming:
        query["date"] = {"$gte": utcnow()}
        query["status"] = {"$in": _ACTIVE}
    docs = storage.find("reservation", query, sort=[("date", -1)], limit=20)
    return [Reservation.model_validate(d) for d in docs]


def update_reservation(
    storage: Storage,
    reservation_id: str,
    date: Optional[datetime] = None,
    time: Optional[str] = None,
    party_size: Optional[int] = None,
    special_requests: Optional[str] = None,
) -> Reservation:
    reservation = _get(storage, reservation_id)
    if ReservationStatus(reservation.status) not in MODIFIABLE_STATES:
        raise InvalidStateError(reservation.status)

    changes: Dict[str, Any] = {"updated_at": utcnow()}
    if date:
        changes["date"] = _aware(date)
    if time:
        if time not in TIME_SLOTS:
            raise InvalidRequestError(f"Invalid time slot: {time}")
        changes["time"] = time
    if party_size:
        changes["party_size"] = party_size
    if special_requests is not None:
        changes["special_requests"] = special_requests

    if "date" in changes or "time" in changes:
        new_date = changes.get("date", _aware(reservation.date))
        new_time = changes.get("time", reservation.time)
        with storage.lock(_slot_lock_key(new_date, new_time)):
            _check_capacity(storage, new_date, new_time, exclude_id=reservation_id)
            storage.update("reservation", reservation_id, set_fields=changes)
    else:
        storage.update("reservation", reservation_id, set_fields=changes)
    return reservation.model_copy(update=changes)


def change_status(
    storage: Storage,
    reservation_id: str,
    status: str,
    reason: Optional[str] = None,
    table_number: Optional[int] = None,
) -> Reservation:
    try:
        target = ReservationStatus(status)
    except ValueError:
        raise InvalidRequestError(f"Invalid status: {status}")

    reservation = _get(storage, reservation_id)
    current = ReservationStatus(reservation.status)
    if target not in _VALID_TRANSITIONS[current]:
        raise InvalidStateError(current.value, target.value)

    changes: Dict[str, Any] = {"status": target.value, "updated_at": utcnow()}
    if target == ReservationStatus.CANCELLED:
        changes["cancelled_at"] = changes["updated_at"]
        changes["cancellation_reason"] = reason
    if table_number is not None:
        changes["table_number"] = table_number

    if not storage.update("reservation", reservation_id, set_fields=changes, query={"status": current.value}):
        raise InvalidStateError(_get(storage, reservation_id).status, target.value)

    logger.info("reservation_status_changed", confirmation_code=reservation.confirmation_code, status=target.value)
    return reservation.model_copy(update=changes)


def cancel_reservation(storage: Storage, reservation_id: str, reason: Optional[str] = None) -> Reservation:
    reservation = _get(storage, reservation_id)
    if ReservationStatus(reservation.status) not in MODIFIABLE_STATES:
        raise InvalidStateError(reservation.status)
    return change_status(storage, reservation_id, ReservationStatus.CANCELLED.value, reason=reason)


def _active_on(storage: Storage, day: date_type, time: Optional[str] = None) -> List[Dict[str, Any]]:
    start = datetime.combine(day, datetime.min.time(), tzinfo=timezone.utc)
    query: Dict[str, Any] = {
        "date": {"$gte": start, "$lt": start + timedelta(days=1)},
        "status": {"$in": _ACTIVE},
    }
    if time:
        query["time"] = time
    return storage.find("reservation", query)


def _check_capacity(storage: Storage, date: datetime, time: str, exclude_id: Optional[str] = None) -> None:
    booked = [r for r in _active_on(storage, date.astimezone(timezone.utc).date(), time) if r["id"] != exclude_id]
    if len(booked) >= MAX_TABLES:
        raise ConflictError(f"No tables left at {time}")


def _slot_lock_key(date: datetime, time: str) -> str:
    return f"slot:{date.astimezone(timezone.utc).date().isoformat()}:{time}"


def available_slots(storage: Storage, day: date_type) -> List[Dict[str, Any]]:
    booked = _active_on(storage, day)

    counts: Dict[str, int] = {}
    for doc in booked:
        counts[doc["time"]] = counts.get(doc["time"], 0) + 1

    return [
        {
            "time": slot,
            "available": counts.get(slot, 0) < MAX_TABLES,
            "remaining": max(0, MAX_TABLES - counts.get(slot, 0)),
        }
        for slot in TIME_SLOTS
    ]

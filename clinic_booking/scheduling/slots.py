"""
Slot generation.

Bookable slots are computed on every query from a doctor's availability rules
minus the windows held by active appointments. Nothing here is persisted or
cached.

Rule resolution for a single day:

1. Available date overrides for the day replace the weekday's recurring rules.
2. Without one, every recurring rule for the weekday applies.
3. Unavailable date overrides remove every slot overlapping their window.

Each window is cut into back-to-back slices of its slot duration; a trailing
slice that would run past the window end is dropped. Slots produced by more
than one rule are reported once.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator

from sqlalchemy.orm import Session

from clinic_booking.core import config
from clinic_booking.models.appointment import Appointment
from clinic_booking.models.availability import DateOverride, DoctorAvailability, RecurringRule
from clinic_booking.models.doctor import Doctor
from clinic_booking.scheduling.errors import InvalidRequest, NotFound, PolicyViolation
from clinic_booking.scheduling.overlap import active_appointment_filter


@dataclass(frozen=True)
class Slot:
    doctor_id: int
    start: datetime
    duration_minutes: int
    is_available: bool

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class CalendarDay:
    date: date
    total_slots: int
    available_slots: int
    unavailable_slots: int


def load_rules(db: Session, doctor_id: int) -> list[RecurringRule | DateOverride]:
    rows = db.query(DoctorAvailability).filter(DoctorAvailability.doctor_id == doctor_id).all()
    return [row.to_rule() for row in rows]


def resolve_day_rules(rules: Iterable[RecurringRule | DateOverride], day: date) -> list[RecurringRule | DateOverride]:
    """Rules that open time on `day`: available overrides if any, else the recurring rules."""
    rules = list(rules)
    overrides = [rule for rule in rules if isinstance(rule, DateOverride) and rule.date == day and rule.is_available]
    if overrides:
        return overrides
    return [rule for rule in rules if isinstance(rule, RecurringRule) and rule.day_of_week == day.weekday()]


def day_slot_windows(rules: Iterable[RecurringRule | DateOverride], day: date) -> list[tuple[datetime, datetime]]:
    rules = list(rules)
    closed = [
        (datetime.combine(day, rule.start), datetime.combine(day, rule.end))
        for rule in rules
        if isinstance(rule, DateOverride) and rule.date == day and not rule.is_available
    ]

    windows: set[tuple[datetime, datetime]] = set()
    for rule in resolve_day_rules(rules, day):
        step = timedelta(minutes=rule.slot_duration_minutes)
        current = datetime.combine(day, rule.start)
        window_end = datetime.combine(day, rule.end)

        while current + step <= window_end:
            slot_end = current + step
            if not any(current < closed_end and slot_end > closed_start for closed_start, closed_end in closed):
                windows.add((current, slot_end))
            current = slot_end

    return sorted(windows)


def require_bookable_doctor(db: Session, doctor_id: int) -> Doctor:
    doctor = db.query(Doctor).filter(Doctor.id == doctor_id).first()
    if doctor is None:
        raise NotFound(f'Doctor {doctor_id} not found.')
    if not doctor.is_available:
        raise PolicyViolation('This doctor is not accepting appointments.')
    return doctor


def _validate_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise InvalidRequest('The date range is empty.')
    if (end_date - start_date).days + 1 > config.MAX_SLOT_RANGE_DAYS:
        raise InvalidRequest(f'The date range cannot exceed {config.MAX_SLOT_RANGE_DAYS} days.')


class SlotSequence:
    """Lazily evaluated slots for a doctor and date range.

    Iterating reads the current rules and appointments, so iterating again
    reflects any booking made in between.
    """

    def __init__(self, db: Session, doctor_id: int, start_date: date, end_date: date, now: datetime | None = None):
        self.db = db
        self.doctor_id = doctor_id
        self.start_date = start_date
        self.end_date = end_date
        self.now = now

    def __iter__(self) -> Iterator[Slot]:
        now = self.now or datetime.now()
        range_start = datetime.combine(self.start_date, time.min)
        range_end = datetime.combine(self.end_date + timedelta(days=1), time.min)

        rules = load_rules(self.db, self.doctor_id)
        busy = self.db.query(Appointment.start_time, Appointment.end_time).filter(
            Appointment.doctor_id == self.doctor_id,
            Appointment.start_time < range_end,
            Appointment.end_time > range_start,
            active_appointment_filter(now),
        ).all()

        current_day = self.start_date
        while current_day <= self.end_date:
            for slot_start, slot_end in day_slot_windows(rules, current_day):
                is_available = slot_start > now and not any(
                    slot_start < busy_end and slot_end > busy_start for busy_start, busy_end in busy
                )
                yield Slot(
                    doctor_id=self.doctor_id,
                    start=slot_start,
                    duration_minutes=int((slot_end - slot_start).total_seconds() // 60),
                    is_available=is_available,
                )
            current_day += timedelta(days=1)


def iter_slots(
    db: Session,
    doctor_id: int,
    start_date: date,
    end_date: date | None = None,
    now: datetime | None = None,
) -> SlotSequence:
    end_date = end_date or start_date
    _validate_range(start_date, end_date)
    require_bookable_doctor(db, doctor_id)
    return SlotSequence(db, doctor_id, start_date, end_date, now)


def get_available_slots(
    db: Session,
    doctor_id: int,
    start_date: date,
    end_date: date | None = None,
    now: datetime | None = None,
) -> list[Slot]:
    return [slot for slot in iter_slots(db, doctor_id, start_date, end_date, now) if slot.is_available]


def fits_schedule(db: Session, doctor_id: int, start: datetime, duration_minutes: int) -> bool:
    """Whether [start, start + duration) is exactly covered by consecutive slots of the day."""
    end = start + timedelta(minutes=duration_minutes)

    ends_by_start: dict[datetime, set[datetime]] = defaultdict(set)
    for slot_start, slot_end in day_slot_windows(load_rules(db, doctor_id), start.date()):
        ends_by_start[slot_start].add(slot_end)

    reached = {start}
    pending = [start]
    while pending:
        current = pending.pop()
        if current == end:
            return True
        for slot_end in ends_by_start.get(current, ()):
            if slot_end <= end and slot_end not in reached:
                reached.add(slot_end)
                pending.append(slot_end)

    return False


def calendar_view(
    db: Session,
    doctor_id: int,
    start_date: date,
    end_date: date,
    now: datetime | None = None,
) -> list[CalendarDay]:
    totals: dict[date, list[int]] = {}
    current_day = start_date
    while current_day <= end_date:
        totals[current_day] = [0, 0]
        current_day += timedelta(days=1)

    for slot in iter_slots(db, doctor_id, start_date, end_date, now):
        counts = totals[slot.start.date()]
        counts[0] += 1
        if slot.is_available:
            counts[1] += 1

    return [
        CalendarDay(date=day, total_slots=total, available_slots=available, unavailable_slots=total - available)
        for day, (total, available) in totals.items()
    ]

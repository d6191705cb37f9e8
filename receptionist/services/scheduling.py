"""Scheduling engine: slot generation, booking and cancellation.

All appointment times are stored in UTC. Dates and times coming from the
caller are tenant-local and are converted through the tenant's timezone at the
edges of every operation.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receptionist.models.appointment import Appointment, AppointmentStatus
from receptionist.models.blackout_date import BlackoutDate
from receptionist.models.customer import Customer
from receptionist.models.service import Service
from receptionist.models.tenant import Tenant
from receptionist.schemas.scheduling import AvailabilityResult, BookingResult, CancellationResult
from receptionist.services.tenants import TenantConfig, WorkingHours

logger = structlog.get_logger()

# Number of example times read back to the caller
SUMMARY_SLOT_COUNT = 5

UNAVAILABLE_MESSAGE = "This time slot is no longer available. Please choose another time."


def generate_slots(
    window_start: time,
    window_end: time,
    slot_minutes: int,
    buffer_minutes: int = 0,
) -> list[time]:
    """Candidate start times inside a working window.

    Walks from ``window_start`` in steps of ``slot_minutes + buffer_minutes``
    and keeps every start whose slot ends at or before ``window_end``.
    """
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")

    step = slot_minutes + max(buffer_minutes, 0)
    current = window_start.hour * 60 + window_start.minute
    end = window_end.hour * 60 + window_end.minute

    slots = []
    while current + slot_minutes <= end:
        slots.append(time(current // 60, current % 60))
        current += step
    return slots


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap test."""
    return start_a < end_b and end_a > start_b


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite returns naive values; they are always written in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_date(value: str) -> date:
    return datetime.strptime(value.strip(), "%Y-%m-%d").date()


def parse_time(value: str) -> time:
    value = value.strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid time {value!r}")


def summarize_slots(day: date, slots: list[time]) -> str:
    """Spoken summary capped at a few example times."""
    shown = ", ".join(f"{s:%H:%M}" for s in slots[:SUMMARY_SLOT_COUNT])
    remaining = len(slots) - SUMMARY_SLOT_COUNT
    message = f"Available times on {day.isoformat()}: {shown}"
    if remaining > 0:
        message += f" and {remaining} more"
    return message


class SchedulingEngine:
    """Tenant-scoped appointment operations.

    Every operation opens its own session from the factory, so the engine can be
    called from concurrently running tool invocations of the same call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant: TenantConfig,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.tenant = tenant
        self.clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger.bind(component="scheduling", tenant_id=str(tenant.tenant_id))

    def now_local(self) -> datetime:
        return self.clock().astimezone(self.tenant.zone)

    def local_datetime(self, day: date, at: time) -> datetime:
        return datetime.combine(day, at, tzinfo=self.tenant.zone)

    def day_bounds_utc(self, day: date) -> tuple[datetime, datetime]:
        """UTC bounds of the tenant-local day ``[00:00, next 00:00)``."""
        start = self.local_datetime(day, time.min).astimezone(UTC)
        end = self.local_datetime(day + timedelta(days=1), time.min).astimezone(UTC)
        return start, end

    async def check_availability(self, date: str) -> AvailabilityResult:
        """List open start times on a tenant-local date."""
        try:
            day = parse_date(date)
        except ValueError:
            return AvailabilityResult(
                success=False,
                available=False,
                date=date,
                message="Invalid date format. Please use YYYY-MM-DD.",
                reason="invalid_date",
            )

        async with self.session_factory() as db:
            closed_message = await self._closed_message(db, day)
            if closed_message:
                return AvailabilityResult(
                    available=False, closed=True, date=day.isoformat(), message=closed_message
                )

            hours = self.tenant.hours_for(day)
            slots = await self._open_slots(db, day, hours)

        self.logger.info("availability_checked", date=day.isoformat(), slot_count=len(slots))

        if not slots:
            return AvailabilityResult(
                available=False,
                date=day.isoformat(),
                message="No available slots on this date.",
            )

        return AvailabilityResult(
            available=True,
            date=day.isoformat(),
            slots=[f"{s:%H:%M}" for s in slots],
            message=summarize_slots(day, slots),
        )

    async def book_appointment(
        self,
        customer_name: str,
        customer_phone: str,
        date: str,
        time: str,
        service: str | None = None,
        notes: str | None = None,
        call_record_id: uuid.UUID | None = None,
    ) -> BookingResult:
        """Book a slot after re-checking it inside a tenant-locked transaction."""
        customer_name = (customer_name or "").strip()
        customer_phone = (customer_phone or "").strip()
        try:
            day = parse_date(date)
            start_time = parse_time(time)
        except ValueError:
            return BookingResult(
                success=False,
                reason="invalid_input",
                message="Invalid date or time. Please use YYYY-MM-DD and HH:MM.",
            )
        if not customer_name or not customer_phone:
            return BookingResult(
                success=False,
                reason="invalid_input",
                message="A customer name and phone number are required to book.",
            )

        log = self.logger.bind(date=day.isoformat(), time=f"{start_time:%H:%M}")

        try:
            async with self.session_factory() as db, db.begin():
                # Serializes bookings per tenant between the re-check and the insert
                await db.execute(
                    select(Tenant.id).where(Tenant.id == self.tenant.tenant_id).with_for_update()
                )

                closed_message = await self._closed_message(db, day)
                if closed_message:
                    log.info("booking_rejected", reason="closed")
                    return BookingResult(success=False, reason="unavailable", message=closed_message)

                slots = await self._open_slots(db, day, self.tenant.hours_for(day))
                if start_time not in slots:
                    log.info("booking_rejected", reason="unavailable")
                    return BookingResult(success=False, reason="unavailable", message=UNAVAILABLE_MESSAGE)

                customer = await self._upsert_customer(db, customer_phone, customer_name)
                matched_service = await self._match_service(db, service) if service else None

                appointment = Appointment(
                    tenant_id=self.tenant.tenant_id,
                    customer_id=customer.id,
                    service_id=matched_service.id if matched_service else None,
                    call_record_id=call_record_id,
                    customer_name=customer_name,
                    customer_phone=customer_phone,
                    service_name=matched_service.name if matched_service else service,
                    scheduled_at=self.local_datetime(day, start_time).astimezone(UTC),
                    duration_minutes=self.tenant.slot_duration_minutes,
                    status=AppointmentStatus.CONFIRMED,
                    notes=notes,
                )
                db.add(appointment)
                await db.flush()

                appointment_id = appointment.id
                customer_id = customer.id

        except IntegrityError:
            # A concurrent booking took the slot between the re-check and the insert
            log.info("booking_rejected", reason="conflict")
            return BookingResult(success=False, reason="unavailable", message=UNAVAILABLE_MESSAGE)
        except SQLAlchemyError:
            log.exception("booking_failed")
            return BookingResult(
                success=False,
                reason="persistence_error",
                message="Sorry, I could not complete the booking. Please try again.",
            )

        log.info("appointment_booked", appointment_id=str(appointment_id))
        return BookingResult(
            success=True,
            message=f"Appointment confirmed for {customer_name} on {day.isoformat()} at {start_time:%H:%M}",
            appointment_id=appointment_id,
            customer_id=customer_id,
        )

    async def cancel_appointment(self, customer_phone: str, date: str | None = None) -> CancellationResult:
        """Cancel a caller's confirmed appointments, optionally on one local date."""
        customer_phone = (customer_phone or "").strip()
        if not customer_phone:
            return CancellationResult(
                success=False, reason="invalid_input", message="A phone number is required to cancel."
            )

        day = None
        if date:
            try:
                day = parse_date(date)
            except ValueError:
                return CancellationResult(
                    success=False,
                    reason="invalid_input",
                    message="Invalid date format. Please use YYYY-MM-DD.",
                )

        query = select(Appointment).where(
            Appointment.tenant_id == self.tenant.tenant_id,
            Appointment.customer_phone == customer_phone,
            Appointment.status == AppointmentStatus.CONFIRMED,
        )
        if day is not None:
            start, end = self.day_bounds_utc(day)
            query = query.where(Appointment.scheduled_at >= start, Appointment.scheduled_at < end)

        try:
            async with self.session_factory() as db, db.begin():
                result = await db.execute(query)
                appointments = list(result.scalars().all())
                cancelled_at = self.clock().astimezone(UTC)
                for appointment in appointments:
                    appointment.status = AppointmentStatus.CANCELLED
                    appointment.cancelled_at = cancelled_at
        except SQLAlchemyError:
            self.logger.exception("cancellation_failed")
            return CancellationResult(
                success=False,
                reason="persistence_error",
                message="Sorry, I could not cancel the appointment. Please try again.",
            )

        if not appointments:
            self.logger.info("cancellation_not_found")
            return CancellationResult(success=False, reason="not_found", message="No appointment found to cancel")

        self.logger.info("appointments_cancelled", count=len(appointments))
        return CancellationResult(
            success=True,
            message=f"Cancelled {len(appointments)} appointment(s)",
            cancelled_count=len(appointments),
        )

    async def _closed_message(self, db: AsyncSession, day: date) -> str | None:
        """Return the spoken reason the tenant is closed on ``day``, if it is."""
        today = self.now_local().date()
        if day < today:
            return "Sorry, that date is in the past."
        if day > today + timedelta(days=self.tenant.max_advance_days):
            return f"Sorry, we only take bookings up to {self.tenant.max_advance_days} days in advance."

        blackout = await db.execute(
            select(BlackoutDate.id).where(
                BlackoutDate.tenant_id == self.tenant.tenant_id,
                BlackoutDate.day == day,
            )
        )
        if blackout.first() is not None:
            return "Sorry, we are closed on this date."

        if self.tenant.hours_for(day) is None:
            return f"Sorry, we are closed on {day:%A}s."
        return None

    async def _open_slots(self, db: AsyncSession, day: date, hours: WorkingHours | None) -> list[time]:
        if hours is None:
            return []

        candidates = generate_slots(
            hours.start, hours.end, self.tenant.slot_duration_minutes, self.tenant.buffer_minutes
        )

        start_utc, end_utc = self.day_bounds_utc(day)
        result = await db.execute(
            select(Appointment.scheduled_at, Appointment.duration_minutes).where(
                Appointment.tenant_id == self.tenant.tenant_id,
                Appointment.status.in_(AppointmentStatus.ACTIVE),
                Appointment.scheduled_at >= start_utc,
                Appointment.scheduled_at < end_utc,
            )
        )
        booked = []
        for scheduled_at, duration in result.all():
            booked_start = as_utc(scheduled_at).astimezone(self.tenant.zone)
            booked.append((booked_start, booked_start + timedelta(minutes=duration)))

        now = self.now_local()
        slot_length = timedelta(minutes=self.tenant.slot_duration_minutes)

        open_slots = []
        for candidate in candidates:
            start = self.local_datetime(day, candidate)
            end = start + slot_length
            if day == now.date() and start <= now:
                continue
            if any(overlaps(start, end, b_start, b_end) for b_start, b_end in booked):
                continue
            open_slots.append(candidate)
        return open_slots

    async def _upsert_customer(self, db: AsyncSession, phone: str, name: str) -> Customer:
        result = await db.execute(
            select(Customer).where(Customer.tenant_id == self.tenant.tenant_id, Customer.phone == phone)
        )
        customer = result.scalar_one_or_none()

        if customer is None:
            customer = Customer(tenant_id=self.tenant.tenant_id, phone=phone, name=name)
            db.add(customer)
            await db.flush()
        elif name and customer.name != name:
            customer.name = name

        return customer

    async def _match_service(self, db: AsyncSession, name: str) -> Service | None:
        result = await db.execute(
            select(Service)
            .where(
                Service.tenant_id == self.tenant.tenant_id,
                Service.is_active.is_(True),
                Service.name.ilike(f"%{name.strip()}%"),
            )
            .order_by(Service.name)
            .limit(1)
        )
        return result.scalar_one_or_none()

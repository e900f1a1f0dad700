"""
Availability & Stop-Sale Tracker

Per (tour, date) the status is computed on read, never stored:

    blocked   Availability.stop_sale is set, or a StopSale covers the day/option
    sold_out  no seats left in unblocked slots
    limited   remaining seats <= 20% of total capacity
    available otherwise

Seat counts change only through reserve_seats / release_seats, which are
single conditional UPDATEs so two bookings can never both take the last seat.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Availability, AvailabilitySlot, StopSale, StopSaleLog, Tour

logger = logging.getLogger(__name__)

LIMITED_THRESHOLD = 0.2
ALL_OPTIONS_KEY = "all"

STATUS_AVAILABLE = "available"
STATUS_LIMITED = "limited"
STATUS_SOLD_OUT = "sold_out"
STATUS_BLOCKED = "blocked"

STOP_NONE = "none"
STOP_PARTIAL = "partial"
STOP_FULL = "full"

BULK_ACTIONS = ("block", "unblock", "updateSlots", "setStopSale")


# ────────────────────────────────────────────────────────────────
# Pure Helpers
# ────────────────────────────────────────────────────────────────

def slot_remaining(slot: AvailabilitySlot) -> int:
    return slot.remaining


def derive_availability_status(slots: Sequence[AvailabilitySlot], stop_sale: bool = False) -> str:
    """
    Status for one day's slots.

    Blocked slots contribute capacity but no available seats. A day with no
    slots has no managed capacity and reads as available.

    Example:
        capacity 10, booked 9  -> "limited"
        capacity 10, booked 10 -> "sold_out"
    """
    if stop_sale:
        return STATUS_BLOCKED
    if not slots:
        return STATUS_AVAILABLE

    total = sum(s.total_capacity for s in slots)
    available = sum(s.remaining for s in slots)
    if available <= 0:
        return STATUS_SOLD_OUT
    if available <= total * LIMITED_THRESHOLD:
        return STATUS_LIMITED
    return STATUS_AVAILABLE


def daterange(start: date, end: date) -> Iterable[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    start = date(year, month, 1)
    if month == 12:
        end = date(year, 12, 31)
    else:
        end = date(year, month + 1, 1) - timedelta(days=1)
    return start, end


def normalize_option_ids(option_ids: Optional[Iterable[str]]) -> list[str]:
    """Drop blanks and duplicates, keep order."""
    seen: list[str] = []
    for option_id in option_ids or []:
        if option_id and str(option_id) not in seen:
            seen.append(str(option_id))
    return seen


def aggregate_stop_sale_days(
    stop_sales: Sequence[StopSale],
    start: date,
    end: date,
    option_ids: Sequence[str] = (),
) -> dict[str, dict]:
    """
    Overlay stop-sale records onto every day in [start, end].

    Returns ``{"YYYY-MM-DD": {"status", "stoppedOptionIds", "reasons"}}``.
    An all-options record makes the day ``full``; single-option records make it
    ``partial`` until every known option is stopped, which is ``full`` again.
    """
    days = {
        day.isoformat(): {"status": STOP_NONE, "stoppedOptionIds": [], "reasons": {}}
        for day in daterange(start, end)
    }

    for stop in stop_sales:
        for day in daterange(max(start, stop.start_date), min(end, stop.end_date)):
            entry = days[day.isoformat()]
            if not stop.option_ids:
                entry["status"] = STOP_FULL
                entry["stoppedOptionIds"] = []
                if stop.reason:
                    entry["reasons"][ALL_OPTIONS_KEY] = stop.reason
                continue
            if entry["status"] == STOP_FULL:
                continue
            for option_id in stop.option_ids:
                if option_id not in entry["stoppedOptionIds"]:
                    entry["stoppedOptionIds"].append(option_id)
                if stop.reason:
                    entry["reasons"][option_id] = stop.reason
            entry["status"] = STOP_PARTIAL

    if option_ids:
        known = set(option_ids)
        for entry in days.values():
            if entry["status"] == STOP_PARTIAL and known.issubset(entry["stoppedOptionIds"]):
                entry["status"] = STOP_FULL
                entry["stoppedOptionIds"] = []
    return days


def _slot_to_dict(slot: AvailabilitySlot) -> dict:
    return {
        "id": slot.id,
        "time": slot.time,
        "capacity": slot.capacity,
        "extraCapacity": slot.extra_capacity,
        "booked": slot.booked,
        "remaining": slot.remaining,
        "blocked": slot.blocked,
        "blockReason": slot.block_reason,
        "price": slot.price,
    }


def tour_options(tour: Tour) -> list[dict]:
    return [
        {"id": str(opt["id"]), "label": opt.get("label") or opt.get("type") or "Option"}
        for opt in (tour.booking_options or [])
        if opt and opt.get("id") is not None
    ]


# ────────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────────

async def overlapping_stop_sales(
    session: AsyncSession,
    tenant_id: str,
    tour_id: int,
    start: date,
    end: date,
) -> Sequence[StopSale]:
    result = await session.execute(
        select(StopSale)
        .where(
            StopSale.tenant_id == tenant_id,
            StopSale.tour_id == tour_id,
            StopSale.start_date <= end,
            StopSale.end_date >= start,
        )
        .order_by(StopSale.start_date, StopSale.id)
    )
    return result.scalars().all()


async def is_stopped(
    session: AsyncSession,
    tenant_id: str,
    tour_id: int,
    day: date,
    option_id: Optional[str] = None,
    known_option_ids: Sequence[str] = (),
) -> bool:
    """
    True when a stop-sale closes ``day`` for the given option.

    Without an option only a full stop counts; single-option stops leave the
    other options bookable.
    """
    stops = await overlapping_stop_sales(session, tenant_id, tour_id, day, day)
    entry = aggregate_stop_sale_days(stops, day, day, known_option_ids)[day.isoformat()]
    if entry["status"] == STOP_FULL:
        return True
    return option_id is not None and option_id in entry["stoppedOptionIds"]


async def get_availability_record(
    session: AsyncSession, tour_id: int, day: date
) -> Optional[Availability]:
    result = await session.execute(
        select(Availability).where(Availability.tour_id == tour_id, Availability.date == day)
    )
    return result.scalar_one_or_none()


async def get_slots(session: AsyncSession, availability_id: int) -> Sequence[AvailabilitySlot]:
    result = await session.execute(
        select(AvailabilitySlot)
        .where(AvailabilitySlot.availability_id == availability_id)
        .order_by(AvailabilitySlot.time)
    )
    return result.scalars().all()


@dataclass
class DayStatus:
    day: date
    status: str
    slots: list[AvailabilitySlot] = field(default_factory=list)
    stop_sale_reason: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return self.status == STATUS_BLOCKED

    def to_dict(self) -> dict:
        return {
            "date": self.day.isoformat(),
            "status": self.status,
            "stopSaleReason": self.stop_sale_reason,
            "slots": [_slot_to_dict(s) for s in self.slots],
        }


async def get_day_status(
    session: AsyncSession,
    tenant_id: str,
    tour_id: int,
    day: date,
    option_id: Optional[str] = None,
    known_option_ids: Sequence[str] = (),
) -> DayStatus:
    """Availability record combined with the stop-sale overlay; blocked wins."""
    record = await get_availability_record(session, tour_id, day)
    slots = list(await get_slots(session, record.id)) if record else []

    if record is not None and record.stop_sale:
        return DayStatus(day, STATUS_BLOCKED, slots, record.stop_sale_reason)

    if await is_stopped(session, tenant_id, tour_id, day, option_id, known_option_ids):
        return DayStatus(day, STATUS_BLOCKED, slots, "Stop sale")

    return DayStatus(day, derive_availability_status(slots), slots)


async def availability_calendar(
    session: AsyncSession,
    tenant_id: str,
    tour: Tour,
    start: date,
    end: date,
) -> dict:
    """
    Stop-sale overlay plus slot status for every day in the range.

    Days without an availability record report ``availability: null``.
    """
    options = tour_options(tour)
    stops = await overlapping_stop_sales(session, tenant_id, tour.id, start, end)
    days = aggregate_stop_sale_days(stops, start, end, [o["id"] for o in options])

    result = await session.execute(
        select(Availability).where(
            Availability.tour_id == tour.id,
            Availability.date >= start,
            Availability.date <= end,
        )
    )
    records = {r.date.isoformat(): r for r in result.scalars().all()}

    for key, entry in days.items():
        record = records.get(key)
        if record is None:
            entry["availability"] = None
            continue
        slots = await get_slots(session, record.id)
        entry["availability"] = {
            "status": derive_availability_status(slots, record.stop_sale),
            "stopSale": record.stop_sale,
            "stopSaleReason": record.stop_sale_reason,
            "slots": [_slot_to_dict(s) for s in slots],
        }

    return {"tourId": tour.id, "options": options, "days": days}


# ────────────────────────────────────────────────────────────────
# Seat Counters
# ────────────────────────────────────────────────────────────────

async def reserve_seats(session: AsyncSession, slot_id: int, guests: int) -> bool:
    """
    Take ``guests`` seats from a slot in one conditional UPDATE.

    Returns False (and changes nothing) when the slot is blocked or would
    exceed capacity + extra capacity.
    """
    if guests <= 0:
        raise ValueError("guests must be positive")
    result = await session.execute(
        update(AvailabilitySlot)
        .where(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.blocked.is_(False),
            AvailabilitySlot.booked + guests
            <= AvailabilitySlot.capacity + AvailabilitySlot.extra_capacity,
        )
        .values(booked=AvailabilitySlot.booked + guests)
        .execution_options(synchronize_session=False)
    )
    reserved = result.rowcount == 1
    if not reserved:
        logger.info(f"Slot {slot_id} cannot take {guests} more guests")
    return reserved


async def release_seats(session: AsyncSession, slot_id: int, guests: int) -> None:
    """Give seats back, never dropping below zero."""
    await session.execute(
        update(AvailabilitySlot)
        .where(AvailabilitySlot.id == slot_id)
        .values(
            booked=case(
                (AvailabilitySlot.booked >= guests, AvailabilitySlot.booked - guests),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


# ────────────────────────────────────────────────────────────────
# Admin Writes
# ────────────────────────────────────────────────────────────────

async def _sync_slots(session: AsyncSession, availability: Availability, slots: Sequence[dict]) -> None:
    """
    Make the day's slots match ``slots`` (keyed by time).

    Slots that already hold bookings are kept even when left out.
    """
    existing = {s.time: s for s in await get_slots(session, availability.id)}
    wanted = set()

    for data in slots:
        slot_time = data["time"]
        wanted.add(slot_time)
        slot = existing.get(slot_time)
        if slot is None:
            slot = AvailabilitySlot(availability_id=availability.id, time=slot_time, booked=0)
            session.add(slot)
        slot.capacity = data.get("capacity", slot.capacity if slot.capacity is not None else 10)
        slot.extra_capacity = data.get("extra_capacity", slot.extra_capacity or 0)
        slot.blocked = data.get("blocked", bool(slot.blocked))
        slot.block_reason = data.get("block_reason", slot.block_reason)
        slot.price = data.get("price", slot.price)
        if data.get("booked") is not None:
            slot.booked = data["booked"]

    for slot_time, slot in existing.items():
        if slot_time in wanted:
            continue
        if slot.booked:
            logger.warning(
                f"Keeping slot {slot_time} on availability {availability.id}: {slot.booked} seats booked"
            )
            continue
        await session.delete(slot)
    await session.flush()


async def upsert_availability(
    session: AsyncSession,
    *,
    tenant_id: str,
    tour_id: int,
    day: date,
    slots: Optional[Sequence[dict]] = None,
    stop_sale: bool = False,
    stop_sale_reason: Optional[str] = None,
    notes: Optional[str] = None,
    option_id: Optional[str] = None,
) -> Availability:
    """Create or replace one day's availability. Does not commit."""
    record = await get_availability_record(session, tour_id, day)
    if record is None:
        record = Availability(tenant_id=tenant_id, tour_id=tour_id, date=day)
        session.add(record)
    record.tenant_id = tenant_id
    record.option_id = option_id
    record.stop_sale = stop_sale
    record.stop_sale_reason = stop_sale_reason or ""
    record.notes = notes or ""
    await session.flush()

    await _sync_slots(session, record, slots or [])
    return record


async def bulk_update_availability(
    session: AsyncSession,
    *,
    tenant_id: str,
    tour_id: int,
    dates: Sequence[date],
    action: str,
    slots: Optional[Sequence[dict]] = None,
    stop_sale: Optional[bool] = None,
    stop_sale_reason: Optional[str] = None,
) -> dict:
    """
    Apply one action to many days, creating missing records.

    Actions:
        block        stop_sale on, reason defaults to "Blocked"
        unblock      stop_sale off, reason cleared
        updateSlots  replace slots (when given)
        setStopSale  set stop_sale / reason as given
    """
    if action not in BULK_ACTIONS:
        raise ValueError(f"Unknown action: {action}")

    modified = upserted = 0
    for day in dates:
        record = await get_availability_record(session, tour_id, day)
        if record is None:
            record = Availability(tenant_id=tenant_id, tour_id=tour_id, date=day, stop_sale=False)
            session.add(record)
            upserted += 1
        else:
            modified += 1
        record.tenant_id = tenant_id

        if action == "block":
            record.stop_sale = True
            record.stop_sale_reason = stop_sale_reason or "Blocked"
        elif action == "unblock":
            record.stop_sale = False
            record.stop_sale_reason = ""
        elif action == "setStopSale":
            record.stop_sale = bool(stop_sale)
            record.stop_sale_reason = stop_sale_reason or ""
        await session.flush()

        if action == "updateSlots" and slots is not None:
            await _sync_slots(session, record, slots)

    logger.info(f"Bulk availability '{action}' on tour {tour_id}: {upserted} created, {modified} updated")
    return {"modified": modified, "upserted": upserted}


async def apply_stop_sale(
    session: AsyncSession,
    *,
    tenant_id: str,
    tour_id: int,
    option_ids: Optional[Sequence[str]],
    start: date,
    end: date,
    reason: Optional[str],
    applied_by: str,
) -> dict:
    """
    Stop sales for a date range: one all-options row, or one row per option.

    Re-applying the same range updates the reason instead of duplicating.
    Every call appends StopSaleLog rows.
    """
    option_ids = normalize_option_ids(option_ids)
    reason = (reason or "").strip()
    targets = [[o] for o in option_ids] or [[]]

    existing = await session.execute(
        select(StopSale).where(
            StopSale.tenant_id == tenant_id,
            StopSale.tour_id == tour_id,
            StopSale.start_date == start,
            StopSale.end_date == end,
        )
    )
    by_options = {tuple(s.option_ids or []): s for s in existing.scalars().all()}

    upserted = matched = 0
    for target in targets:
        row = by_options.get(tuple(target))
        if row is None:
            session.add(
                StopSale(
                    tenant_id=tenant_id,
                    tour_id=tour_id,
                    option_ids=target,
                    start_date=start,
                    end_date=end,
                    reason=reason,
                    created_by=applied_by,
                )
            )
            upserted += 1
        else:
            row.reason = reason
            matched += 1

    for option_id in option_ids or [None]:
        session.add(
            StopSaleLog(
                tenant_id=tenant_id,
                tour_id=tour_id,
                option_id=option_id,
                date_from=start,
                date_to=end,
                reason=reason,
                applied_by=applied_by,
                status="active",
            )
        )
    await session.flush()

    logger.info(
        f"Stop-sale applied on tour {tour_id} {start}..{end} "
        f"(options={option_ids or 'all'}) by {applied_by}"
    )
    return {"upserted": upserted, "modified": matched, "matched": matched}


async def remove_stop_sale(
    session: AsyncSession,
    *,
    tenant_id: str,
    tour_id: int,
    option_ids: Optional[Sequence[str]],
    start: date,
    end: date,
    removed_by: str,
) -> dict:
    """Delete the stop-sale rows for exactly this range and mark their logs removed."""
    option_ids = normalize_option_ids(option_ids)
    targets = {tuple([o]) for o in option_ids} or {()}

    existing = await session.execute(
        select(StopSale).where(
            StopSale.tenant_id == tenant_id,
            StopSale.tour_id == tour_id,
            StopSale.start_date == start,
            StopSale.end_date == end,
        )
    )
    deleted = 0
    for row in existing.scalars().all():
        if tuple(row.option_ids or []) in targets:
            await session.delete(row)
            deleted += 1

    log_filter = [
        StopSaleLog.tenant_id == tenant_id,
        StopSaleLog.tour_id == tour_id,
        StopSaleLog.date_from == start,
        StopSaleLog.date_to == end,
        StopSaleLog.status == "active",
    ]
    if option_ids:
        log_filter.append(StopSaleLog.option_id.in_(option_ids))
    else:
        log_filter.append(StopSaleLog.option_id.is_(None))
    await session.execute(
        update(StopSaleLog)
        .where(and_(*log_filter))
        .values(status="removed", removed_by=removed_by, removed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await session.flush()

    logger.info(f"Stop-sale removed on tour {tour_id} {start}..{end}: {deleted} rows by {removed_by}")
    return {"deleted": deleted}


async def list_stop_sale_logs(
    session: AsyncSession,
    tenant_id: Optional[str],
    *,
    tour_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[Sequence[StopSaleLog], int]:
    """Newest first. ``tenant_id=None`` lists every tenant."""
    criteria = []
    if tenant_id is not None:
        criteria.append(StopSaleLog.tenant_id == tenant_id)
    if tour_id is not None:
        criteria.append(StopSaleLog.tour_id == tour_id)
    if status:
        criteria.append(StopSaleLog.status == status)

    total = await session.scalar(select(func.count()).select_from(StopSaleLog).where(*criteria))
    result = await session.execute(
        select(StopSaleLog)
        .where(*criteria)
        .order_by(StopSaleLog.applied_at.desc(), StopSaleLog.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return result.scalars().all(), total or 0


def stop_sale_log_to_dict(log: StopSaleLog) -> dict:
    return {
        "id": log.id,
        "tenantId": log.tenant_id,
        "tourId": log.tour_id,
        "optionId": log.option_id,
        "dateFrom": log.date_from.isoformat(),
        "dateTo": log.date_to.isoformat(),
        "reason": log.reason,
        "appliedBy": log.applied_by,
        "appliedAt": log.applied_at.isoformat() if log.applied_at else None,
        "status": log.status,
        "removedBy": log.removed_by,
        "removedAt": log.removed_at.isoformat() if log.removed_at else None,
    }


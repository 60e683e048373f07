"""
Sector and seat inventory.

Every availability change is a single conditional UPDATE whose WHERE
clause carries the precondition (seat still available, slots left, sector
not suspended). The row count tells whether this caller won; there is no
read-then-write anywhere, so two workers competing for the last unit can
never both succeed.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update

from boxoffice.errors import InventoryExhausted, NotFoundError, ValidationError, ConflictError
from boxoffice.extensions import db
from boxoffice.models.sector import Sector, Seat, SeatStatus
from boxoffice.models.ticket import TicketTypeCode
from boxoffice.utils.audit import log_action, AuditAction
from boxoffice.utils.fiscal import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """One unit of inventory taken from a sector."""
    sector_id: int
    seat_id: Optional[int] = None


def _execute(stmt):
    return db.session.execute(stmt.execution_options(synchronize_session=False))


def _adjust_sector_counter(sector_id, delta):
    """Move a sector's available_seats by delta, staying within [0, capacity]."""
    stmt = update(Sector).where(Sector.id == sector_id)
    if delta < 0:
        stmt = stmt.where(Sector.available_seats + delta >= 0)
    else:
        stmt = stmt.where(Sector.available_seats + delta <= Sector.capacity)
    return _execute(stmt.values(available_seats=Sector.available_seats + delta)).rowcount


def _take_slot(sector_id):
    """Take one unit from a sector's counter if it has any and is on sale."""
    result = _execute(
        update(Sector)
        .where(
            Sector.id == sector_id,
            Sector.available_seats > 0,
            Sector.sales_suspended == False,
        )
        .values(available_seats=Sector.available_seats - 1)
    )
    return result.rowcount == 1


def _clear_hold():
    return {'hold_token': None, 'hold_expires_at': None, 'hold_extensions': 0}


class AvailabilityPool:
    """Reserve/release contract shared by both kinds of sector."""

    def __init__(self, sector):
        self.sector = sector

    def reserve(self, seat_id=None, hold_token=None, now=None) -> Reservation:
        raise NotImplementedError

    def release(self, seat_id=None) -> bool:
        raise NotImplementedError


class SlotCounterPool(AvailabilityPool):
    """General admission: a counter of free slots."""

    def reserve(self, seat_id=None, hold_token=None, now=None):
        if seat_id is not None or hold_token:
            raise ValidationError(
                f'Sector {self.sector.sector_code} is not numbered, no seat can be chosen.',
                code='seat_not_allowed',
            )
        if not _take_slot(self.sector.id):
            raise InventoryExhausted(
                f'No slots left in sector {self.sector.sector_code}.',
                code='sector_sold_out',
            )
        return Reservation(sector_id=self.sector.id)

    def release(self, seat_id=None):
        released = _adjust_sector_counter(self.sector.id, 1) == 1
        if not released:
            logger.warning('Release ignored: sector %s already at capacity', self.sector.id)
        return released


class SeatPool(AvailabilityPool):
    """Numbered sector: individual seats flip available -> sold.

    Every change updates the sector row before the seat row, so two
    transactions touching overlapping seats always lock in the same order.
    A seat change that loses its race gives the counter unit back.
    """

    def _seat_update(self, seat_id, *conditions):
        return update(Seat).where(Seat.id == seat_id, Seat.sector_id == self.sector.id, *conditions)

    def reserve(self, seat_id=None, hold_token=None, now=None):
        if seat_id is None:
            raise ValidationError(
                f'Sector {self.sector.sector_code} is numbered, a seat must be chosen.',
                code='seat_required',
            )
        if hold_token:
            return self._reserve_held(seat_id, hold_token, now or datetime.utcnow())

        if not _take_slot(self.sector.id):
            raise InventoryExhausted(
                f'Seat {seat_id} is not available in sector {self.sector.sector_code}.',
                code='seat_unavailable',
            )
        result = _execute(
            self._seat_update(seat_id, Seat.status == SeatStatus.AVAILABLE)
            .values(status=SeatStatus.SOLD)
        )
        if result.rowcount != 1:
            _adjust_sector_counter(self.sector.id, 1)
            raise InventoryExhausted(
                f'Seat {seat_id} is not available in sector {self.sector.sector_code}.',
                code='seat_unavailable',
            )
        return Reservation(sector_id=self.sector.id, seat_id=seat_id)

    def _reserve_held(self, seat_id, hold_token, now):
        """Sell a seat held under hold_token. The unit was taken when the hold was made."""
        # Locks the sector row first and checks suspension in one statement
        on_sale = _execute(
            update(Sector)
            .where(Sector.id == self.sector.id, Sector.sales_suspended == False)
            .values(available_seats=Sector.available_seats)
        )
        if on_sale.rowcount != 1:
            raise InventoryExhausted(
                f'Sales are suspended in sector {self.sector.sector_code}.',
                code='seat_unavailable',
            )
        result = _execute(
            self._seat_update(
                seat_id,
                Seat.status == SeatStatus.RESERVED,
                Seat.hold_token == hold_token,
                Seat.hold_expires_at > now,
            )
            .values(status=SeatStatus.SOLD, **_clear_hold())
        )
        if result.rowcount != 1:
            raise InventoryExhausted(
                f'Seat {seat_id} is not held under this hold, or the hold expired.',
                code='hold_expired',
            )
        return Reservation(sector_id=self.sector.id, seat_id=seat_id)

    def release(self, seat_id=None):
        if seat_id is None:
            return False
        if _adjust_sector_counter(self.sector.id, 1) != 1:
            logger.warning('Release ignored: sector %s already at capacity', self.sector.id)
            return False
        result = _execute(
            self._seat_update(seat_id, Seat.status == SeatStatus.SOLD)
            .values(status=SeatStatus.AVAILABLE)
        )
        if result.rowcount != 1:
            _adjust_sector_counter(self.sector.id, -1)
            logger.warning('Release ignored: seat %s was not sold', seat_id)
            return False
        return True

    def hold(self, seat_id, hold_token, expires_at):
        """Put an available seat on hold: available -> reserved until expires_at."""
        if not _take_slot(self.sector.id):
            raise InventoryExhausted(
                f'Seat {seat_id} is not available in sector {self.sector.sector_code}.',
                code='seat_unavailable',
            )
        result = _execute(
            self._seat_update(seat_id, Seat.status == SeatStatus.AVAILABLE)
            .values(
                status=SeatStatus.RESERVED,
                hold_token=hold_token,
                hold_expires_at=expires_at,
                hold_extensions=0,
            )
        )
        if result.rowcount != 1:
            _adjust_sector_counter(self.sector.id, 1)
            raise InventoryExhausted(
                f'Seat {seat_id} is not available in sector {self.sector.sector_code}.',
                code='seat_unavailable',
            )
        return Reservation(sector_id=self.sector.id, seat_id=seat_id)

    def release_hold(self, seat_id, hold_token=None, expired_at=None):
        """reserved -> available. Restricted to one hold and/or to expired holds when given."""
        if _adjust_sector_counter(self.sector.id, 1) != 1:
            return False
        conditions = [Seat.status == SeatStatus.RESERVED]
        if hold_token is not None:
            conditions.append(Seat.hold_token == hold_token)
        if expired_at is not None:
            conditions.append(Seat.hold_expires_at <= expired_at)
        result = _execute(
            self._seat_update(seat_id, *conditions)
            .values(status=SeatStatus.AVAILABLE, **_clear_hold())
        )
        if result.rowcount != 1:
            _adjust_sector_counter(self.sector.id, -1)
            return False
        return True


def pool_for(sector) -> AvailabilityPool:
    """Pick the availability pool matching the sector kind."""
    return SeatPool(sector) if sector.is_numbered else SlotCounterPool(sector)


class InventoryService:
    """Single source of truth for seat and slot availability."""

    @staticmethod
    def get_sector(sector_id) -> Sector:
        sector = db.session.get(Sector, sector_id)
        if sector is None:
            raise NotFoundError(f'Sector {sector_id} not found.')
        return sector

    @staticmethod
    def reserve(sector_id, seat_id=None, hold_token=None) -> Reservation:
        """
        Take one unit of inventory inside the current transaction.

        Args:
            sector_id: Sector to reserve from
            seat_id: Seat to sell (numbered sectors only)
            hold_token: Sell a seat previously held under this token

        Returns:
            Reservation

        Raises:
            InventoryExhausted: seat not available, hold expired, no slots left or sector suspended
            ValidationError: seat given for a general-admission sector or missing for a numbered one
        """
        sector = InventoryService.get_sector(sector_id)
        return pool_for(sector).reserve(seat_id, hold_token=hold_token)

    @staticmethod
    def release(sector_id, seat_id=None) -> bool:
        """
        Give one unit back. Safe to call twice: a seat is only released from
        sold, and a slot counter never goes past capacity.

        Returns:
            True if availability changed
        """
        sector = InventoryService.get_sector(sector_id)
        return pool_for(sector).release(seat_id)

    @staticmethod
    def price_for(sector, ticket_type_code) -> Decimal:
        """
        Gross price of one ticket: face value plus prevendita.

        Args:
            sector: Sector instance or id
            ticket_type_code: TicketTypeCode or code string (INT, RID, OMA)

        Returns:
            Decimal gross amount

        Raises:
            ValidationError: unknown type, or RID on a sector with no reduced price
        """
        if not isinstance(sector, Sector):
            sector = InventoryService.get_sector(sector)
        code = TicketTypeCode.parse(ticket_type_code)
        if code is None:
            raise ValidationError(
                f'Unknown ticket type: {ticket_type_code}. Use INT, RID or OMA.',
                code='invalid_ticket_type',
            )
        if code == TicketTypeCode.OMA:
            return Decimal('0.00')
        if code == TicketTypeCode.RID:
            if not sector.has_reduced_price:
                raise ValidationError(
                    f'Sector {sector.sector_code} has no reduced price.',
                    code='reduced_price_unavailable',
                )
            face = to_money(sector.price_ridotto)
        else:
            face = to_money(sector.price_intero)
        return face + to_money(sector.prevendita)

    # ── Admin operations ────────────────────────────────────

    @staticmethod
    def block_seat(seat_id, user=None) -> Seat:
        """Withhold an available seat from sale."""
        seat = db.session.get(Seat, seat_id)
        if seat is None:
            raise NotFoundError(f'Seat {seat_id} not found.')
        try:
            # Sector row before seat row
            taken = _adjust_sector_counter(seat.sector_id, -1) == 1
            result = _execute(
                update(Seat)
                .where(Seat.id == seat_id, Seat.status == SeatStatus.AVAILABLE)
                .values(status=SeatStatus.BLOCKED)
            )
            if not taken or result.rowcount != 1:
                raise ConflictError(f'Seat {seat.label} is not available and cannot be blocked.')
            log_action(AuditAction.SEAT_BLOCK, 'Seat', seat.id, user=user, reference=seat.label)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        db.session.refresh(seat)
        return seat

    @staticmethod
    def unblock_seat(seat_id, user=None) -> Seat:
        """Put a blocked seat back on sale."""
        seat = db.session.get(Seat, seat_id)
        if seat is None:
            raise NotFoundError(f'Seat {seat_id} not found.')
        try:
            _adjust_sector_counter(seat.sector_id, 1)
            result = _execute(
                update(Seat)
                .where(Seat.id == seat_id, Seat.status == SeatStatus.BLOCKED)
                .values(status=SeatStatus.AVAILABLE)
            )
            if result.rowcount != 1:
                raise ConflictError(f'Seat {seat.label} is not blocked.')
            log_action(AuditAction.SEAT_UNBLOCK, 'Seat', seat.id, user=user, reference=seat.label)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        db.session.refresh(seat)
        return seat

    @staticmethod
    def set_sales_suspended(sector_id, suspended, user=None) -> Sector:
        """Suspend or resume sales on a sector."""
        sector = InventoryService.get_sector(sector_id)
        sector.sales_suspended = bool(suspended)
        log_action(
            AuditAction.SECTOR_SUSPEND if suspended else AuditAction.SECTOR_RESUME,
            'Sector', sector.id, user=user, reference=sector.sector_code,
        )
        db.session.commit()
        logger.info('Sector %s sales %s', sector.sector_code, 'suspended' if suspended else 'resumed')
        return sector

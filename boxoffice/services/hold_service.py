"""
Seat holds: a numbered seat can be put aside for a buyer for a few
minutes (available -> reserved) while they pay. The hold is identified
by a token; issuing with that token turns the reserved seats into sold
ones. Holds that are not extended, released or sold expire and are put
back on sale by `flask cleanup-holds`.

A held seat already counts as taken in its sector's available_seats.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from boxoffice.errors import ConflictError, NotFoundError, TicketingError, ValidationError
from boxoffice.extensions import db
from boxoffice.models.sector import Seat, SeatStatus
from boxoffice.services.inventory_service import InventoryService, SeatPool
from boxoffice.utils.audit import log_action, AuditAction

logger = logging.getLogger(__name__)


@dataclass
class SeatHold:
    """Seats currently held under one token."""
    hold_token: str
    sector_id: int
    seat_ids: List[int]
    expires_at: datetime

    def to_dict(self):
        return {
            'hold_token': self.hold_token,
            'sector_id': self.sector_id,
            'seat_ids': self.seat_ids,
            'expires_at': self.expires_at.isoformat(),
        }


def _active_seats(hold_token, now):
    return (
        Seat.query
        .filter(
            Seat.hold_token == hold_token,
            Seat.status == SeatStatus.RESERVED,
            Seat.hold_expires_at > now,
        )
        .order_by(Seat.id)
        .all()
    )


def _rollback_logged(context):
    db.session.rollback()
    logger.exception('Database error while %s', context)


class SeatHoldService:
    """Create, extend, release and expire seat holds."""

    @staticmethod
    def hold_seats(sector_id, seat_ids, hold_token=None, user=None, now=None) -> SeatHold:
        """
        Hold seats of a numbered sector for SEAT_HOLD_MINUTES.

        Args:
            sector_id: Numbered sector the seats belong to
            seat_ids: Seats to hold (all or none are held)
            hold_token: Reuse an existing token, a new one is generated otherwise
            user: Operator (audit)
            now: Current UTC time

        Returns:
            SeatHold

        Raises:
            ValidationError: GA sector, sales closed, bad seat list
            InventoryExhausted: a seat is not available, nothing is held
        """
        now = now or datetime.utcnow()
        sector = InventoryService.get_sector(sector_id)
        if not sector.is_numbered:
            raise ValidationError(
                f'Sector {sector.sector_code} is not numbered, seats cannot be held.',
                code='seat_hold_not_allowed',
            )
        event = sector.ticketed_event
        if not event.is_on_sale(now):
            raise ValidationError(
                f'Ticket sales for event {event.id} are not open.',
                code='sales_closed',
            )

        seat_ids = list(seat_ids or [])
        if not seat_ids:
            raise ValidationError('At least one seat is required.', code='seat_required')
        if len(set(seat_ids)) != len(seat_ids):
            raise ValidationError('The same seat was requested twice.', code='duplicate_seat')
        if len(seat_ids) > event.max_tickets_per_user:
            raise ValidationError(
                f'At most {event.max_tickets_per_user} seats per hold.',
                code='quantity_exceeds_limit',
            )
        seat_ids = sorted(seat_ids)
        found = {seat.id: seat.sector_id for seat in Seat.query.filter(Seat.id.in_(seat_ids)).all()}
        foreign = [sid for sid in seat_ids if found.get(sid) != sector.id]
        if foreign:
            raise ValidationError(
                f'Seats {foreign} do not belong to sector {sector.sector_code}.',
                code='seat_mismatch',
            )

        token = hold_token or uuid.uuid4().hex
        expires_at = now + timedelta(minutes=current_app.config.get('SEAT_HOLD_MINUTES', 10))
        pool = SeatPool(sector)
        try:
            for seat_id in seat_ids:
                pool.hold(seat_id, token, expires_at)
            log_action(
                AuditAction.SEAT_HOLD, 'Sector', sector.id, user=user,
                reference=sector.sector_code,
                details={'seat_ids': seat_ids, 'expires_at': expires_at.isoformat()},
            )
            db.session.commit()
        except TicketingError:
            db.session.rollback()
            raise
        except SQLAlchemyError:
            _rollback_logged(f'holding seats in sector {sector_id}')
            raise

        logger.info('Held %d seat(s) in sector %s until %s', len(seat_ids), sector.sector_code, expires_at)
        return SeatHold(hold_token=token, sector_id=sector.id, seat_ids=seat_ids, expires_at=expires_at)

    @staticmethod
    def get_hold(hold_token, now=None) -> SeatHold:
        """Seats still held under hold_token. NotFoundError when none are left."""
        now = now or datetime.utcnow()
        seats = _active_seats(hold_token, now)
        if not seats:
            raise NotFoundError('Hold not found or expired.')
        return SeatHold(
            hold_token=hold_token,
            sector_id=seats[0].sector_id,
            seat_ids=[seat.id for seat in seats],
            expires_at=min(seat.hold_expires_at for seat in seats),
        )

    @staticmethod
    def extend_hold(hold_token, user=None, now=None) -> SeatHold:
        """
        Push the expiry of a live hold by SEAT_HOLD_EXTEND_MINUTES.

        Raises:
            NotFoundError: no live hold under this token
            ConflictError: extension limit reached, or the hold expired meanwhile
        """
        now = now or datetime.utcnow()
        hold = SeatHoldService.get_hold(hold_token, now)
        max_extensions = current_app.config.get('SEAT_HOLD_MAX_EXTENSIONS', 2)
        seats = _active_seats(hold_token, now)
        if any(seat.hold_extensions >= max_extensions for seat in seats):
            raise ConflictError(
                f'Hold already extended {max_extensions} time(s).',
                code='hold_extension_limit',
            )

        expires_at = hold.expires_at + timedelta(
            minutes=current_app.config.get('SEAT_HOLD_EXTEND_MINUTES', 5)
        )
        try:
            result = db.session.execute(
                update(Seat)
                .where(
                    Seat.hold_token == hold_token,
                    Seat.status == SeatStatus.RESERVED,
                    Seat.hold_expires_at > now,
                    Seat.hold_extensions < max_extensions,
                )
                .values(hold_expires_at=expires_at, hold_extensions=Seat.hold_extensions + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(hold.seat_ids):
                raise ConflictError('Hold expired or changed before it could be extended.', code='hold_expired')
            log_action(
                AuditAction.HOLD_EXTEND, 'Sector', hold.sector_id, user=user,
                details={'seat_ids': hold.seat_ids, 'expires_at': expires_at.isoformat()},
            )
            db.session.commit()
        except TicketingError:
            db.session.rollback()
            raise
        except SQLAlchemyError:
            _rollback_logged(f'extending a hold in sector {hold.sector_id}')
            raise

        return SeatHoldService.get_hold(hold_token, now)

    @staticmethod
    def release_hold(hold_token, user=None) -> int:
        """Put every seat held under hold_token back on sale. Returns the count."""
        seats = (
            Seat.query
            .filter(Seat.hold_token == hold_token, Seat.status == SeatStatus.RESERVED)
            .order_by(Seat.sector_id, Seat.id)
            .all()
        )
        if not seats:
            raise NotFoundError('Hold not found.')
        released = SeatHoldService._release(
            [(seat.sector_id, seat.id) for seat in seats], hold_token=hold_token, user=user,
        )
        logger.info('Released %d held seat(s)', released)
        return released

    @staticmethod
    def cleanup_expired_holds(now=None) -> int:
        """Put seats whose hold expired before now back on sale. Returns the count."""
        now = now or datetime.utcnow()
        rows = (
            db.session.query(Seat.sector_id, Seat.id)
            .filter(Seat.status == SeatStatus.RESERVED, Seat.hold_expires_at <= now)
            .order_by(Seat.sector_id, Seat.id)
            .all()
        )
        if not rows:
            return 0
        released = SeatHoldService._release(
            [(sector_id, seat_id) for sector_id, seat_id in rows], expired_at=now,
        )
        logger.info('Released %d expired seat hold(s)', released)
        return released

    @staticmethod
    def _release(seats, hold_token=None, expired_at=None, user=None):
        pools = {}
        released = 0
        try:
            for sector_id, seat_id in seats:
                if sector_id not in pools:
                    pools[sector_id] = SeatPool(InventoryService.get_sector(sector_id))
                if pools[sector_id].release_hold(seat_id, hold_token=hold_token, expired_at=expired_at):
                    released += 1
                    log_action(
                        AuditAction.HOLD_RELEASE, 'Seat', seat_id, user=user,
                        details={'expired': expired_at is not None},
                    )
            db.session.commit()
        except SQLAlchemyError:
            _rollback_logged('releasing seat holds')
            raise
        return released

    @staticmethod
    def force_release(seat_id, user=None) -> Seat:
        """Admin: put a held seat back on sale whatever its hold."""
        seat = db.session.get(Seat, seat_id)
        if seat is None:
            raise NotFoundError(f'Seat {seat_id} not found.')
        if seat.status != SeatStatus.RESERVED:
            raise ConflictError(f'Seat {seat.label} is {seat.status.value}, not held.')
        try:
            pool = SeatPool(InventoryService.get_sector(seat.sector_id))
            if not pool.release_hold(seat.id):
                raise ConflictError(f'Seat {seat.label} is no longer held.')
            log_action(AuditAction.SEAT_FORCE_RELEASE, 'Seat', seat.id, user=user, reference=seat.label)
            db.session.commit()
        except TicketingError:
            db.session.rollback()
            raise
        except SQLAlchemyError:
            _rollback_logged(f'force-releasing seat {seat_id}')
            raise
        db.session.refresh(seat)
        logger.info('Seat %s hold force-released', seat.label)
        return seat

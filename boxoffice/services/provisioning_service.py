"""
Event provisioning: ticketed events, sectors and seats.
Normally driven by the event catalogue; also used by the seed command.
"""
import logging
from datetime import datetime

from boxoffice.errors import NotFoundError, ValidationError
from boxoffice.extensions import db
from boxoffice.models.sector import Sector, Seat, SeatStatus
from boxoffice.models.ticketed_event import TicketedEvent, TicketingStatus
from boxoffice.services.numbering_service import NumberingService
from boxoffice.utils.audit import log_action, AuditAction
from boxoffice.utils.fiscal import to_money, normalize_sector_code

logger = logging.getLogger(__name__)

# Settings an operator may change once the event is on sale
EDITABLE_SETTINGS = {
    'requires_nominative': bool,
    'allows_change_name': bool,
    'allows_resale': bool,
    'max_tickets_per_user': int,
    'ticketing_status': TicketingStatus,
    'sale_start_date': datetime,
    'sale_end_date': datetime,
}


class ProvisioningService:
    """Creates the inventory of a ticketed event."""

    @staticmethod
    def create_ticketed_event(event_ref, name, starts_at=None, sale_start_date=None,
                              sale_end_date=None, max_tickets_per_user=10,
                              requires_nominative=False, allows_change_name=False,
                              allows_resale=False, ticketing_status=TicketingStatus.ACTIVE):
        """Create a ticketed event together with its fiscal counter."""
        event = TicketedEvent(
            event_ref=event_ref,
            name=name,
            starts_at=starts_at,
            sale_start_date=sale_start_date,
            sale_end_date=sale_end_date,
            max_tickets_per_user=max_tickets_per_user,
            requires_nominative=requires_nominative,
            allows_change_name=allows_change_name,
            allows_resale=allows_resale,
            ticketing_status=ticketing_status,
            total_capacity=0,
            tickets_sold=0,
        )
        db.session.add(event)
        db.session.flush()
        NumberingService.ensure_counter(event.id)
        db.session.commit()
        logger.info('Ticketed event %s created for %s', event.id, event_ref)
        return event

    @staticmethod
    def add_sector(event, name, sector_code, price_intero, capacity=0, price_ridotto=None,
                   prevendita=0, is_numbered=False, sort_order=0):
        """
        Add a sector. General-admission sectors get their capacity here,
        numbered sectors grow as seats are added.
        """
        if capacity < 0:
            raise ValidationError('Capacity cannot be negative.')
        sector_code = normalize_sector_code(sector_code)
        if not sector_code:
            raise ValidationError('Sector code is required.')

        if is_numbered:
            capacity = 0
        sector = Sector(
            ticketed_event_id=event.id,
            name=name,
            sector_code=sector_code,
            capacity=capacity,
            available_seats=capacity,
            is_numbered=is_numbered,
            price_intero=to_money(price_intero),
            price_ridotto=to_money(price_ridotto) if price_ridotto is not None else None,
            prevendita=to_money(prevendita),
            sort_order=sort_order,
        )
        db.session.add(sector)
        event.total_capacity = (event.total_capacity or 0) + capacity
        db.session.commit()
        return sector

    @staticmethod
    def add_seats(sector, rows, seats_per_row, accessible=()):
        """
        Add a grid of seats to a numbered sector.

        Args:
            sector: Numbered Sector
            rows: Row labels, e.g. ['A', 'B', 'C']
            seats_per_row: Seats numbered 1..n in each row
            accessible: Seat labels reserved to wheelchair users, e.g. {'A1', 'A2'}

        Returns:
            List of created Seat
        """
        if not sector.is_numbered:
            raise ValidationError(f'Sector {sector.sector_code} is not numbered.')

        seats = []
        for row in rows:
            for number in range(1, seats_per_row + 1):
                seat = Seat(
                    sector_id=sector.id,
                    row=str(row),
                    seat_number=str(number),
                    status=SeatStatus.AVAILABLE,
                    is_accessible=f'{row}{number}' in set(accessible),
                )
                db.session.add(seat)
                seats.append(seat)

        sector.capacity += len(seats)
        sector.available_seats += len(seats)
        sector.ticketed_event.total_capacity += len(seats)
        db.session.commit()
        return seats

    @staticmethod
    def update_settings(ticketed_event_id, changes, user=None):
        """
        Update the sale rules of an event.

        Args:
            ticketed_event_id: Event to update
            changes: Dict of EDITABLE_SETTINGS keys to new values
            user: Operator (audit)

        Raises:
            ValidationError: unknown setting or bad value
        """
        event = db.session.get(TicketedEvent, ticketed_event_id)
        if event is None:
            raise NotFoundError(f'Ticketed event {ticketed_event_id} not found.')

        unknown = set(changes) - set(EDITABLE_SETTINGS)
        if unknown:
            raise ValidationError(f'Unknown settings: {", ".join(sorted(unknown))}', code='invalid_setting')

        parsed = {}
        for key, value in changes.items():
            expected = EDITABLE_SETTINGS[key]
            if expected is TicketingStatus and not isinstance(value, TicketingStatus):
                try:
                    value = TicketingStatus(value)
                except ValueError:
                    raise ValidationError(f'Invalid ticketing status: {value}', code='invalid_setting')
            elif expected is int and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
                raise ValidationError(f'{key} must be a positive integer.', code='invalid_setting')
            elif expected is bool and not isinstance(value, bool):
                raise ValidationError(f'{key} must be true or false.', code='invalid_setting')
            elif expected is datetime and value is not None and not isinstance(value, datetime):
                raise ValidationError(f'{key} must be a datetime.', code='invalid_setting')
            parsed[key] = value

        start = parsed.get('sale_start_date', event.sale_start_date)
        end = parsed.get('sale_end_date', event.sale_end_date)
        if start and end and start > end:
            raise ValidationError('Sale start must be before sale end.', code='invalid_sale_window')

        old, new = {}, {}
        for key, value in parsed.items():
            current = getattr(event, key)
            if current != value:
                old[key] = current.value if isinstance(current, TicketingStatus) else str(current)
                new[key] = value.value if isinstance(value, TicketingStatus) else str(value)
                setattr(event, key, value)

        if new:
            log_action(
                AuditAction.SETTINGS_UPDATE, 'TicketedEvent', event.id, user=user,
                details={'old': old, 'new': new},
            )
        db.session.commit()
        return event

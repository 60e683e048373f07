"""
Sector and Seat models: the priced inventory pools of a ticketed event.
A numbered sector sells individual seats, a general-admission sector
sells slots from a counter.
"""
from datetime import datetime
from decimal import Decimal
import enum

from boxoffice.extensions import db


class SeatStatus(enum.Enum):
    """Seat status enumeration."""
    AVAILABLE = 'available'
    RESERVED = 'reserved'  # Held for a buyer until hold_expires_at
    SOLD = 'sold'
    BLOCKED = 'blocked'    # Withheld by the venue (technical, press, etc.)


class Sector(db.Model):
    """A priced inventory pool for one event."""

    __tablename__ = 'sectors'
    __table_args__ = (
        db.UniqueConstraint('ticketed_event_id', 'sector_code', name='uq_sector_event_code'),
        db.CheckConstraint('available_seats >= 0', name='ck_sector_available_non_negative'),
        db.CheckConstraint('available_seats <= capacity', name='ck_sector_available_le_capacity'),
    )

    id = db.Column(db.Integer, primary_key=True)

    ticketed_event_id = db.Column(
        db.Integer,
        db.ForeignKey('ticketed_events.id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )

    # Sector definition
    name = db.Column(db.String(100), nullable=False)
    sector_code = db.Column(db.String(10), nullable=False)
    capacity = db.Column(db.Integer, nullable=False)
    available_seats = db.Column(db.Integer, nullable=False)
    is_numbered = db.Column(db.Boolean, nullable=False, default=False)
    sales_suspended = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    # Pricing
    price_intero = db.Column(db.Numeric(10, 2), nullable=False)
    price_ridotto = db.Column(db.Numeric(10, 2), nullable=True)
    prevendita = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal('0.00'))

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    ticketed_event = db.relationship('TicketedEvent', back_populates='sectors')
    seats = db.relationship(
        'Seat',
        back_populates='sector',
        cascade='all, delete-orphan',
        order_by='Seat.id'
    )

    def __repr__(self):
        return f'<Sector {self.sector_code} {self.name}>'

    @property
    def has_reduced_price(self):
        return self.price_ridotto is not None and self.price_ridotto > 0


class Seat(db.Model):
    """An individually addressable seat inside a numbered sector."""

    __tablename__ = 'seats'
    __table_args__ = (
        db.UniqueConstraint('sector_id', 'row', 'seat_number', name='uq_seat_position'),
    )

    id = db.Column(db.Integer, primary_key=True)

    sector_id = db.Column(
        db.Integer,
        db.ForeignKey('sectors.id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )

    row = db.Column(db.String(10), nullable=False)
    seat_number = db.Column(db.String(10), nullable=False)
    status = db.Column(
        db.Enum(SeatStatus),
        default=SeatStatus.AVAILABLE,
        nullable=False,
        index=True
    )
    is_accessible = db.Column(db.Boolean, nullable=False, default=False)

    # Temporary hold (status RESERVED)
    hold_token = db.Column(db.String(64), nullable=True, index=True)
    hold_expires_at = db.Column(db.DateTime, nullable=True, index=True)
    hold_extensions = db.Column(db.Integer, nullable=False, default=0)

    # Relationships
    sector = db.relationship('Sector', back_populates='seats')

    def __repr__(self):
        return f'<Seat {self.label} ({self.status.value})>'

    @property
    def label(self):
        return f'{self.row}{self.seat_number}'


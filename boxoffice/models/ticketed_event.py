"""
TicketedEvent model: the fiscal ticketing side of an event.
The event itself (dates, artists, venue) is owned by the event catalogue;
this row only carries what ticket issuance needs.
"""
from datetime import datetime
from decimal import Decimal
import enum

from boxoffice.extensions import db


class TicketingStatus(enum.Enum):
    """Sales status of a ticketed event."""
    ACTIVE = 'active'
    SUSPENDED = 'suspended'
    CLOSED = 'closed'


class TicketedEvent(db.Model):
    """Ticketing configuration and running totals for one event."""

    __tablename__ = 'ticketed_events'

    id = db.Column(db.Integer, primary_key=True)

    # Reference to the event in the catalogue
    event_ref = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    starts_at = db.Column(db.DateTime, nullable=True)

    # Capacity and running totals
    total_capacity = db.Column(db.Integer, nullable=False, default=0)
    tickets_sold = db.Column(db.Integer, nullable=False, default=0)
    revenue = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))

    # Sales
    ticketing_status = db.Column(
        db.Enum(TicketingStatus),
        default=TicketingStatus.ACTIVE,
        nullable=False
    )
    sale_start_date = db.Column(db.DateTime, nullable=True)
    sale_end_date = db.Column(db.DateTime, nullable=True)
    max_tickets_per_user = db.Column(db.Integer, nullable=False, default=10)

    # Rules
    requires_nominative = db.Column(db.Boolean, nullable=False, default=False)
    allows_change_name = db.Column(db.Boolean, nullable=False, default=False)
    allows_resale = db.Column(db.Boolean, nullable=False, default=False)

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow, nullable=True)

    # Relationships
    sectors = db.relationship(
        'Sector',
        back_populates='ticketed_event',
        cascade='all, delete-orphan',
        order_by='Sector.sort_order'
    )
    tickets = db.relationship('Ticket', back_populates='ticketed_event', lazy='dynamic')
    counter = db.relationship(
        'EventCounter',
        back_populates='ticketed_event',
        uselist=False,
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f'<TicketedEvent {self.id} {self.name}>'

    def is_on_sale(self, at=None):
        """Check status and sale window at the given (UTC) time."""
        at = at or datetime.utcnow()
        if self.ticketing_status != TicketingStatus.ACTIVE:
            return False
        if self.sale_start_date and at < self.sale_start_date:
            return False
        if self.sale_end_date and at > self.sale_end_date:
            return False
        return True


class EventCounter(db.Model):
    """Per-event fiscal sequence. ``last_number`` is the last progressive number issued."""

    __tablename__ = 'event_counters'

    ticketed_event_id = db.Column(
        db.Integer,
        db.ForeignKey('ticketed_events.id', ondelete='CASCADE'),
        primary_key=True
    )
    last_number = db.Column(db.Integer, nullable=False, default=0)

    ticketed_event = db.relationship('TicketedEvent', back_populates='counter')

    def __repr__(self):
        return f'<EventCounter event={self.ticketed_event_id} last={self.last_number}>'

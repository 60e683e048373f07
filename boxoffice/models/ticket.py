"""
Ticket model with the fiscal state machine, plus the cancellation
reason ("causale") vocabulary.
"""
from datetime import datetime
import enum

from boxoffice.extensions import db


class TicketStatus(enum.Enum):
    """Ticket status enumeration."""
    VALID = 'valid'
    USED = 'used'
    CANCELLED = 'cancelled'

    @classmethod
    def _missing_(cls, value):
        # Older box office clients send "active" for a valid ticket
        if isinstance(value, str) and value.lower() in ('valid', 'active'):
            return cls.VALID
        return None


# Valid status transitions (state machine)
TICKET_STATUS_TRANSITIONS = {
    TicketStatus.VALID: [TicketStatus.USED, TicketStatus.CANCELLED],
    TicketStatus.USED: [],  # Terminal - checked-in tickets are never voided
    TicketStatus.CANCELLED: [],  # Terminal - number and seal kept for audit
}


def can_transition(current, target):
    """Return True if the ticket state machine allows current -> target."""
    return target in TICKET_STATUS_TRANSITIONS[current]


class TicketTypeCode(enum.Enum):
    """Fiscal ticket type (tipo titolo)."""
    INT = 'INT'    # Intero, full price
    RID = 'RID'    # Ridotto, reduced price
    OMA = 'OMA'    # Omaggio, complimentary

    @classmethod
    def parse(cls, value):
        """Accept a member or a code string. Returns None for unknown codes."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class CancellationReason(db.Model):
    """Controlled vocabulary of cancellation reasons (causali di annullamento)."""

    __tablename__ = 'cancellation_reasons'

    code = db.Column(db.String(10), primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f'<CancellationReason {self.code}>'


# Default causali seeded by `flask init-db`
DEFAULT_CANCELLATION_REASONS = [
    ('1.1', 'Evento annullato'),
    ('1.2', 'Evento rinviato'),
    ('2.1', 'Errore di emissione'),
    ('2.2', 'Errore di prezzo'),
    ('3.1', 'Richiesta del cliente'),
    ('4.1', 'Titolo smarrito o rubato'),
    ('5.1', 'Annullamento per sostituzione'),
    ('5.2', 'Rimborso al cliente'),
    ('9.9', 'Altro'),
]


class Ticket(db.Model):
    """A fiscal ticket.

    Fiscal fields (progressive_number, fiscal_seal_code, emission date and
    time, sector_code, ticket_type_code, gross_amount) are written once at
    issuance and never updated afterward.
    """

    __tablename__ = 'tickets'
    __table_args__ = (
        db.UniqueConstraint('ticketed_event_id', 'progressive_number', name='uq_ticket_event_progressive'),
        # At most one live ticket per seat
        db.Index(
            'uq_tickets_live_seat', 'seat_id', unique=True,
            postgresql_where=db.text("seat_id IS NOT NULL AND status IN ('VALID', 'USED')"),
            sqlite_where=db.text("seat_id IS NOT NULL AND status IN ('VALID', 'USED')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)

    ticketed_event_id = db.Column(
        db.Integer,
        db.ForeignKey('ticketed_events.id'),
        nullable=False,
        index=True
    )
    sector_id = db.Column(db.Integer, db.ForeignKey('sectors.id'), nullable=False, index=True)
    seat_id = db.Column(db.Integer, db.ForeignKey('seats.id'), nullable=True, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=True, index=True)

    # Fiscal fields
    ticket_type_code = db.Column(db.Enum(TicketTypeCode), nullable=False)
    sector_code = db.Column(db.String(10), nullable=False)
    progressive_number = db.Column(db.Integer, nullable=False)
    emission_date_str = db.Column(db.String(8), nullable=False)   # YYYYMMDD
    emission_time_str = db.Column(db.String(4), nullable=False)   # HHMM
    fiscal_seal_code = db.Column(db.String(64), nullable=False, unique=True)
    gross_amount = db.Column(db.Numeric(10, 2), nullable=False)

    # Participant (nominative tickets)
    participant_first_name = db.Column(db.String(80), nullable=True)
    participant_last_name = db.Column(db.String(80), nullable=True)

    # Status and workflow
    status = db.Column(
        db.Enum(TicketStatus),
        default=TicketStatus.VALID,
        nullable=False,
        index=True
    )
    used_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    reason_code = db.Column(db.String(10), db.ForeignKey('cancellation_reasons.code'), nullable=True)

    # Refund (only after cancellation)
    refund_requested = db.Column(db.Boolean, nullable=False, default=False)
    refunded_at = db.Column(db.DateTime, nullable=True)
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)
    refund_reference = db.Column(db.String(100), nullable=True)
    refund_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_refund_error = db.Column(db.String(255), nullable=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow, nullable=True)

    # Relationships
    ticketed_event = db.relationship('TicketedEvent', back_populates='tickets')
    sector = db.relationship('Sector')
    seat = db.relationship('Seat')
    transaction = db.relationship('Transaction', back_populates='tickets')
    reason = db.relationship('CancellationReason')

    def __repr__(self):
        return f'<Ticket {self.ticketed_event_id}/{self.progressive_number} {self.status.value}>'

    @property
    def refund_pending(self):
        return (
            self.status == TicketStatus.CANCELLED
            and self.refund_requested
            and self.refunded_at is None
        )


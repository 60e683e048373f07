"""
Transaction model: groups the tickets bought together in one sale.
"""
from datetime import datetime
from decimal import Decimal
import enum

from boxoffice.extensions import db


class TransactionStatus(enum.Enum):
    """Transaction status enumeration."""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'      # Fully refunded


class PaymentMethod(enum.Enum):
    """How the sale was paid."""
    CARD = 'card'
    CASH = 'cash'
    FREE = 'free'      # Complimentary tickets only


class Transaction(db.Model):
    """Ledger row for one sale."""

    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)

    ticketed_event_id = db.Column(
        db.Integer,
        db.ForeignKey('ticketed_events.id'),
        nullable=False,
        index=True
    )

    transaction_code = db.Column(db.String(40), unique=True, nullable=False)
    tickets_count = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    refunded_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('0.00'))

    # Payment
    payment_method = db.Column(
        db.Enum(PaymentMethod),
        default=PaymentMethod.CASH,
        nullable=False
    )
    payment_reference = db.Column(db.String(100), nullable=True)  # Gateway charge id
    customer_email = db.Column(db.String(120), nullable=True)

    status = db.Column(
        db.Enum(TransactionStatus),
        default=TransactionStatus.PENDING,
        nullable=False
    )

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow, nullable=True)

    # Relationships
    tickets = db.relationship('Ticket', back_populates='transaction')

    def __repr__(self):
        return f'<Transaction {self.transaction_code} {self.status.value}>'


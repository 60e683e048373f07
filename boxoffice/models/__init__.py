"""
Database models for the Boxoffice application.
"""
from boxoffice.models.user import User, AccessLevel, ACCESS_HIERARCHY
from boxoffice.models.ticketed_event import TicketedEvent, TicketingStatus, EventCounter
from boxoffice.models.sector import Sector, Seat, SeatStatus
from boxoffice.models.transaction import Transaction, TransactionStatus, PaymentMethod
from boxoffice.models.ticket import (
    Ticket,
    TicketStatus,
    TicketTypeCode,
    CancellationReason,
    TICKET_STATUS_TRANSITIONS,
    DEFAULT_CANCELLATION_REASONS,
    can_transition,
)
from boxoffice.models.fiscal_device import FiscalDevice
from boxoffice.utils.audit import AuditLog, AuditAction

__all__ = [
    'User', 'AccessLevel', 'ACCESS_HIERARCHY',
    'TicketedEvent', 'TicketingStatus', 'EventCounter',
    'Sector', 'Seat', 'SeatStatus',
    'Transaction', 'TransactionStatus', 'PaymentMethod',
    'Ticket', 'TicketStatus', 'TicketTypeCode', 'CancellationReason',
    'TICKET_STATUS_TRANSITIONS', 'DEFAULT_CANCELLATION_REASONS', 'can_transition',
    'FiscalDevice',
    'AuditLog', 'AuditAction',
]

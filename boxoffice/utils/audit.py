"""
Audit trail for fiscal ticketing actions.
Entries are added to the caller's session and committed (or rolled back)
together with the change they describe.
"""
import enum
from datetime import datetime
from flask import request, has_request_context

from boxoffice.extensions import db


class AuditAction(enum.Enum):
    """Audited ticketing actions."""
    ISSUE = "ISSUE"
    CHECKIN = "CHECKIN"
    CANCEL = "CANCEL"
    REFUND = "REFUND"
    REFUND_FAILED = "REFUND_FAILED"
    CHANGE_NAME = "CHANGE_NAME"
    SEAT_BLOCK = "SEAT_BLOCK"
    SEAT_UNBLOCK = "SEAT_UNBLOCK"
    SEAT_HOLD = "SEAT_HOLD"
    HOLD_EXTEND = "HOLD_EXTEND"
    HOLD_RELEASE = "HOLD_RELEASE"
    SEAT_FORCE_RELEASE = "SEAT_FORCE_RELEASE"
    SECTOR_SUSPEND = "SECTOR_SUSPEND"
    SECTOR_RESUME = "SECTOR_RESUME"
    SETTINGS_UPDATE = "SETTINGS_UPDATE"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"


_SEVERITY = {
    AuditAction.CANCEL: 'critical',
    AuditAction.REFUND: 'critical',
    AuditAction.REFUND_FAILED: 'critical',
    AuditAction.ISSUE: 'high',
    AuditAction.CHANGE_NAME: 'high',
    AuditAction.SETTINGS_UPDATE: 'medium',
    AuditAction.SEAT_BLOCK: 'medium',
    AuditAction.SEAT_UNBLOCK: 'medium',
    AuditAction.SEAT_HOLD: 'medium',
    AuditAction.HOLD_EXTEND: 'medium',
    AuditAction.HOLD_RELEASE: 'medium',
    AuditAction.SEAT_FORCE_RELEASE: 'high',
    AuditAction.SECTOR_SUSPEND: 'medium',
    AuditAction.SECTOR_RESUME: 'medium',
    AuditAction.LOGIN_FAILED: 'high',
}


class AuditLog(db.Model):
    """Append-only audit entry."""

    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    action = db.Column(db.String(50), nullable=False, index=True)
    entity_type = db.Column(db.String(50), index=True)  # Ticket, Seat, Sector, TicketedEvent
    entity_id = db.Column(db.Integer)
    entity_reference = db.Column(db.String(50))  # Human-readable ref (event/progressive)
    details = db.Column(db.JSON)
    severity = db.Column(db.String(20))
    ip_address = db.Column(db.String(45))
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = db.relationship('User', backref=db.backref('audit_logs', lazy='dynamic'))

    def __repr__(self):
        return f'<AuditLog {self.action} {self.entity_type}#{self.entity_id}>'


def _request_user():
    if has_request_context():
        return getattr(request, 'api_user', None)
    return None


def log_action(action, entity_type=None, entity_id=None, details=None,
               user=None, reference=None):
    """
    Add an audit entry to the current session (no commit).

    Args:
        action: AuditAction member
        entity_type: Type of entity affected (Ticket, Seat, ...)
        entity_id: ID of the entity affected
        details: Additional details as dict
        user: Operator performing the action (defaults to the API user)
        reference: Human-readable reference of the entity
    """
    if user is None:
        user = _request_user()

    entry = AuditLog(
        user_id=user.id if user else None,
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        entity_reference=reference,
        details=details,
        severity=_SEVERITY.get(action, 'info'),
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
    return entry


def ticket_reference(ticket):
    return f'{ticket.ticketed_event_id}/{ticket.progressive_number}'

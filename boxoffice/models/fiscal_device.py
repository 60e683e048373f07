"""
FiscalDevice model: last heartbeat reported by a smart-card reader bridge.
"""
from datetime import datetime

from boxoffice.extensions import db


class FiscalDevice(db.Model):
    """Readiness of one fiscal device, as last reported by its bridge."""

    __tablename__ = 'fiscal_devices'

    id = db.Column(db.Integer, primary_key=True)
    device_code = db.Column(db.String(50), unique=True, nullable=False)
    ready = db.Column(db.Boolean, nullable=False, default=False)
    card_serial = db.Column(db.String(50), nullable=True)
    last_message = db.Column(db.String(255), nullable=True)
    last_heartbeat_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<FiscalDevice {self.device_code} ready={self.ready}>'

    def to_dict(self):
        return {
            'device_code': self.device_code,
            'ready': self.ready,
            'card_serial': self.card_serial,
            'last_message': self.last_message,
            'last_heartbeat_at': self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
        }

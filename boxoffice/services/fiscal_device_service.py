"""
Fiscal device readiness.
The card reader bridge posts heartbeats; issuance only proceeds while a
device reported ready recently enough.
"""
import logging
from datetime import datetime, timedelta

from flask import current_app

from boxoffice.extensions import db
from boxoffice.models.fiscal_device import FiscalDevice

logger = logging.getLogger(__name__)


class FiscalDeviceService:
    """Readiness signal consumed by ticket issuance."""

    @staticmethod
    def record_heartbeat(device_code, ready, card_serial=None, message=None, at=None):
        """Store the latest heartbeat of a device and commit."""
        device = FiscalDevice.query.filter_by(device_code=device_code).first()
        if device is None:
            device = FiscalDevice(device_code=device_code)
            db.session.add(device)
            logger.info('Fiscal device %s registered', device_code)

        if device.ready != bool(ready):
            logger.info('Fiscal device %s ready=%s (%s)', device_code, bool(ready), message or '-')

        device.ready = bool(ready)
        device.card_serial = card_serial
        device.last_message = (message or '')[:255] or None
        device.last_heartbeat_at = at or datetime.utcnow()
        db.session.commit()
        return device

    @staticmethod
    def is_ready(at=None) -> bool:
        """True if some device reported ready within the heartbeat timeout."""
        if not current_app.config.get('FISCAL_DEVICE_REQUIRED', True):
            return True
        at = at or datetime.utcnow()
        timeout = current_app.config.get('FISCAL_DEVICE_HEARTBEAT_TIMEOUT', 35)
        fresh_after = at - timedelta(seconds=timeout)
        return db.session.query(
            FiscalDevice.query.filter(
                FiscalDevice.ready == True,
                FiscalDevice.last_heartbeat_at >= fresh_after,
            ).exists()
        ).scalar()

    @staticmethod
    def status(at=None):
        """Readiness summary for the API."""
        devices = FiscalDevice.query.order_by(FiscalDevice.device_code).all()
        return {
            'ready': FiscalDeviceService.is_ready(at),
            'required': current_app.config.get('FISCAL_DEVICE_REQUIRED', True),
            'devices': [d.to_dict() for d in devices],
        }

"""
Services package for Boxoffice.
Contains business logic separated from routes.
"""

from boxoffice.services.inventory_service import InventoryService, AvailabilityPool, SeatPool, SlotCounterPool
from boxoffice.services.numbering_service import NumberingService, compute_seal
from boxoffice.services.ticket_service import TicketService, CancellationResult
from boxoffice.services.refund_service import RefundCoordinator, RefundResult
from boxoffice.services.checkout_service import CheckoutService
from boxoffice.services.hold_service import SeatHoldService, SeatHold
from boxoffice.services.fiscal_device_service import FiscalDeviceService
from boxoffice.services.provisioning_service import ProvisioningService
from boxoffice.services.stats_service import StatsService

__all__ = [
    'InventoryService',
    'AvailabilityPool',
    'SeatPool',
    'SlotCounterPool',
    'NumberingService',
    'compute_seal',
    'TicketService',
    'CancellationResult',
    'RefundCoordinator',
    'RefundResult',
    'CheckoutService',
    'SeatHoldService',
    'SeatHold',
    'FiscalDeviceService',
    'ProvisioningService',
    'StatsService',
]

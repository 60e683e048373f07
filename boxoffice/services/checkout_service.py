"""
Checkout: charge first, then issue.

The charge happens before the issuing transaction opens, so no seat or
counter is locked while the gateway is working. If issuance then fails,
the charge is refunded straight away.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from boxoffice.errors import PaymentFailure, TicketingError
from boxoffice.models.transaction import PaymentMethod
from boxoffice.services.payment_gateway import PaymentGatewayError, get_payment_gateway
from boxoffice.services.ticket_service import TicketService

logger = logging.getLogger(__name__)


class CheckoutService:
    """Paid sale of tickets through the payment gateway."""

    @staticmethod
    def checkout(ticketed_event_id, sector_id, ticket_type_code, quantity=1, seat_ids=None,
                 participant_first_name=None, participant_last_name=None,
                 customer_email=None, payment_method_id=None, hold_token=None, user=None):
        """
        Charge the buyer and issue the tickets.

        Returns:
            List of issued Ticket

        Raises:
            PaymentFailure: the gateway refused the charge, nothing issued
            TicketingError: issuance failed (the charge has been refunded)
            SQLAlchemyError: the database failed during issuance (the charge has been refunded)
        """
        req = TicketService.prepare_issue(
            ticketed_event_id, sector_id, ticket_type_code, quantity,
            seat_ids=seat_ids,
            participant_first_name=participant_first_name,
            participant_last_name=participant_last_name,
            hold_token=hold_token,
        )
        total = req.total_amount
        gateway = get_payment_gateway()

        reference = None
        if total > 0:
            method = PaymentMethod.CARD if gateway.name == 'stripe' else PaymentMethod.CASH
            try:
                reference = gateway.charge(
                    total,
                    description=f'{req.event.name} - {req.quantity} x {req.sector.name}',
                    payment_method=payment_method_id,
                )
            except PaymentGatewayError as e:
                logger.warning('Charge of %s refused for event %s: %s', total, ticketed_event_id, e)
                raise PaymentFailure(f'Payment failed: {e}') from e
        else:
            method = PaymentMethod.FREE

        try:
            return TicketService.issue(
                ticketed_event_id, sector_id, ticket_type_code, quantity,
                seat_ids=seat_ids,
                participant_first_name=participant_first_name,
                participant_last_name=participant_last_name,
                payment_method=method,
                payment_reference=reference,
                customer_email=customer_email,
                hold_token=hold_token,
                user=user,
            )
        except (TicketingError, SQLAlchemyError):
            if reference:
                CheckoutService._void_charge(gateway, reference, total)
            raise

    @staticmethod
    def _void_charge(gateway, reference, total):
        try:
            gateway.refund(reference, total, idempotency_key=f'void-{reference}')
            logger.info('Charge %s refunded after failed issuance', reference)
        except PaymentGatewayError as e:
            logger.error('Charge %s of %s could not be refunded, manual refund needed: %s', reference, total, e)

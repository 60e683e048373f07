"""
Payment gateway adapters.

Only the charge/refund contract is used by ticketing. Stripe is used when
STRIPE_SECRET_KEY is configured; otherwise sales are settled at the cash
desk and refunds are handed back in cash.
"""
import logging
import uuid
from abc import ABC, abstractmethod

import stripe
from flask import current_app

from boxoffice.utils.fiscal import to_centesimi

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The gateway declined or could not process the request."""

    def __init__(self, message, retryable=True):
        super().__init__(message)
        self.retryable = retryable


class PaymentGateway(ABC):
    """Charge/refund contract."""

    name = 'abstract'

    @abstractmethod
    def charge(self, amount, description=None, payment_method=None, idempotency_key=None) -> str:
        """Charge amount (euros). Returns the transaction reference."""

    @abstractmethod
    def refund(self, transaction_ref, amount, idempotency_key=None) -> str:
        """Refund amount (euros) of a previous charge. Returns the refund reference."""


class StripePaymentGateway(PaymentGateway):
    """Card payments through Stripe PaymentIntents."""

    name = 'stripe'

    def __init__(self, api_key, currency='eur'):
        self.api_key = api_key
        self.currency = currency

    def charge(self, amount, description=None, payment_method=None, idempotency_key=None):
        if not payment_method:
            raise PaymentGatewayError('A Stripe payment method is required.', retryable=False)
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_centesimi(amount),
                currency=self.currency,
                payment_method=payment_method,
                confirm=True,
                description=description,
                automatic_payment_methods={'enabled': True, 'allow_redirects': 'never'},
                api_key=self.api_key,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            raise PaymentGatewayError(e.user_message or str(e), retryable=False) from e
        except stripe.StripeError as e:
            raise PaymentGatewayError(str(e)) from e

        if intent.status != 'succeeded':
            raise PaymentGatewayError(f'Payment not completed (status {intent.status}).', retryable=False)
        return intent.id

    def refund(self, transaction_ref, amount, idempotency_key=None):
        try:
            refund = stripe.Refund.create(
                payment_intent=transaction_ref,
                amount=to_centesimi(amount),
                api_key=self.api_key,
                idempotency_key=idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            raise PaymentGatewayError(str(e), retryable=False) from e
        except stripe.StripeError as e:
            raise PaymentGatewayError(str(e)) from e

        if refund.status == 'failed':
            raise PaymentGatewayError(f'Refund {refund.id} failed.', retryable=False)
        return refund.id


class OfflinePaymentGateway(PaymentGateway):
    """Cash desk: nothing leaves the building, references are generated locally."""

    name = 'offline'

    def charge(self, amount, description=None, payment_method=None, idempotency_key=None):
        return f'CASH-{uuid.uuid4().hex[:12].upper()}'

    def refund(self, transaction_ref, amount, idempotency_key=None):
        logger.info('Cash refund of %s for %s to be handed back at the desk', amount, transaction_ref)
        return f'CASH-REFUND-{uuid.uuid4().hex[:12].upper()}'


def init_payment_gateway(app):
    """Attach the configured gateway to the app."""
    if app.config.get('STRIPE_SECRET_KEY'):
        gateway = StripePaymentGateway(
            app.config['STRIPE_SECRET_KEY'],
            currency=app.config.get('PAYMENT_CURRENCY', 'eur'),
        )
    else:
        gateway = OfflinePaymentGateway()
    app.extensions['payment_gateway'] = gateway
    return gateway


def get_payment_gateway() -> PaymentGateway:
    return current_app.extensions['payment_gateway']

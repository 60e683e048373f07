"""
Cancellation & refund coordinator.

A refund is always a separate step from the cancellation that precedes
it. The gateway call runs with no database transaction open, is bounded
by REFUND_TIMEOUT_SECONDS per attempt and retried with exponential
backoff. When it fails the ticket stays cancelled, the attempt is
recorded, and the refund can be retried later.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from boxoffice.errors import ConflictError, ExternalRefundFailure, NotFoundError, ValidationError
from boxoffice.extensions import db
from boxoffice.models.ticket import Ticket, TicketStatus
from boxoffice.models.transaction import Transaction, TransactionStatus
from boxoffice.services.payment_gateway import PaymentGatewayError, get_payment_gateway
from boxoffice.utils.audit import log_action, AuditAction, ticket_reference
from boxoffice.utils.fiscal import to_money

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    """Outcome of a successful refund."""
    ticket_id: int
    amount: Decimal
    refund_reference: Optional[str]
    refunded_at: datetime
    attempts: int = 1
    transaction_status: Optional[str] = None

    def to_dict(self):
        return {
            'ticket_id': self.ticket_id,
            'amount': float(self.amount),
            'refund_reference': self.refund_reference,
            'refunded_at': self.refunded_at.isoformat(),
            'attempts': self.attempts,
            'transaction_status': self.transaction_status,
        }


def _call_gateway(gateway, transaction_ref, amount, idempotency_key):
    """Run gateway.refund with a per-attempt timeout and backoff.

    Returns:
        Tuple of (refund_reference, attempts)

    Raises:
        PaymentGatewayError: last failure once attempts are exhausted
    """
    timeout = current_app.config.get('REFUND_TIMEOUT_SECONDS', 10)
    max_attempts = current_app.config.get('REFUND_MAX_ATTEMPTS', 3)
    base_delay = current_app.config.get('REFUND_RETRY_BASE_DELAY', 2)

    last_error = None
    attempt = 0
    for attempt in range(1, max_attempts + 1):
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(gateway.refund, transaction_ref, amount, idempotency_key=idempotency_key)
        try:
            return future.result(timeout=timeout), attempt
        except FuturesTimeout:
            last_error = PaymentGatewayError(f'Refund timed out after {timeout}s.')
        except PaymentGatewayError as e:
            last_error = e
            if not e.retryable:
                break
        except Exception as e:
            # Transport errors from the gateway SDK
            logger.warning('Refund attempt %d for %s raised %s', attempt, transaction_ref, type(e).__name__)
            last_error = PaymentGatewayError(f'{type(e).__name__}: {e}', retryable=True)
        finally:
            executor.shutdown(wait=False)

        if attempt < max_attempts:
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                'Refund attempt %d/%d for %s failed: %s, retrying in %ss',
                attempt, max_attempts, transaction_ref, last_error, delay,
            )
            time.sleep(delay)

    last_error.attempts = attempt
    raise last_error


class RefundCoordinator:
    """Bridges cancelled tickets to the payment gateway's refund call."""

    @staticmethod
    def request_refund(ticket_id, user=None) -> RefundResult:
        """
        Refund a cancelled ticket's gross amount.

        Args:
            ticket_id: Cancelled ticket to refund
            user: Operator requesting the refund (audit)

        Returns:
            RefundResult

        Raises:
            NotFoundError: unknown ticket
            ConflictError: ticket not cancelled, or already refunded
            ValidationError: ticket has no paid transaction
            ExternalRefundFailure: gateway failed or timed out
        """
        ticket = db.session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError(f'Ticket {ticket_id} not found.')
        if ticket.status != TicketStatus.CANCELLED:
            raise ConflictError(
                'Only cancelled tickets can be refunded.', code='refund_requires_cancellation'
            )
        if ticket.refunded_at is not None:
            raise ConflictError(f'Ticket {ticket_id} is already refunded.', code='already_refunded')

        transaction = ticket.transaction
        if transaction is None:
            raise ValidationError(f'Ticket {ticket_id} has no transaction to refund.', code='no_transaction')

        amount = to_money(ticket.gross_amount)
        payment_reference = transaction.payment_reference or transaction.transaction_code
        transaction_id = transaction.id

        # Marked before the call so a failure leaves the ticket in the retry queue
        ticket.refund_requested = True
        db.session.commit()

        if amount == 0:
            # Complimentary ticket: nothing to send back through the gateway
            return RefundCoordinator._record_success(
                ticket_id, transaction_id, amount, None, 0, user
            )

        gateway = get_payment_gateway()
        try:
            refund_reference, attempts = _call_gateway(
                gateway, payment_reference, amount, idempotency_key=f'refund-ticket-{ticket_id}'
            )
        except PaymentGatewayError as e:
            attempts = getattr(e, 'attempts', 1)
            RefundCoordinator._record_failure(ticket_id, e, attempts, user)
            raise ExternalRefundFailure(
                f'Refund of ticket {ticket_id} failed: {e}',
                ticket_id=ticket_id,
                attempts=attempts,
            ) from e

        return RefundCoordinator._record_success(
            ticket_id, transaction_id, amount, refund_reference, attempts, user
        )

    @staticmethod
    def _record_success(ticket_id, transaction_id, amount, refund_reference, attempts, user):
        now = datetime.utcnow()
        try:
            result = db.session.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.refunded_at.is_(None))
                .values(
                    refunded_at=now,
                    refund_amount=amount,
                    refund_reference=refund_reference,
                    refund_attempts=Ticket.refund_attempts + attempts,
                    last_refund_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f'Ticket {ticket_id} is already refunded.', code='already_refunded')

            db.session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(refunded_amount=Transaction.refunded_amount + amount)
                .execution_options(synchronize_session=False)
            )
            # Partial refunds keep the transaction completed
            db.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.refunded_amount >= Transaction.total_amount,
                )
                .values(status=TransactionStatus.REFUNDED)
                .execution_options(synchronize_session=False)
            )
            ticket = db.session.get(Ticket, ticket_id)
            log_action(
                AuditAction.REFUND, 'Ticket', ticket_id, user=user,
                reference=ticket_reference(ticket),
                details={'amount': str(amount), 'refund_reference': refund_reference},
            )
            db.session.commit()
        except ConflictError:
            db.session.rollback()
            logger.warning('Ticket %s refunded concurrently, %s not recorded', ticket_id, refund_reference)
            raise
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                'Refund %s for ticket %s succeeded at the gateway but could not be recorded',
                refund_reference, ticket_id,
            )
            raise

        transaction = db.session.get(Transaction, transaction_id)
        logger.info('Ticket %s refunded %s (%s)', ticket_id, amount, refund_reference or 'no gateway')
        return RefundResult(
            ticket_id=ticket_id,
            amount=amount,
            refund_reference=refund_reference,
            refunded_at=now,
            attempts=attempts,
            transaction_status=transaction.status.value if transaction else None,
        )

    @staticmethod
    def _record_failure(ticket_id, error, attempts, user):
        logger.warning('Refund of ticket %s failed after %d attempt(s): %s', ticket_id, attempts, error)
        try:
            db.session.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id)
                .values(
                    refund_attempts=Ticket.refund_attempts + attempts,
                    last_refund_error=str(error)[:255],
                )
                .execution_options(synchronize_session=False)
            )
            log_action(
                AuditAction.REFUND_FAILED, 'Ticket', ticket_id, user=user,
                details={'error': str(error)[:255], 'attempts': attempts},
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Could not record refund failure for ticket %s', ticket_id)

    @staticmethod
    def pending_refunds():
        """Cancelled tickets whose requested refund has not gone through."""
        return Ticket.query.filter(
            Ticket.status == TicketStatus.CANCELLED,
            Ticket.refund_requested == True,
            Ticket.refunded_at.is_(None),
        ).order_by(Ticket.id).all()

    @staticmethod
    def retry_pending_refunds(user=None):
        """
        Retry every pending refund.

        Returns:
            Tuple of (list of RefundResult, list of ExternalRefundFailure)
        """
        ticket_ids = [t.id for t in RefundCoordinator.pending_refunds()]
        succeeded: List[RefundResult] = []
        failed: List[ExternalRefundFailure] = []
        for ticket_id in ticket_ids:
            try:
                succeeded.append(RefundCoordinator.request_refund(ticket_id, user=user))
            except ExternalRefundFailure as e:
                failed.append(e)
            except ConflictError:
                logger.info('Ticket %s no longer pending refund, skipped', ticket_id)
        logger.info('Refund retry: %d succeeded, %d failed', len(succeeded), len(failed))
        return succeeded, failed

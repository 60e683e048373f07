# =============================================================================
# Tests for cancellation refunds through the payment gateway
# =============================================================================

from decimal import Decimal

import pytest

from boxoffice.errors import ConflictError, ExternalRefundFailure, ValidationError
from boxoffice.extensions import db
from boxoffice.models.sector import Sector
from boxoffice.models.ticket import Ticket, TicketStatus
from boxoffice.models.transaction import Transaction, TransactionStatus
from boxoffice.services.refund_service import RefundCoordinator
from boxoffice.services.ticket_service import TicketService
from boxoffice.utils.audit import AuditLog


def _reload(model, object_id):
    db.session.expire_all()
    return db.session.get(model, object_id)


@pytest.fixture
def paid_tickets(fiscal_device, reasons, event, ga_sector, gateway):
    """Two INT tickets (20.00 each) paid by card in one transaction."""
    return TicketService.issue(
        event.id, ga_sector.id, 'INT', quantity=2,
        payment_method='card', payment_reference='pi_test',
    )


# =============================================================================
# Successful Refunds
# =============================================================================

class TestRefundSuccess:

    def test_cancel_with_refund(self, paid_tickets, gateway, manager_user):
        ticket = paid_tickets[0]
        result = TicketService.cancel(ticket.id, '3.1', refund=True, user=manager_user)

        assert result.ticket.status == TicketStatus.CANCELLED
        assert result.refund_error is None
        assert result.refund.amount == Decimal('20.00')
        assert result.refund.refund_reference == 're_1'
        assert result.refund.attempts == 1
        assert gateway.refund_calls == [('pi_test', Decimal('20.00'), f'refund-ticket-{ticket.id}')]

        refunded = _reload(Ticket, ticket.id)
        assert refunded.refunded_at is not None
        assert refunded.refund_amount == Decimal('20.00')
        assert refunded.refund_reference == 're_1'
        assert not refunded.refund_pending

        entry = AuditLog.query.filter_by(action='REFUND').one()
        assert entry.user_id == manager_user.id

    def test_partial_then_full_refund(self, paid_tickets, gateway):
        """Transaction becomes refunded only when every ticket is refunded."""
        first, second = paid_tickets
        transaction_id = first.transaction_id

        TicketService.cancel(first.id, '3.1', refund=True)
        transaction = _reload(Transaction, transaction_id)
        assert transaction.refunded_amount == Decimal('20.00')
        assert transaction.status == TransactionStatus.COMPLETED

        result = TicketService.cancel(second.id, '3.1', refund=True)
        transaction = _reload(Transaction, transaction_id)
        assert transaction.refunded_amount == Decimal('40.00')
        assert transaction.status == TransactionStatus.REFUNDED
        assert result.refund.transaction_status == 'refunded'

    def test_cash_sale_refunds_against_transaction_code(self, fiscal_device, reasons, event, ga_sector, gateway):
        """No gateway reference: the transaction code identifies the sale."""
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT', payment_method='cash')[0]
        code = ticket.transaction.transaction_code

        TicketService.cancel(ticket.id, '1.2', refund=True)
        assert gateway.refund_calls[0][0] == code

    def test_free_ticket_skips_gateway(self, fiscal_device, reasons, event, ga_sector, gateway):
        ticket = TicketService.issue(event.id, ga_sector.id, 'OMA', payment_method='free')[0]

        result = TicketService.cancel(ticket.id, '1.2', refund=True)

        assert result.refund.amount == Decimal('0.00')
        assert result.refund.refund_reference is None
        assert gateway.refund_calls == []
        assert _reload(Ticket, ticket.id).refunded_at is not None

    def test_refund_after_cancellation(self, paid_tickets, gateway):
        """A ticket cancelled without refund can be refunded later."""
        ticket = paid_tickets[0]
        TicketService.cancel(ticket.id, '3.1')

        result = RefundCoordinator.request_refund(ticket.id)
        assert result.amount == Decimal('20.00')
        assert _reload(Ticket, ticket.id).refund_requested is True


# =============================================================================
# Failed Refunds
# =============================================================================

class TestRefundFailure:

    def test_failure_keeps_cancellation(self, paid_tickets, gateway):
        """Gateway down: the ticket stays cancelled and the seat stays released."""
        gateway.failing_refunds = 5
        ticket = paid_tickets[0]

        result = TicketService.cancel(ticket.id, '3.1', refund=True)

        assert result.refund is None
        assert result.refund_failed
        assert isinstance(result.refund_error, ExternalRefundFailure)
        assert result.refund_error.ticket_id == ticket.id
        assert result.refund_error.attempts == 2
        assert len(gateway.refund_calls) == 2

        failed = _reload(Ticket, ticket.id)
        assert failed.status == TicketStatus.CANCELLED
        assert failed.refund_pending
        assert failed.refund_attempts == 2
        assert failed.last_refund_error == 'Gateway unavailable'
        assert _reload(Sector, failed.sector_id).available_seats == 99
        assert AuditLog.query.filter_by(action='REFUND_FAILED').count() == 1

    def test_non_retryable_failure_stops(self, paid_tickets, gateway):
        gateway.failing_refunds = 1
        gateway.refund_failure_retryable = False

        result = TicketService.cancel(paid_tickets[0].id, '3.1', refund=True)

        assert result.refund_error.attempts == 1
        assert len(gateway.refund_calls) == 1

    def test_transient_failure_retried(self, paid_tickets, gateway):
        """One failure, then success on the second attempt."""
        gateway.failing_refunds = 1

        result = TicketService.cancel(paid_tickets[0].id, '3.1', refund=True)

        assert result.refund_error is None
        assert result.refund.attempts == 2
        assert _reload(Ticket, paid_tickets[0].id).refund_attempts == 2

    def test_timeout_is_a_failure(self, app, paid_tickets, gateway):
        app.config['REFUND_TIMEOUT_SECONDS'] = 0.05
        gateway.refund_delay = 0.5

        result = TicketService.cancel(paid_tickets[0].id, '3.1', refund=True)

        assert result.refund_failed
        assert 'timed out' in result.refund_error.message
        assert _reload(Ticket, paid_tickets[0].id).status == TicketStatus.CANCELLED

    def test_unexpected_gateway_exception_recorded(self, paid_tickets, gateway, monkeypatch):
        """A transport error from the SDK is retried and recorded like a gateway failure."""
        def reset(transaction_ref, amount, idempotency_key=None):
            gateway.refund_calls.append((transaction_ref, amount, idempotency_key))
            raise ConnectionError('socket reset')

        monkeypatch.setattr(gateway, 'refund', reset)
        ticket = paid_tickets[0]

        result = TicketService.cancel(ticket.id, '3.1', refund=True)

        assert result.refund_failed
        assert result.refund_error.code == 'refund_failed'
        assert result.refund_error.attempts == 2
        assert len(gateway.refund_calls) == 2

        failed = _reload(Ticket, ticket.id)
        assert failed.status == TicketStatus.CANCELLED
        assert failed.refund_pending
        assert failed.refund_attempts == 2
        assert 'socket reset' in failed.last_refund_error

    def test_request_refund_raises(self, paid_tickets, gateway):
        ticket = paid_tickets[0]
        TicketService.cancel(ticket.id, '3.1')
        gateway.failing_refunds = 5

        with pytest.raises(ExternalRefundFailure) as exc:
            RefundCoordinator.request_refund(ticket.id)
        assert exc.value.status == 502
        assert exc.value.code == 'refund_failed'


# =============================================================================
# Refund Preconditions
# =============================================================================

class TestRefundPreconditions:

    def test_valid_ticket_cannot_be_refunded(self, paid_tickets):
        with pytest.raises(ConflictError) as exc:
            RefundCoordinator.request_refund(paid_tickets[0].id)
        assert exc.value.code == 'refund_requires_cancellation'

    def test_refund_only_once(self, paid_tickets, gateway):
        ticket = paid_tickets[0]
        TicketService.cancel(ticket.id, '3.1', refund=True)

        with pytest.raises(ConflictError) as exc:
            RefundCoordinator.request_refund(ticket.id)
        assert exc.value.code == 'already_refunded'
        assert len(gateway.refund_calls) == 1

    def test_ticket_without_transaction(self, fiscal_device, reasons, event, ga_sector):
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT')[0]
        TicketService.cancel(ticket.id, '3.1')

        with pytest.raises(ValidationError) as exc:
            RefundCoordinator.request_refund(ticket.id)
        assert exc.value.code == 'no_transaction'


# =============================================================================
# Retry Queue
# =============================================================================

class TestRetryPendingRefunds:

    def test_retry_clears_queue(self, paid_tickets, gateway):
        gateway.failing_refunds = 4
        for ticket in paid_tickets:
            TicketService.cancel(ticket.id, '3.1', refund=True)
        assert len(RefundCoordinator.pending_refunds()) == 2

        succeeded, failed = RefundCoordinator.retry_pending_refunds()

        assert [r.ticket_id for r in succeeded] == [t.id for t in paid_tickets]
        assert failed == []
        assert RefundCoordinator.pending_refunds() == []
        assert _reload(Ticket, paid_tickets[0].id).refund_attempts == 3
        assert _reload(Transaction, paid_tickets[0].transaction_id).status == TransactionStatus.REFUNDED

    def test_retry_reports_failures(self, paid_tickets, gateway):
        gateway.failing_refunds = 100
        TicketService.cancel(paid_tickets[0].id, '3.1', refund=True)

        succeeded, failed = RefundCoordinator.retry_pending_refunds()

        assert succeeded == []
        assert [e.ticket_id for e in failed] == [paid_tickets[0].id]
        assert _reload(Ticket, paid_tickets[0].id).refund_attempts == 4

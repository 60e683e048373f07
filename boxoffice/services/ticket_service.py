"""
Ticket lifecycle: issuance, check-in, cancellation.

Issuance is one database transaction: reservations, progressive numbers,
seals, ticket rows, the optional transaction row and the event counters
either all commit or all roll back. Cancellation is its own transaction;
a refund, when requested, runs only after it has committed.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from boxoffice.errors import (
    ConflictError,
    ExternalRefundFailure,
    FiscalDeviceUnavailable,
    InventoryExhausted,
    NotFoundError,
    TicketingError,
    ValidationError,
)
from boxoffice.extensions import db
from boxoffice.models.sector import Sector, Seat
from boxoffice.models.ticket import (
    Ticket,
    TicketStatus,
    TicketTypeCode,
    CancellationReason,
    TICKET_STATUS_TRANSITIONS,
    can_transition,
)
from boxoffice.models.ticketed_event import TicketedEvent
from boxoffice.models.transaction import Transaction, TransactionStatus, PaymentMethod
from boxoffice.services.fiscal_device_service import FiscalDeviceService
from boxoffice.services.inventory_service import InventoryService, pool_for
from boxoffice.services.numbering_service import NumberingService
from boxoffice.services.refund_service import RefundCoordinator, RefundResult
from boxoffice.utils.audit import log_action, AuditAction, ticket_reference
from boxoffice.utils.fiscal import format_emission_date, format_emission_time

logger = logging.getLogger(__name__)


@dataclass
class IssueRequest:
    """A validated issuance request, ready to be executed."""
    event: TicketedEvent
    sector: Sector
    ticket_type: TicketTypeCode
    quantity: int
    seat_ids: List[Optional[int]]
    unit_price: Decimal
    hold_token: Optional[str] = None
    participant_first_name: Optional[str] = None
    participant_last_name: Optional[str] = None

    @property
    def total_amount(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class CancellationResult:
    """Cancelled ticket plus the outcome of the refund, if one was requested."""
    ticket: Ticket
    refund: Optional[RefundResult] = None
    refund_error: Optional[ExternalRefundFailure] = field(default=None)

    @property
    def refund_failed(self):
        return self.refund_error is not None


def _clean_name(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _sources_for(target):
    """Statuses the transition table allows to move to target."""
    return [status for status, targets in TICKET_STATUS_TRANSITIONS.items() if target in targets]


def _transition(ticket, target, **values):
    """Conditionally move a ticket to target inside the current transaction.

    Raises:
        ConflictError: the ticket is not (any longer) in a source state
    """
    if not can_transition(ticket.status, target):
        raise ConflictError(
            f'Ticket {ticket.id} is {ticket.status.value}, cannot become {target.value}.'
        )
    result = db.session.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.status.in_(_sources_for(target)))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f'Ticket {ticket.id} changed state concurrently, cannot become {target.value}.')


class TicketService:
    """Issuance, check-in and cancellation of fiscal tickets."""

    @staticmethod
    def get_ticket(ticket_id) -> Ticket:
        ticket = db.session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError(f'Ticket {ticket_id} not found.')
        return ticket

    @staticmethod
    def prepare_issue(ticketed_event_id, sector_id, ticket_type_code, quantity=1,
                      seat_id=None, seat_ids=None, participant_first_name=None,
                      participant_last_name=None, hold_token=None, at=None) -> IssueRequest:
        """
        Run every issuance check without touching the database state.

        Raises:
            ValidationError: bad input, sales closed, nominative names missing
            NotFoundError: unknown event or sector
            FiscalDeviceUnavailable: no fiscal device ready
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError('Quantity must be a positive integer.', code='invalid_quantity')

        ticket_type = TicketTypeCode.parse(ticket_type_code)
        if ticket_type is None:
            raise ValidationError(
                f'Unknown ticket type: {ticket_type_code}. Use INT, RID or OMA.',
                code='invalid_ticket_type',
            )

        if not FiscalDeviceService.is_ready(at):
            raise FiscalDeviceUnavailable('No fiscal device is ready, tickets cannot be issued.')

        event = db.session.get(TicketedEvent, ticketed_event_id)
        if event is None:
            raise NotFoundError(f'Ticketed event {ticketed_event_id} not found.')
        if not event.is_on_sale(at):
            raise ValidationError(
                f'Ticket sales for event {event.id} are not open '
                f'(status {event.ticketing_status.value}).',
                code='sales_closed',
            )

        first_name = _clean_name(participant_first_name)
        last_name = _clean_name(participant_last_name)
        if event.requires_nominative and (not first_name or not last_name):
            raise ValidationError(
                'This event requires the participant first and last name.',
                code='participant_required',
            )

        if quantity > event.max_tickets_per_user:
            raise ValidationError(
                f'At most {event.max_tickets_per_user} tickets per purchase.',
                code='quantity_exceeds_limit',
            )

        sector = db.session.get(Sector, sector_id)
        if sector is None:
            raise NotFoundError(f'Sector {sector_id} not found.')
        if sector.ticketed_event_id != event.id:
            raise ValidationError(
                f'Sector {sector.sector_code} does not belong to event {event.id}.',
                code='sector_mismatch',
            )

        if seat_ids is None and seat_id is not None:
            seat_ids = [seat_id]
        if sector.is_numbered:
            seat_ids = list(seat_ids or [])
            if len(seat_ids) != quantity:
                raise ValidationError(
                    f'Numbered sector {sector.sector_code}: one seat per ticket is required '
                    f'({quantity} tickets, {len(seat_ids)} seats).',
                    code='seat_required',
                )
            if len(set(seat_ids)) != len(seat_ids):
                raise ValidationError('The same seat was requested twice.', code='duplicate_seat')
            # Ascending seat order keeps row locks in one order across buyers
            seat_ids = sorted(seat_ids)
            found = {
                seat.id: seat.sector_id
                for seat in Seat.query.filter(Seat.id.in_(seat_ids)).all()
            }
            foreign = [sid for sid in seat_ids if found.get(sid) != sector.id]
            if foreign:
                raise ValidationError(
                    f'Seats {foreign} do not belong to sector {sector.sector_code}.',
                    code='seat_mismatch',
                )
        else:
            if seat_ids or hold_token:
                raise ValidationError(
                    f'Sector {sector.sector_code} is not numbered, no seat can be chosen.',
                    code='seat_not_allowed',
                )
            seat_ids = [None] * quantity

        unit_price = InventoryService.price_for(sector, ticket_type)

        return IssueRequest(
            event=event,
            sector=sector,
            ticket_type=ticket_type,
            quantity=quantity,
            seat_ids=seat_ids,
            unit_price=unit_price,
            participant_first_name=first_name,
            participant_last_name=last_name,
            hold_token=hold_token or None,
        )

    @staticmethod
    def issue(ticketed_event_id, sector_id, ticket_type_code, quantity=1, seat_id=None,
              seat_ids=None, participant_first_name=None, participant_last_name=None,
              payment_method=None, payment_reference=None, customer_email=None,
              hold_token=None, user=None, now=None) -> List[Ticket]:
        """
        Issue one or more fiscal tickets.

        Args:
            ticketed_event_id: Event to sell
            sector_id: Sector to sell from
            ticket_type_code: INT, RID or OMA
            quantity: Number of tickets (all or none are issued)
            seat_id / seat_ids: Seats for a numbered sector, one per ticket
            participant_first_name, participant_last_name: Holder (nominative events)
            payment_method: PaymentMethod (or value) to record a Transaction
            payment_reference: Gateway charge reference for the Transaction
            customer_email: Buyer email for the Transaction
            hold_token: Token of a seat hold covering the requested seats
            user: Operator issuing (audit)
            now: Emission time (UTC), defaults to now

        Returns:
            List of issued Ticket

        Raises:
            ValidationError, NotFoundError, FiscalDeviceUnavailable: before any change
            InventoryExhausted: a seat/slot or the event capacity ran out, nothing issued
            NumberingFailure: no number or seal could be produced, nothing issued
        """
        now = now or datetime.utcnow()
        req = TicketService.prepare_issue(
            ticketed_event_id, sector_id, ticket_type_code, quantity,
            seat_id=seat_id, seat_ids=seat_ids,
            participant_first_name=participant_first_name,
            participant_last_name=participant_last_name,
            hold_token=hold_token,
            at=now,
        )
        if payment_method is not None and not isinstance(payment_method, PaymentMethod):
            try:
                payment_method = PaymentMethod(payment_method)
            except ValueError:
                raise ValidationError(f'Unknown payment method: {payment_method}', code='invalid_payment_method')

        event_id = req.event.id
        sector_code = req.sector.sector_code
        emission_date_str = format_emission_date(now)
        emission_time_str = format_emission_time(now)
        total = req.total_amount
        pool = pool_for(req.sector)

        try:
            transaction = None
            if payment_method is not None or payment_reference:
                transaction = Transaction(
                    ticketed_event_id=event_id,
                    transaction_code=f'TX-{event_id}-{uuid.uuid4().hex[:10].upper()}',
                    tickets_count=req.quantity,
                    total_amount=total,
                    payment_method=payment_method or PaymentMethod.CARD,
                    payment_reference=payment_reference,
                    customer_email=customer_email,
                    status=TransactionStatus.COMPLETED,
                )
                db.session.add(transaction)

            tickets = []
            for seat_id_ in req.seat_ids:
                pool.reserve(seat_id_, hold_token=req.hold_token, now=now)
                number = NumberingService.next_progressive_number(event_id)
                seal = NumberingService.compute_seal(
                    sector_code, req.ticket_type, number,
                    emission_date_str, emission_time_str, req.unit_price,
                )
                ticket = Ticket(
                    ticketed_event_id=event_id,
                    sector_id=req.sector.id,
                    seat_id=seat_id_,
                    transaction=transaction,
                    ticket_type_code=req.ticket_type,
                    sector_code=sector_code,
                    progressive_number=number,
                    emission_date_str=emission_date_str,
                    emission_time_str=emission_time_str,
                    fiscal_seal_code=seal,
                    gross_amount=req.unit_price,
                    participant_first_name=req.participant_first_name,
                    participant_last_name=req.participant_last_name,
                    status=TicketStatus.VALID,
                )
                db.session.add(ticket)
                tickets.append(ticket)

            result = db.session.execute(
                update(TicketedEvent)
                .where(
                    TicketedEvent.id == event_id,
                    TicketedEvent.tickets_sold + req.quantity <= TicketedEvent.total_capacity,
                )
                .values(
                    tickets_sold=TicketedEvent.tickets_sold + req.quantity,
                    revenue=TicketedEvent.revenue + total,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InventoryExhausted(f'Event {event_id} is sold out.', code='event_sold_out')

            db.session.flush()
            for ticket in tickets:
                log_action(
                    AuditAction.ISSUE, 'Ticket', ticket.id, user=user,
                    reference=ticket_reference(ticket),
                    details={'type': req.ticket_type.value, 'amount': str(req.unit_price)},
                )
            db.session.commit()
        except TicketingError as e:
            db.session.rollback()
            logger.info('Issuance refused for event %s sector %s: %s', event_id, sector_code, e.code)
            raise
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('Issuance failed for event %s sector %s', event_id, sector_code)
            raise

        logger.info(
            'Issued %d %s ticket(s) for event %s sector %s: #%s',
            len(tickets), req.ticket_type.value, event_id, sector_code,
            ', #'.join(str(t.progressive_number) for t in tickets),
        )
        return tickets

    @staticmethod
    def mark_used(ticket_id, user=None, now=None) -> Ticket:
        """
        Check a ticket in at the entrance.

        Raises:
            NotFoundError: unknown ticket
            ConflictError: ticket is not valid (already used or cancelled)
        """
        ticket = TicketService.get_ticket(ticket_id)
        try:
            _transition(ticket, TicketStatus.USED, used_at=now or datetime.utcnow())
            log_action(AuditAction.CHECKIN, 'Ticket', ticket.id, user=user, reference=ticket_reference(ticket))
            db.session.commit()
        except (TicketingError, SQLAlchemyError):
            db.session.rollback()
            raise
        db.session.refresh(ticket)
        return ticket

    @staticmethod
    def cancel(ticket_id, reason_code, refund=False, user=None, now=None) -> CancellationResult:
        """
        Cancel a valid ticket and give its seat/slot back.

        The cancellation commits on its own. When refund is True the refund
        is requested afterward; a refund failure is reported in the result
        and leaves the cancellation in place.

        Args:
            ticket_id: Ticket to cancel
            reason_code: Causale code from the CancellationReason vocabulary
            refund: Also refund the ticket's gross amount
            user: Operator cancelling (audit)

        Returns:
            CancellationResult

        Raises:
            NotFoundError: unknown ticket
            ValidationError: unknown reason, or refund requested without a transaction
            ConflictError: ticket not valid
        """
        ticket = TicketService.get_ticket(ticket_id)

        reason = db.session.get(CancellationReason, reason_code) if reason_code else None
        if reason is None or not reason.is_active:
            raise ValidationError(f'Unknown cancellation reason: {reason_code}', code='invalid_reason')
        if refund and ticket.transaction_id is None:
            raise ValidationError(
                f'Ticket {ticket.id} has no transaction, it cannot be refunded.',
                code='refund_without_transaction',
            )

        try:
            _transition(
                ticket,
                TicketStatus.CANCELLED,
                cancelled_at=now or datetime.utcnow(),
                reason_code=reason.code,
                refund_requested=bool(refund),
            )
            pool_for(ticket.sector).release(ticket.seat_id)
            db.session.execute(
                update(TicketedEvent)
                .where(TicketedEvent.id == ticket.ticketed_event_id, TicketedEvent.tickets_sold > 0)
                .values(
                    tickets_sold=TicketedEvent.tickets_sold - 1,
                    revenue=TicketedEvent.revenue - ticket.gross_amount,
                )
                .execution_options(synchronize_session=False)
            )
            log_action(
                AuditAction.CANCEL, 'Ticket', ticket.id, user=user,
                reference=ticket_reference(ticket),
                details={'reason_code': reason.code, 'refund': bool(refund)},
            )
            db.session.commit()
        except (TicketingError, SQLAlchemyError):
            db.session.rollback()
            raise

        db.session.refresh(ticket)
        logger.info('Ticket %s cancelled (causale %s)', ticket_reference(ticket), reason.code)

        result = CancellationResult(ticket=ticket)
        if refund:
            try:
                result.refund = RefundCoordinator.request_refund(ticket.id, user=user)
            except ExternalRefundFailure as e:
                result.refund_error = e
            db.session.refresh(ticket)
        return result

    @staticmethod
    def change_participant(ticket_id, first_name, last_name, user=None) -> Ticket:
        """
        Change the holder of a nominative ticket. Fiscal fields, including
        the seal, are left exactly as issued.
        """
        ticket = TicketService.get_ticket(ticket_id)
        event = ticket.ticketed_event
        if not event.allows_change_name:
            raise ValidationError('This event does not allow name changes.', code='name_change_not_allowed')
        if ticket.status != TicketStatus.VALID:
            raise ConflictError(f'Ticket {ticket.id} is {ticket.status.value}, name cannot change.')

        first_name = _clean_name(first_name)
        last_name = _clean_name(last_name)
        if not first_name or not last_name:
            raise ValidationError('First and last name are required.', code='participant_required')

        old = {'first_name': ticket.participant_first_name, 'last_name': ticket.participant_last_name}
        ticket.participant_first_name = first_name
        ticket.participant_last_name = last_name
        log_action(
            AuditAction.CHANGE_NAME, 'Ticket', ticket.id, user=user,
            reference=ticket_reference(ticket),
            details={'old': old, 'new': {'first_name': first_name, 'last_name': last_name}},
        )
        db.session.commit()
        return ticket

    @staticmethod
    def seat_holders(seat_id):
        """Live tickets on a seat (at most one)."""
        return Ticket.query.filter(
            Ticket.seat_id == seat_id,
            Ticket.status.in_([TicketStatus.VALID, TicketStatus.USED]),
        ).all()

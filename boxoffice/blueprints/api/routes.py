"""
API v1 Routes: events, inventory, ticket issuance, check-in, cancellation,
refunds and the fiscal device heartbeat.

Domain errors raised by the services are turned into JSON responses by
the TicketingError handler registered on the app.
"""
from flask import request, jsonify

from boxoffice.blueprints.api import api_bp
from boxoffice.blueprints.api.decorators import jwt_required, requires_api_access
from boxoffice.blueprints.api.helpers import paginate_query, load_json, api_error, api_success
from boxoffice.blueprints.api.schemas import (
    TicketedEventSchema, SectorSchema, SeatSchema, TicketSchema,
    CancellationReasonSchema, FiscalDeviceSchema,
    IssueTicketsSchema, CheckoutSchema, CancelTicketSchema, ParticipantSchema,
    EventSettingsSchema, HeartbeatSchema, HoldSeatsSchema,
)
from boxoffice.errors import NotFoundError
from boxoffice.extensions import db
from boxoffice.models.user import AccessLevel
from boxoffice.models.sector import Sector, Seat, SeatStatus
from boxoffice.models.ticket import Ticket, TicketStatus, CancellationReason
from boxoffice.models.ticketed_event import TicketedEvent
from boxoffice.services import (
    TicketService,
    CheckoutService,
    InventoryService,
    SeatHoldService,
    NumberingService,
    RefundCoordinator,
    FiscalDeviceService,
    ProvisioningService,
    StatsService,
)


def _get_or_404(model, object_id, label):
    obj = db.session.get(model, object_id)
    if obj is None:
        raise NotFoundError(f'{label} {object_id} not found.')
    return obj


# ── Events ──────────────────────────────────────────────────

@api_bp.route('/events/<int:event_id>', methods=['GET'])
@jwt_required
def api_get_event(event_id):
    """Ticketing configuration and running totals of an event."""
    event = _get_or_404(TicketedEvent, event_id, 'Ticketed event')
    return api_success(TicketedEventSchema().dump(event))


@api_bp.route('/events/<int:event_id>/settings', methods=['PATCH'])
@requires_api_access(AccessLevel.MANAGER)
def api_update_event_settings(event_id):
    """Change sale rules (nominative, name change, resale, limits, status, window)."""
    changes = load_json(EventSettingsSchema(), partial=True)
    event = ProvisioningService.update_settings(event_id, changes, user=request.api_user)
    return api_success(TicketedEventSchema().dump(event))


@api_bp.route('/events/<int:event_id>/stats', methods=['GET'])
@requires_api_access(AccessLevel.MANAGER)
def api_event_stats(event_id):
    """Operational statistics: availability, tickets by status, revenue, refunds."""
    return api_success(StatsService.event_stats(event_id))


@api_bp.route('/events/<int:event_id>/sectors', methods=['GET'])
@jwt_required
def api_list_sectors(event_id):
    event = _get_or_404(TicketedEvent, event_id, 'Ticketed event')
    return api_success(SectorSchema().dump(event.sectors, many=True))


# ── Sectors & seats ─────────────────────────────────────────

@api_bp.route('/sectors/<int:sector_id>/seats', methods=['GET'])
@jwt_required
def api_list_seats(sector_id):
    """Seats of a numbered sector.

    Query params:
        status (str): available, reserved, sold or blocked
    """
    _get_or_404(Sector, sector_id, 'Sector')
    query = Seat.query.filter(Seat.sector_id == sector_id)

    status = request.args.get('status')
    if status:
        try:
            query = query.filter(Seat.status == SeatStatus(status))
        except ValueError:
            return api_error('invalid_filter', f'Invalid status: {status}', 422)

    seats = query.order_by(Seat.row, Seat.id).all()
    return api_success(SeatSchema().dump(seats, many=True))


@api_bp.route('/sectors/<int:sector_id>/suspend', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_suspend_sector(sector_id):
    sector = InventoryService.set_sales_suspended(sector_id, True, user=request.api_user)
    return api_success(SectorSchema().dump(sector))


@api_bp.route('/sectors/<int:sector_id>/resume', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_resume_sector(sector_id):
    sector = InventoryService.set_sales_suspended(sector_id, False, user=request.api_user)
    return api_success(SectorSchema().dump(sector))


@api_bp.route('/seats/<int:seat_id>/block', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_block_seat(seat_id):
    """Withhold an available seat from sale."""
    seat = InventoryService.block_seat(seat_id, user=request.api_user)
    return api_success(SeatSchema().dump(seat))


@api_bp.route('/seats/<int:seat_id>/unblock', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_unblock_seat(seat_id):
    seat = InventoryService.unblock_seat(seat_id, user=request.api_user)
    return api_success(SeatSchema().dump(seat))


# ── Seat holds ──────────────────────────────────────────────

@api_bp.route('/sectors/<int:sector_id>/holds', methods=['POST'])
@requires_api_access(AccessLevel.CASHIER)
def api_hold_seats(sector_id):
    """Hold seats while the buyer pays.

    Request body:
        {"seat_ids": [10, 11]}
    """
    data = load_json(HoldSeatsSchema())
    hold = SeatHoldService.hold_seats(
        sector_id, data['seat_ids'], hold_token=data['hold_token'], user=request.api_user,
    )
    return api_success(hold.to_dict(), 201)


@api_bp.route('/holds/<hold_token>', methods=['GET'])
@requires_api_access(AccessLevel.CASHIER)
def api_get_hold(hold_token):
    return api_success(SeatHoldService.get_hold(hold_token).to_dict())


@api_bp.route('/holds/<hold_token>/extend', methods=['POST'])
@requires_api_access(AccessLevel.CASHIER)
def api_extend_hold(hold_token):
    hold = SeatHoldService.extend_hold(hold_token, user=request.api_user)
    return api_success(hold.to_dict())


@api_bp.route('/holds/<hold_token>', methods=['DELETE'])
@requires_api_access(AccessLevel.CASHIER)
def api_release_hold(hold_token):
    released = SeatHoldService.release_hold(hold_token, user=request.api_user)
    return api_success({'released': released})


@api_bp.route('/holds/cleanup', methods=['POST'])
@requires_api_access(AccessLevel.ADMIN)
def api_cleanup_holds():
    """Put seats whose hold expired back on sale."""
    return api_success({'released': SeatHoldService.cleanup_expired_holds()})


@api_bp.route('/seats/<int:seat_id>/force-release', methods=['POST'])
@requires_api_access(AccessLevel.ADMIN)
def api_force_release_seat(seat_id):
    seat = SeatHoldService.force_release(seat_id, user=request.api_user)
    return api_success(SeatSchema().dump(seat))


# ── Tickets ─────────────────────────────────────────────────

@api_bp.route('/events/<int:event_id>/tickets', methods=['POST'])
@requires_api_access(AccessLevel.CASHIER)
def api_issue_tickets(event_id):
    """Issue tickets at the box office.

    Request body:
        {"sector_id": 1, "ticket_type_code": "INT", "quantity": 2,
         "seat_ids": [10, 11], "participant_first_name": "...",
         "participant_last_name": "...", "payment_method": "cash"}
    """
    data = load_json(IssueTicketsSchema())
    tickets = TicketService.issue(
        event_id,
        data['sector_id'],
        data['ticket_type_code'],
        data['quantity'],
        seat_id=data['seat_id'],
        seat_ids=data['seat_ids'],
        participant_first_name=data['participant_first_name'],
        participant_last_name=data['participant_last_name'],
        payment_method=data['payment_method'],
        payment_reference=data['payment_reference'],
        customer_email=data['customer_email'],
        hold_token=data['hold_token'],
        user=request.api_user,
    )
    return api_success(TicketSchema().dump(tickets, many=True), 201)


@api_bp.route('/events/<int:event_id>/checkout', methods=['POST'])
@requires_api_access(AccessLevel.CASHIER)
def api_checkout(event_id):
    """Charge through the payment gateway, then issue."""
    data = load_json(CheckoutSchema())
    tickets = CheckoutService.checkout(
        event_id,
        data['sector_id'],
        data['ticket_type_code'],
        data['quantity'],
        seat_ids=data['seat_ids'],
        participant_first_name=data['participant_first_name'],
        participant_last_name=data['participant_last_name'],
        customer_email=data['customer_email'],
        payment_method_id=data['payment_method_id'],
        hold_token=data['hold_token'],
        user=request.api_user,
    )
    return api_success(TicketSchema().dump(tickets, many=True), 201)


@api_bp.route('/events/<int:event_id>/tickets', methods=['GET'])
@requires_api_access(AccessLevel.CASHIER)
def api_list_tickets(event_id):
    """Tickets of an event, by progressive number.

    Query params:
        status (str): valid, used or cancelled
        page, per_page: Pagination
    """
    _get_or_404(TicketedEvent, event_id, 'Ticketed event')
    query = Ticket.query.filter(Ticket.ticketed_event_id == event_id)

    status = request.args.get('status')
    if status:
        try:
            query = query.filter(Ticket.status == TicketStatus(status))
        except ValueError:
            return api_error('invalid_filter', f'Invalid status: {status}', 422)

    query = query.order_by(Ticket.progressive_number)
    return jsonify(paginate_query(query, TicketSchema())), 200


@api_bp.route('/tickets/<int:ticket_id>', methods=['GET'])
@jwt_required
def api_get_ticket(ticket_id):
    return api_success(TicketSchema().dump(TicketService.get_ticket(ticket_id)))


@api_bp.route('/tickets/<int:ticket_id>/verify-seal', methods=['GET'])
@requires_api_access(AccessLevel.MANAGER)
def api_verify_seal(ticket_id):
    """Recompute the fiscal seal from the stored fields."""
    ticket = TicketService.get_ticket(ticket_id)
    return api_success({
        'ticket_id': ticket.id,
        'fiscal_seal_code': ticket.fiscal_seal_code,
        'valid': NumberingService.verify_seal(ticket),
    })


@api_bp.route('/tickets/<int:ticket_id>/checkin', methods=['POST'])
@requires_api_access(AccessLevel.SCANNER)
def api_checkin_ticket(ticket_id):
    """Mark a ticket as used at the entrance. Only valid tickets can be checked in."""
    ticket = TicketService.mark_used(ticket_id, user=request.api_user)
    return api_success(TicketSchema().dump(ticket))


@api_bp.route('/tickets/<int:ticket_id>/cancel', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_cancel_ticket(ticket_id):
    """Cancel a ticket with a causale, optionally refunding it.

    Request body:
        {"reason_code": "3.1", "refund": true}

    The cancellation stands even when the refund fails; the failure is
    returned in "refund_error" and the refund can be retried.
    """
    data = load_json(CancelTicketSchema())
    result = TicketService.cancel(
        ticket_id, data['reason_code'], refund=data['refund'], user=request.api_user
    )
    return api_success({
        'ticket': TicketSchema().dump(result.ticket),
        'refund': result.refund.to_dict() if result.refund else None,
        'refund_error': result.refund_error.to_dict() if result.refund_error else None,
    })


@api_bp.route('/tickets/<int:ticket_id>/refund', methods=['POST'])
@requires_api_access(AccessLevel.MANAGER)
def api_refund_ticket(ticket_id):
    """Refund (or retry refunding) a cancelled ticket."""
    result = RefundCoordinator.request_refund(ticket_id, user=request.api_user)
    return api_success(result.to_dict())


@api_bp.route('/tickets/<int:ticket_id>/participant', methods=['PATCH'])
@requires_api_access(AccessLevel.CASHIER)
def api_change_participant(ticket_id):
    """Change the holder name (events allowing name changes only)."""
    data = load_json(ParticipantSchema())
    ticket = TicketService.change_participant(
        ticket_id,
        data['participant_first_name'],
        data['participant_last_name'],
        user=request.api_user,
    )
    return api_success(TicketSchema().dump(ticket))


@api_bp.route('/cancellation-reasons', methods=['GET'])
@jwt_required
def api_list_cancellation_reasons():
    reasons = CancellationReason.query.filter_by(is_active=True).order_by(CancellationReason.code).all()
    return api_success(CancellationReasonSchema().dump(reasons, many=True))


# ── Refunds ─────────────────────────────────────────────────

@api_bp.route('/refunds/retry', methods=['POST'])
@requires_api_access(AccessLevel.ADMIN)
def api_retry_refunds():
    """Retry every pending refund."""
    succeeded, failed = RefundCoordinator.retry_pending_refunds(user=request.api_user)
    return api_success({
        'succeeded': [r.to_dict() for r in succeeded],
        'failed': [dict(e.to_dict(), ticket_id=e.ticket_id) for e in failed],
    })


# ── Fiscal device ───────────────────────────────────────────

@api_bp.route('/fiscal-device/heartbeat', methods=['POST'])
@requires_api_access(AccessLevel.CASHIER)
def api_fiscal_device_heartbeat():
    """Heartbeat from the card reader bridge."""
    data = load_json(HeartbeatSchema())
    device = FiscalDeviceService.record_heartbeat(
        data['device_code'],
        data['ready'],
        card_serial=data['card_serial'],
        message=data['message'],
    )
    return api_success(FiscalDeviceSchema().dump(device))


@api_bp.route('/fiscal-device/status', methods=['GET'])
@jwt_required
def api_fiscal_device_status():
    return api_success(FiscalDeviceService.status())

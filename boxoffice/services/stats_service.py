"""
Operational statistics for the box office dashboard.
"""
from decimal import Decimal

from sqlalchemy import func

from boxoffice.errors import NotFoundError
from boxoffice.extensions import db
from boxoffice.models.sector import Seat, SeatStatus
from boxoffice.models.ticket import Ticket, TicketStatus
from boxoffice.models.ticketed_event import TicketedEvent


class StatsService:
    """Read-only aggregates over an event's inventory and tickets."""

    @staticmethod
    def event_stats(ticketed_event_id):
        """
        Inventory and sales figures for one event.

        Returns:
            Dict with seat counts, ticket counts by status, revenue,
            refunds and a per-sector breakdown.
        """
        event = db.session.get(TicketedEvent, ticketed_event_id)
        if event is None:
            raise NotFoundError(f'Ticketed event {ticketed_event_id} not found.')

        tickets_by_status = {status.value: 0 for status in TicketStatus}
        rows = db.session.query(Ticket.status, func.count(Ticket.id)).filter(
            Ticket.ticketed_event_id == event.id
        ).group_by(Ticket.status).all()
        for status, count in rows:
            tickets_by_status[status.value] = count

        refunded_total = db.session.query(func.coalesce(func.sum(Ticket.refund_amount), 0)).filter(
            Ticket.ticketed_event_id == event.id,
            Ticket.refunded_at.isnot(None),
        ).scalar()
        pending_refunds = Ticket.query.filter(
            Ticket.ticketed_event_id == event.id,
            Ticket.status == TicketStatus.CANCELLED,
            Ticket.refund_requested == True,
            Ticket.refunded_at.is_(None),
        ).count()

        sector_ids = [s.id for s in event.sectors]
        seats_by_status = {status.value: 0 for status in SeatStatus}
        if sector_ids:
            seat_rows = db.session.query(Seat.status, func.count(Seat.id)).filter(
                Seat.sector_id.in_(sector_ids)
            ).group_by(Seat.status).all()
            for status, count in seat_rows:
                seats_by_status[status.value] = count

        sectors = []
        for sector in event.sectors:
            sold = Ticket.query.filter(
                Ticket.sector_id == sector.id,
                Ticket.status.in_([TicketStatus.VALID, TicketStatus.USED]),
            ).count()
            sectors.append({
                'id': sector.id,
                'sector_code': sector.sector_code,
                'name': sector.name,
                'capacity': sector.capacity,
                'available_seats': sector.available_seats,
                'sold': sold,
                'sales_suspended': sector.sales_suspended,
            })

        return {
            'ticketed_event_id': event.id,
            'total_capacity': event.total_capacity,
            'tickets_sold': event.tickets_sold,
            'revenue': float(event.revenue or 0),
            'available': sum(s.available_seats for s in event.sectors),
            'tickets_by_status': tickets_by_status,
            'seats_by_status': seats_by_status,
            'refunded_total': float(Decimal(str(refunded_total))),
            'pending_refunds': pending_refunds,
            'last_progressive_number': event.counter.last_number if event.counter else 0,
            'sectors': sectors,
        }

"""
Fiscal numbering and seal service.

Progressive numbers come from one counter row per event, incremented by a
single UPDATE inside the issuing transaction. If the issuance rolls back,
the increment rolls back with it, so the sequence has no gaps.
"""
import hashlib
import hmac
import logging
import re

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from boxoffice.errors import NumberingFailure
from boxoffice.extensions import db
from boxoffice.models.ticketed_event import EventCounter
from boxoffice.models.ticket import TicketTypeCode
from boxoffice.utils.fiscal import to_centesimi, normalize_sector_code

logger = logging.getLogger(__name__)

SEAL_SEPARATOR = '|'
_DATE_RE = re.compile(r'^\d{8}$')
_TIME_RE = re.compile(r'^\d{4}$')


def seal_payload(sector_code, ticket_type_code, progressive_number,
                 emission_date_str, emission_time_str, gross_amount):
    """Canonical string the seal is computed over."""
    code = TicketTypeCode.parse(ticket_type_code)
    if code is None:
        raise NumberingFailure(f'Unknown ticket type for seal: {ticket_type_code}', code='invalid_seal_input')
    if not isinstance(progressive_number, int) or isinstance(progressive_number, bool) or progressive_number < 1:
        raise NumberingFailure(f'Invalid progressive number: {progressive_number!r}', code='invalid_seal_input')
    if not _DATE_RE.match(emission_date_str or '') or not _TIME_RE.match(emission_time_str or ''):
        raise NumberingFailure('Emission date must be YYYYMMDD and time HHMM.', code='invalid_seal_input')
    sector = normalize_sector_code(sector_code)
    if not sector:
        raise NumberingFailure('Sector code is required for the seal.', code='invalid_seal_input')

    return SEAL_SEPARATOR.join([
        sector,
        code.value,
        str(progressive_number),
        emission_date_str,
        emission_time_str,
        str(to_centesimi(gross_amount)),
    ])


def compute_seal(sector_code, ticket_type_code, progressive_number,
                 emission_date_str, emission_time_str, gross_amount, key=None):
    """
    Fiscal seal of a ticket: upper-case hex SHA-256 of the fiscal fields,
    or HMAC-SHA256 when a key is given. Depends on nothing else.
    """
    payload = seal_payload(
        sector_code, ticket_type_code, progressive_number,
        emission_date_str, emission_time_str, gross_amount,
    ).encode('utf-8')
    if key:
        digest = hmac.new(key.encode('utf-8'), payload, hashlib.sha256).hexdigest()
    else:
        digest = hashlib.sha256(payload).hexdigest()
    return digest.upper()


class NumberingService:
    """Progressive numbers and seals for fiscal tickets."""

    @staticmethod
    def ensure_counter(ticketed_event_id):
        """Create the event's counter row if missing (caller commits)."""
        counter = db.session.get(EventCounter, ticketed_event_id)
        if counter is None:
            counter = EventCounter(ticketed_event_id=ticketed_event_id, last_number=0)
            db.session.add(counter)
        return counter

    @staticmethod
    def next_progressive_number(ticketed_event_id) -> int:
        """
        Allocate the next progressive number of an event.

        Runs inside the caller's transaction. The counter row stays
        write-locked until that transaction ends, which serializes
        concurrent issuance for the same event.

        Raises:
            NumberingFailure: no counter for the event, or the database failed
        """
        try:
            result = db.session.execute(
                update(EventCounter)
                .where(EventCounter.ticketed_event_id == ticketed_event_id)
                .values(last_number=EventCounter.last_number + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NumberingFailure(
                    f'No fiscal counter configured for event {ticketed_event_id}.',
                    code='counter_missing',
                )
            return db.session.execute(
                select(EventCounter.last_number)
                .where(EventCounter.ticketed_event_id == ticketed_event_id)
            ).scalar_one()
        except SQLAlchemyError as e:
            logger.exception('Progressive number allocation failed for event %s', ticketed_event_id)
            raise NumberingFailure(
                f'Fiscal counter unavailable for event {ticketed_event_id}.',
                code='counter_unavailable',
            ) from e

    @staticmethod
    def compute_seal(sector_code, ticket_type_code, progressive_number,
                     emission_date_str, emission_time_str, gross_amount):
        """compute_seal() keyed with the configured FISCAL_SEAL_KEY."""
        return compute_seal(
            sector_code, ticket_type_code, progressive_number,
            emission_date_str, emission_time_str, gross_amount,
            key=current_app.config.get('FISCAL_SEAL_KEY'),
        )

    @staticmethod
    def verify_seal(ticket) -> bool:
        """Recompute a ticket's seal from its stored fiscal fields."""
        expected = NumberingService.compute_seal(
            ticket.sector_code,
            ticket.ticket_type_code,
            ticket.progressive_number,
            ticket.emission_date_str,
            ticket.emission_time_str,
            ticket.gross_amount,
        )
        return hmac.compare_digest(expected, ticket.fiscal_seal_code or '')

"""
Marshmallow schemas for API serialization and request parsing.
"""
from marshmallow import Schema, fields, validate


# ── Shared helpers ──────────────────────────────────────────

class BaseSchema(Schema):
    """Base schema with common config."""
    class Meta:
        ordered = True


def _enum_value(attr):
    def getter(obj):
        value = getattr(obj, attr)
        return value.value if value is not None else None
    return getter


# ── User ────────────────────────────────────────────────────

class UserSchema(BaseSchema):
    """Operator representation (for /me endpoint)."""
    id = fields.Int(dump_only=True)
    email = fields.Email()
    first_name = fields.Str()
    last_name = fields.Str()
    full_name = fields.Str(dump_only=True)
    access_level = fields.Function(_enum_value('access_level'))
    access_level_label = fields.Str(dump_only=True)
    is_active = fields.Bool()


# ── Events & inventory ──────────────────────────────────────

class TicketedEventSchema(BaseSchema):
    id = fields.Int(dump_only=True)
    event_ref = fields.Str()
    name = fields.Str()
    starts_at = fields.DateTime(format='iso')
    total_capacity = fields.Int()
    tickets_sold = fields.Int()
    revenue = fields.Decimal(as_string=True)
    ticketing_status = fields.Function(_enum_value('ticketing_status'))
    sale_start_date = fields.DateTime(format='iso')
    sale_end_date = fields.DateTime(format='iso')
    max_tickets_per_user = fields.Int()
    requires_nominative = fields.Bool()
    allows_change_name = fields.Bool()
    allows_resale = fields.Bool()


class SectorSchema(BaseSchema):
    id = fields.Int(dump_only=True)
    ticketed_event_id = fields.Int()
    name = fields.Str()
    sector_code = fields.Str()
    capacity = fields.Int()
    available_seats = fields.Int()
    is_numbered = fields.Bool()
    sales_suspended = fields.Bool()
    price_intero = fields.Decimal(as_string=True)
    price_ridotto = fields.Decimal(as_string=True, allow_none=True)
    prevendita = fields.Decimal(as_string=True)


class SeatSchema(BaseSchema):
    id = fields.Int(dump_only=True)
    sector_id = fields.Int()
    row = fields.Str()
    seat_number = fields.Str()
    label = fields.Str(dump_only=True)
    status = fields.Function(_enum_value('status'))
    is_accessible = fields.Bool()
    hold_expires_at = fields.DateTime(format='iso')


# ── Tickets ─────────────────────────────────────────────────

class TicketSchema(BaseSchema):
    id = fields.Int(dump_only=True)
    ticketed_event_id = fields.Int()
    sector_id = fields.Int()
    seat_id = fields.Int(allow_none=True)
    transaction_id = fields.Int(allow_none=True)
    ticket_type_code = fields.Function(_enum_value('ticket_type_code'))
    sector_code = fields.Str()
    progressive_number = fields.Int()
    emission_date_str = fields.Str()
    emission_time_str = fields.Str()
    fiscal_seal_code = fields.Str()
    gross_amount = fields.Decimal(as_string=True)
    participant_first_name = fields.Str(allow_none=True)
    participant_last_name = fields.Str(allow_none=True)
    status = fields.Function(_enum_value('status'))
    used_at = fields.DateTime(format='iso')
    cancelled_at = fields.DateTime(format='iso')
    reason_code = fields.Str(allow_none=True)
    refund_requested = fields.Bool()
    refunded_at = fields.DateTime(format='iso')
    refund_amount = fields.Decimal(as_string=True, allow_none=True)
    last_refund_error = fields.Str(allow_none=True)


class CancellationReasonSchema(BaseSchema):
    code = fields.Str()
    name = fields.Str()


class FiscalDeviceSchema(BaseSchema):
    device_code = fields.Str()
    ready = fields.Bool()
    card_serial = fields.Str(allow_none=True)
    last_message = fields.Str(allow_none=True)
    last_heartbeat_at = fields.DateTime(format='iso')


# ── Request bodies ──────────────────────────────────────────

class IssueTicketsSchema(Schema):
    """POST /events/<id>/tickets"""
    sector_id = fields.Int(required=True)
    ticket_type_code = fields.Str(required=True)
    quantity = fields.Int(load_default=1, validate=validate.Range(min=1))
    seat_id = fields.Int(load_default=None, allow_none=True)
    seat_ids = fields.List(fields.Int(), load_default=None, allow_none=True)
    participant_first_name = fields.Str(load_default=None, allow_none=True)
    participant_last_name = fields.Str(load_default=None, allow_none=True)
    payment_method = fields.Str(
        load_default=None, allow_none=True,
        validate=validate.OneOf(['card', 'cash', 'free']),
    )
    payment_reference = fields.Str(load_default=None, allow_none=True)
    customer_email = fields.Email(load_default=None, allow_none=True)
    hold_token = fields.Str(load_default=None, allow_none=True)


class CheckoutSchema(Schema):
    """POST /events/<id>/checkout"""
    sector_id = fields.Int(required=True)
    ticket_type_code = fields.Str(required=True)
    quantity = fields.Int(load_default=1, validate=validate.Range(min=1))
    seat_ids = fields.List(fields.Int(), load_default=None, allow_none=True)
    participant_first_name = fields.Str(load_default=None, allow_none=True)
    participant_last_name = fields.Str(load_default=None, allow_none=True)
    customer_email = fields.Email(load_default=None, allow_none=True)
    payment_method_id = fields.Str(load_default=None, allow_none=True)
    hold_token = fields.Str(load_default=None, allow_none=True)


class HoldSeatsSchema(Schema):
    """POST /sectors/<id>/holds"""
    seat_ids = fields.List(fields.Int(), required=True, validate=validate.Length(min=1))
    hold_token = fields.Str(load_default=None, allow_none=True, validate=validate.Length(min=8, max=64))


class CancelTicketSchema(Schema):
    """POST /tickets/<id>/cancel"""
    reason_code = fields.Str(required=True)
    refund = fields.Bool(load_default=False)


class ParticipantSchema(Schema):
    """PATCH /tickets/<id>/participant"""
    participant_first_name = fields.Str(required=True)
    participant_last_name = fields.Str(required=True)


class EventSettingsSchema(Schema):
    """PATCH /events/<id>/settings (all fields optional)"""
    requires_nominative = fields.Bool()
    allows_change_name = fields.Bool()
    allows_resale = fields.Bool()
    max_tickets_per_user = fields.Int(validate=validate.Range(min=1))
    ticketing_status = fields.Str(validate=validate.OneOf(['active', 'suspended', 'closed']))
    sale_start_date = fields.NaiveDateTime(allow_none=True)
    sale_end_date = fields.NaiveDateTime(allow_none=True)


class HeartbeatSchema(Schema):
    """POST /fiscal-device/heartbeat"""
    device_code = fields.Str(required=True, validate=validate.Length(min=1, max=50))
    ready = fields.Bool(required=True)
    card_serial = fields.Str(load_default=None, allow_none=True)
    message = fields.Str(load_default=None, allow_none=True)

"""
Tests for the REST API v1: JWT auth, issuance, check-in, cancellation,
refunds, inventory administration and error mapping.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt as pyjwt
import pytest

from boxoffice.extensions import db
from boxoffice.models.sector import Seat, SeatStatus
from boxoffice.models.ticket import Ticket, TicketStatus
from boxoffice.models.user import User
from boxoffice.services.ticket_service import TicketService
from tests.conftest import get_auth_token, auth_header, seat_by_label, TEST_PASSWORD


@pytest.fixture
def cashier_headers(client, cashier_user):
    return auth_header(get_auth_token(client, cashier_user.email))


@pytest.fixture
def manager_headers(client, manager_user):
    return auth_header(get_auth_token(client, manager_user.email))


@pytest.fixture
def scanner_headers(client, scanner_user):
    return auth_header(get_auth_token(client, scanner_user.email))


@pytest.fixture
def admin_headers(client, admin_user):
    return auth_header(get_auth_token(client, admin_user.email))


# ── Auth Tests ──────────────────────────────────────────────

class TestAuth:
    """Test JWT authentication endpoints."""

    def test_login_success(self, client, cashier_user):
        resp = client.post('/api/v1/auth/login', json={
            'email': 'cashier@example.com',
            'password': TEST_PASSWORD,
        })
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert 'access_token' in data
        assert 'refresh_token' in data
        assert data['token_type'] == 'Bearer'
        assert data['expires_in'] == 3600
        assert data['user']['access_level'] == 'cashier'

    def test_login_invalid_password(self, client, cashier_user):
        resp = client.post('/api/v1/auth/login', json={
            'email': 'cashier@example.com',
            'password': 'WrongPassword!',
        })
        assert resp.status_code == 401
        assert resp.get_json()['error']['code'] == 'invalid_credentials'

    def test_login_missing_fields(self, client):
        resp = client.post('/api/v1/auth/login', json={'email': 'cashier@example.com'})
        assert resp.status_code == 422
        assert resp.get_json()['error']['code'] == 'validation_error'

    def test_login_invalid_json(self, client):
        resp = client.post('/api/v1/auth/login', data='not json', content_type='text/plain')
        assert resp.status_code == 400

    def test_lockout_after_failed_attempts(self, app, client, cashier_user):
        app.config['MAX_LOGIN_ATTEMPTS'] = 2
        for _ in range(2):
            client.post('/api/v1/auth/login', json={'email': 'cashier@example.com', 'password': 'nope'})

        resp = client.post('/api/v1/auth/login', json={
            'email': 'cashier@example.com',
            'password': TEST_PASSWORD,
        })
        assert resp.status_code == 429
        assert resp.get_json()['error']['code'] == 'account_locked'

    def test_inactive_user_cannot_login(self, client, cashier_user):
        cashier_user.is_active = False
        db.session.commit()

        resp = client.post('/api/v1/auth/login', json={
            'email': 'cashier@example.com',
            'password': TEST_PASSWORD,
        })
        assert resp.status_code == 403

    def test_refresh_token(self, client, cashier_user):
        login = client.post('/api/v1/auth/login', json={
            'email': 'cashier@example.com',
            'password': TEST_PASSWORD,
        }).get_json()['data']

        resp = client.post('/api/v1/auth/refresh', json={'refresh_token': login['refresh_token']})
        assert resp.status_code == 200
        assert 'access_token' in resp.get_json()['data']

    def test_refresh_with_access_token_fails(self, client, cashier_user):
        token = get_auth_token(client, 'cashier@example.com')
        resp = client.post('/api/v1/auth/refresh', json={'refresh_token': token})
        assert resp.status_code == 401
        assert resp.get_json()['error']['code'] == 'wrong_token_type'

    def test_me_endpoint(self, client, cashier_headers):
        resp = client.get('/api/v1/auth/me', headers=cashier_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['email'] == 'cashier@example.com'

    def test_me_without_token(self, client):
        resp = client.get('/api/v1/auth/me')
        assert resp.status_code == 401
        assert resp.get_json()['error']['code'] == 'missing_token'

    def test_expired_token(self, app, client, cashier_user):
        now = datetime.now(timezone.utc)
        token = pyjwt.encode(
            {'sub': str(cashier_user.id), 'type': 'access', 'iat': now - timedelta(hours=2),
             'exp': now - timedelta(hours=1)},
            app.config.get('JWT_SECRET_KEY') or app.config['SECRET_KEY'], algorithm='HS256',
        )
        resp = client.get('/api/v1/auth/me', headers=auth_header(token))
        assert resp.status_code == 401
        assert resp.get_json()['error']['code'] == 'invalid_token'


# ── Issuance Tests ──────────────────────────────────────────

class TestIssueEndpoint:

    def test_issue_tickets(self, client, cashier_headers, fiscal_device, event, ga_sector):
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'INT',
            'quantity': 2,
            'payment_method': 'cash',
        })
        assert resp.status_code == 201
        data = resp.get_json()['data']
        assert [t['progressive_number'] for t in data] == [1, 2]
        assert data[0]['status'] == 'valid'
        assert data[0]['gross_amount'] == '20.00'
        assert data[0]['sector_code'] == 'PT'
        assert len(data[0]['fiscal_seal_code']) == 64

    def test_issue_numbered_seat(self, client, cashier_headers, fiscal_device, event, numbered_sector):
        seat = seat_by_label(numbered_sector, 'A1')
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'sector_id': numbered_sector.id,
            'ticket_type_code': 'INT',
            'seat_id': seat.id,
        })
        assert resp.status_code == 201
        assert resp.get_json()['data'][0]['seat_id'] == seat.id

    def test_seat_taken_is_409(self, client, cashier_headers, fiscal_device, event, numbered_sector):
        seat = seat_by_label(numbered_sector, 'A1')
        body = {'sector_id': numbered_sector.id, 'ticket_type_code': 'INT', 'seat_id': seat.id}
        client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json=body)

        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json=body)
        assert resp.status_code == 409
        assert resp.get_json()['error']['code'] == 'seat_unavailable'

    def test_validation_error_is_422(self, client, cashier_headers, fiscal_device, event, numbered_sector):
        seat = seat_by_label(numbered_sector, 'A1')
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'sector_id': numbered_sector.id,
            'ticket_type_code': 'RID',
            'seat_id': seat.id,
        })
        assert resp.status_code == 422
        assert resp.get_json()['error']['code'] == 'reduced_price_unavailable'

    def test_schema_errors_listed(self, client, cashier_headers, event):
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'quantity': 0,
        })
        assert resp.status_code == 422
        error = resp.get_json()['error']
        assert error['code'] == 'validation_error'
        fields = {d['field'] for d in error['details']}
        assert {'sector_id', 'ticket_type_code', 'quantity'} <= fields

    def test_device_not_ready_is_503(self, client, cashier_headers, event, ga_sector):
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'INT',
        })
        assert resp.status_code == 503
        assert resp.get_json()['error']['code'] == 'fiscal_device_unavailable'

    def test_scanner_cannot_issue(self, client, scanner_headers, fiscal_device, event, ga_sector):
        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=scanner_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'INT',
        })
        assert resp.status_code == 403

    def test_checkout(self, client, cashier_headers, fiscal_device, event, ga_sector, gateway):
        resp = client.post(f'/api/v1/events/{event.id}/checkout', headers=cashier_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'RID',
            'quantity': 2,
            'customer_email': 'buyer@example.com',
        })
        assert resp.status_code == 201
        assert gateway.charge_calls == [Decimal('30.00')]

    def test_checkout_declined_is_402(self, client, cashier_headers, fiscal_device, event, ga_sector, gateway):
        gateway.decline_charges = True
        resp = client.post(f'/api/v1/events/{event.id}/checkout', headers=cashier_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'INT',
        })
        assert resp.status_code == 402
        assert resp.get_json()['error']['code'] == 'payment_failed'


class TestTicketListing:

    def test_list_and_filter(self, client, cashier_headers, fiscal_device, reasons, event, ga_sector):
        tickets = TicketService.issue(event.id, ga_sector.id, 'INT', quantity=3)
        TicketService.cancel(tickets[1].id, '3.1')

        resp = client.get(f'/api/v1/events/{event.id}/tickets?per_page=2', headers=cashier_headers)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['meta']['total'] == 3
        assert len(body['data']) == 2
        assert 'next' in body['links']

        resp = client.get(f'/api/v1/events/{event.id}/tickets?status=cancelled', headers=cashier_headers)
        assert [t['progressive_number'] for t in resp.get_json()['data']] == [2]

    def test_active_is_valid(self, client, cashier_headers, fiscal_device, event, ga_sector):
        """Legacy "active" filter matches valid tickets."""
        TicketService.issue(event.id, ga_sector.id, 'INT')
        resp = client.get(f'/api/v1/events/{event.id}/tickets?status=active', headers=cashier_headers)
        assert resp.get_json()['meta']['total'] == 1

    def test_invalid_filter(self, client, cashier_headers, event):
        resp = client.get(f'/api/v1/events/{event.id}/tickets?status=lost', headers=cashier_headers)
        assert resp.status_code == 422

    def test_get_ticket_and_verify_seal(self, client, manager_headers, fiscal_device, event, ga_sector):
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT')[0]

        resp = client.get(f'/api/v1/tickets/{ticket.id}', headers=manager_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['progressive_number'] == 1

        resp = client.get(f'/api/v1/tickets/{ticket.id}/verify-seal', headers=manager_headers)
        assert resp.get_json()['data']['valid'] is True

    def test_unknown_ticket_is_404(self, client, manager_headers):
        resp = client.get('/api/v1/tickets/424242', headers=manager_headers)
        assert resp.status_code == 404
        assert resp.get_json()['error']['code'] == 'not_found'


# ── Check-in / Cancel / Refund Tests ────────────────────────

class TestTicketActions:

    def test_checkin(self, client, scanner_headers, fiscal_device, event, ga_sector):
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT')[0]

        resp = client.post(f'/api/v1/tickets/{ticket.id}/checkin', headers=scanner_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['status'] == 'used'

        resp = client.post(f'/api/v1/tickets/{ticket.id}/checkin', headers=scanner_headers)
        assert resp.status_code == 409
        assert resp.get_json()['error']['code'] == 'invalid_state'

    def test_cancel(self, client, manager_headers, fiscal_device, reasons, event, numbered_sector):
        seat = seat_by_label(numbered_sector, 'A1')
        ticket = TicketService.issue(event.id, numbered_sector.id, 'INT', seat_id=seat.id)[0]

        resp = client.post(f'/api/v1/tickets/{ticket.id}/cancel', headers=manager_headers, json={
            'reason_code': '3.1',
        })
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert data['ticket']['status'] == 'cancelled'
        assert data['refund'] is None
        assert data['refund_error'] is None

        db.session.expire_all()
        assert db.session.get(Seat, seat.id).status == SeatStatus.AVAILABLE

    def test_cancel_refund_without_transaction(self, client, manager_headers, fiscal_device, reasons, event, ga_sector):
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT')[0]

        resp = client.post(f'/api/v1/tickets/{ticket.id}/cancel', headers=manager_headers, json={
            'reason_code': '5.2',
            'refund': True,
        })
        assert resp.status_code == 422
        assert resp.get_json()['error']['code'] == 'refund_without_transaction'
        db.session.expire_all()
        assert db.session.get(Ticket, ticket.id).status == TicketStatus.VALID

    def test_cancel_with_failed_refund(self, client, manager_headers, fiscal_device, reasons, event, ga_sector, gateway):
        """Refund failure is reported, the cancellation stands."""
        ticket = TicketService.issue(
            event.id, ga_sector.id, 'INT', payment_method='card', payment_reference='pi_1'
        )[0]
        gateway.failing_refunds = 5

        resp = client.post(f'/api/v1/tickets/{ticket.id}/cancel', headers=manager_headers, json={
            'reason_code': '3.1',
            'refund': True,
        })
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert data['ticket']['status'] == 'cancelled'
        assert data['refund'] is None
        assert data['refund_error']['code'] == 'refund_failed'

        # Retry once the gateway is back
        gateway.failing_refunds = 0
        resp = client.post(f'/api/v1/tickets/{ticket.id}/refund', headers=manager_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['amount'] == 20.0

    def test_refund_gateway_down_is_502(self, client, manager_headers, fiscal_device, reasons, event, ga_sector, gateway):
        ticket = TicketService.issue(
            event.id, ga_sector.id, 'INT', payment_method='card', payment_reference='pi_1'
        )[0]
        TicketService.cancel(ticket.id, '3.1')
        gateway.failing_refunds = 5

        resp = client.post(f'/api/v1/tickets/{ticket.id}/refund', headers=manager_headers)
        assert resp.status_code == 502

    def test_retry_refunds_admin_only(self, client, manager_headers, admin_headers):
        assert client.post('/api/v1/refunds/retry', headers=manager_headers).status_code == 403

        resp = client.post('/api/v1/refunds/retry', headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data'] == {'succeeded': [], 'failed': []}

    def test_change_participant(self, client, cashier_headers, fiscal_device, event, ga_sector):
        event.allows_change_name = True
        db.session.commit()
        ticket = TicketService.issue(event.id, ga_sector.id, 'INT')[0]

        resp = client.patch(f'/api/v1/tickets/{ticket.id}/participant', headers=cashier_headers, json={
            'participant_first_name': 'Anna',
            'participant_last_name': 'Bianchi',
        })
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert data['participant_first_name'] == 'Anna'
        assert data['fiscal_seal_code'] == ticket.fiscal_seal_code

    def test_cancellation_reasons(self, client, cashier_headers, reasons):
        resp = client.get('/api/v1/cancellation-reasons', headers=cashier_headers)
        codes = [r['code'] for r in resp.get_json()['data']]
        assert codes == sorted(reasons)


# ── Inventory Administration Tests ──────────────────────────

class TestInventoryEndpoints:

    def test_sectors_and_seats(self, client, cashier_headers, event, ga_sector, numbered_sector):
        resp = client.get(f'/api/v1/events/{event.id}/sectors', headers=cashier_headers)
        assert sorted(s['sector_code'] for s in resp.get_json()['data']) == ['PT', 'TR']

        resp = client.get(f'/api/v1/sectors/{numbered_sector.id}/seats?status=available', headers=cashier_headers)
        assert len(resp.get_json()['data']) == 10

    def test_block_seat(self, client, manager_headers, numbered_sector):
        seat = seat_by_label(numbered_sector, 'B5')

        resp = client.post(f'/api/v1/seats/{seat.id}/block', headers=manager_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['status'] == 'blocked'

        resp = client.post(f'/api/v1/seats/{seat.id}/block', headers=manager_headers)
        assert resp.status_code == 409

        resp = client.post(f'/api/v1/seats/{seat.id}/unblock', headers=manager_headers)
        assert resp.get_json()['data']['status'] == 'available'

    def test_cashier_cannot_block(self, client, cashier_headers, numbered_sector):
        seat = seat_by_label(numbered_sector, 'B5')
        resp = client.post(f'/api/v1/seats/{seat.id}/block', headers=cashier_headers)
        assert resp.status_code == 403

    def test_suspend_sector(self, client, manager_headers, cashier_headers, fiscal_device, event, ga_sector):
        resp = client.post(f'/api/v1/sectors/{ga_sector.id}/suspend', headers=manager_headers)
        assert resp.get_json()['data']['sales_suspended'] is True

        resp = client.post(f'/api/v1/events/{event.id}/tickets', headers=cashier_headers, json={
            'sector_id': ga_sector.id,
            'ticket_type_code': 'INT',
        })
        assert resp.status_code == 409

        resp = client.post(f'/api/v1/sectors/{ga_sector.id}/resume', headers=manager_headers)
        assert resp.get_json()['data']['sales_suspended'] is False

    def test_update_settings(self, client, manager_headers, event):
        resp = client.patch(f'/api/v1/events/{event.id}/settings', headers=manager_headers, json={
            'requires_nominative': True,
            'ticketing_status': 'suspended',
            'sale_end_date': '2026-12-31T23:59:00',
        })
        assert resp.status_code == 200
        data = resp.get_json()['data']
        assert data['requires_nominative'] is True
        assert data['ticketing_status'] == 'suspended'
        assert data['sale_end_date'].startswith('2026-12-31T23:59')

    def test_update_settings_invalid(self, client, manager_headers, event):
        resp = client.patch(f'/api/v1/events/{event.id}/settings', headers=manager_headers, json={
            'max_tickets_per_user': 0,
        })
        assert resp.status_code == 422

    def test_stats(self, client, manager_headers, fiscal_device, event, ga_sector):
        TicketService.issue(event.id, ga_sector.id, 'INT', quantity=2)
        resp = client.get(f'/api/v1/events/{event.id}/stats', headers=manager_headers)
        assert resp.status_code == 200
        assert resp.get_json()['data']['tickets_sold'] == 2


# ── Fiscal Device & Error Handling Tests ────────────────────

class TestFiscalDeviceEndpoints:

    def test_heartbeat_then_status(self, client, cashier_headers):
        resp = client.get('/api/v1/fiscal-device/status', headers=cashier_headers)
        assert resp.get_json()['data']['ready'] is False

        resp = client.post('/api/v1/fiscal-device/heartbeat', headers=cashier_headers, json={
            'device_code': 'CARD-01',
            'ready': True,
            'card_serial': 'SIAE0001',
        })
        assert resp.status_code == 200
        assert resp.get_json()['data']['ready'] is True

        resp = client.get('/api/v1/fiscal-device/status', headers=cashier_headers)
        assert resp.get_json()['data']['ready'] is True


class TestErrorHandling:

    def test_404_returns_json(self, client):
        resp = client.get('/api/v1/nonexistent')
        assert resp.status_code == 404
        assert resp.get_json()['error']['code'] == 'not_found'

    def test_405_returns_json(self, client):
        resp = client.delete('/api/v1/cancellation-reasons')
        assert resp.status_code == 405

    def test_invalid_json_body(self, client, cashier_headers, event):
        resp = client.post(
            f'/api/v1/events/{event.id}/tickets', headers=cashier_headers,
            data='not json', content_type='text/plain',
        )
        assert resp.status_code == 422
        assert resp.get_json()['error']['code'] == 'invalid_json'

    def test_deactivated_user_token_rejected(self, client, cashier_user, cashier_headers):
        db.session.get(User, cashier_user.id).is_active = False
        db.session.commit()
        resp = client.get('/api/v1/auth/me', headers=cashier_headers)
        assert resp.status_code == 401

# =============================================================================
# Boxoffice - Pytest Fixtures Configuration
# =============================================================================

import time
from decimal import Decimal

import pytest

from boxoffice import create_app
from boxoffice.extensions import db
from boxoffice.models.user import User, AccessLevel
from boxoffice.models.ticket import CancellationReason, DEFAULT_CANCELLATION_REASONS
from boxoffice.services.fiscal_device_service import FiscalDeviceService
from boxoffice.services.payment_gateway import PaymentGateway, PaymentGatewayError
from boxoffice.services.provisioning_service import ProvisioningService


TEST_PASSWORD = 'TestPass123!'


# =============================================================================
# Application Fixtures
# =============================================================================

@pytest.fixture(scope='function')
def app():
    """Create and configure test application with SQLite in-memory database."""
    application = create_app('testing')

    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Test client for HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """CLI test runner."""
    return app.test_cli_runner()


# =============================================================================
# Payment Gateway Fixture
# =============================================================================

class FakeGateway(PaymentGateway):
    """In-memory gateway recording every call."""

    name = 'fake'

    def __init__(self):
        self.charge_calls = []
        self.refund_calls = []
        self.decline_charges = False
        self.failing_refunds = 0
        self.refund_failure_retryable = True
        self.refund_delay = 0

    def charge(self, amount, description=None, payment_method=None, idempotency_key=None):
        self.charge_calls.append(amount)
        if self.decline_charges:
            raise PaymentGatewayError('Card declined', retryable=False)
        return f'ch_{len(self.charge_calls)}'

    def refund(self, transaction_ref, amount, idempotency_key=None):
        self.refund_calls.append((transaction_ref, amount, idempotency_key))
        if self.refund_delay:
            time.sleep(self.refund_delay)
        if self.failing_refunds:
            self.failing_refunds -= 1
            raise PaymentGatewayError('Gateway unavailable', retryable=self.refund_failure_retryable)
        return f're_{len(self.refund_calls)}'


@pytest.fixture
def gateway(app):
    """Replace the configured payment gateway with a fake one."""
    fake = FakeGateway()
    app.extensions['payment_gateway'] = fake
    return fake


# =============================================================================
# Reference Data Fixtures
# =============================================================================

@pytest.fixture
def reasons(app):
    """Seed the cancellation reasons (causali)."""
    for code, name in DEFAULT_CANCELLATION_REASONS:
        db.session.add(CancellationReason(code=code, name=name))
    db.session.commit()
    return [code for code, _ in DEFAULT_CANCELLATION_REASONS]


@pytest.fixture
def fiscal_device(app):
    """A card reader that reported ready just now."""
    return FiscalDeviceService.record_heartbeat('CARD-01', True, card_serial='SIAE0001', message='ok')


# =============================================================================
# Inventory Fixtures
# =============================================================================

@pytest.fixture
def event(app):
    """A ticketed event on sale, with no sale window."""
    return ProvisioningService.create_ticketed_event('EVT-2026-001', 'Concerto di Prova')


@pytest.fixture
def ga_sector(event):
    """General admission sector "Pista": 100 slots at 20.00, reduced 15.00."""
    return ProvisioningService.add_sector(
        event, 'Pista', 'pt', Decimal('20.00'),
        capacity=100, price_ridotto=Decimal('15.00'),
    )


@pytest.fixture
def numbered_sector(event):
    """Numbered sector "Tribuna": rows A and B, 5 seats each, 35.00 + 3.50 prevendita."""
    sector = ProvisioningService.add_sector(
        event, 'Tribuna', 'TR', Decimal('35.00'),
        prevendita=Decimal('3.50'), is_numbered=True, sort_order=1,
    )
    ProvisioningService.add_seats(sector, ['A', 'B'], 5, accessible={'A1'})
    return sector


def seat_by_label(sector, label):
    """Helper: find a seat of a sector by its row+number label."""
    return next(seat for seat in sector.seats if seat.label == label)


# =============================================================================
# Operator Fixtures
# =============================================================================

def _create_operator(email, level):
    user = User(
        email=email,
        first_name='Test',
        last_name=level.value.capitalize(),
        access_level=level,
        is_active=True,
    )
    user.set_password(TEST_PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(app):
    return _create_operator('admin@example.com', AccessLevel.ADMIN)


@pytest.fixture
def manager_user(app):
    return _create_operator('manager@example.com', AccessLevel.MANAGER)


@pytest.fixture
def cashier_user(app):
    return _create_operator('cashier@example.com', AccessLevel.CASHIER)


@pytest.fixture
def scanner_user(app):
    return _create_operator('scanner@example.com', AccessLevel.SCANNER)


def get_auth_token(client, email, password=TEST_PASSWORD):
    """Helper: login and return access token."""
    resp = client.post('/api/v1/auth/login', json={
        'email': email,
        'password': password,
    })
    return resp.get_json()['data']['access_token']


def auth_header(token):
    """Helper: build Authorization header."""
    return {'Authorization': f'Bearer {token}'}

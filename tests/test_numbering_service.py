# =============================================================================
# Tests for progressive numbering and fiscal seals
# =============================================================================

from decimal import Decimal

import pytest

from boxoffice.errors import NumberingFailure
from boxoffice.extensions import db
from boxoffice.models.ticket import TicketTypeCode
from boxoffice.models.ticketed_event import EventCounter
from boxoffice.services.numbering_service import NumberingService, compute_seal, seal_payload


# =============================================================================
# Seal Tests
# =============================================================================

class TestComputeSeal:
    """compute_seal is a pure function of the fiscal fields."""

    def test_payload_format(self):
        """Payload joins sector, type, number, date, time and centesimi."""
        payload = seal_payload('pt', 'INT', 1, '20261017', '2030', Decimal('20.00'))
        assert payload == 'PT|INT|1|20261017|2030|2000'

    def test_known_sha256(self):
        """Unkeyed seal is the upper-case SHA-256 of the payload."""
        seal = compute_seal('PT', TicketTypeCode.INT, 1, '20261017', '2030', Decimal('20.00'))
        assert seal == '4CF01D7A1C590AA216FEC5D4FB508947626F2787593828B81295CD7C7E985AFC'

    def test_known_hmac(self):
        """Keyed seal is the upper-case HMAC-SHA256 of the payload."""
        seal = compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.00'), key='seal-key')
        assert seal == '4F5FE78E45E51C25937AAD23E7DEFE7B7D39DCA3FADF5EACB9786A2234CB2B0B'

    def test_recompute_is_identical(self):
        """Same fields, same seal."""
        args = ('TR', 'RID', 42, '20260101', '0905', Decimal('38.50'))
        assert compute_seal(*args) == compute_seal(*args)
        assert compute_seal(*args) == 'EED9ABBBA121DC1058C58C7EE5178623C1F6FFDAA86FE9AFD33A7AA8DCD2A2D6'

    def test_amount_representation_does_not_matter(self):
        """20, '20.00' and Decimal('20.0') are the same amount."""
        seals = {
            compute_seal('PT', 'INT', 1, '20261017', '2030', amount)
            for amount in (20, '20.00', Decimal('20.0'))
        }
        assert len(seals) == 1

    def test_any_field_changes_the_seal(self):
        """Changing any fiscal field changes the seal."""
        base = compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.00'))
        assert compute_seal('PT', 'INT', 2, '20261017', '2030', Decimal('20.00')) != base
        assert compute_seal('PT', 'RID', 1, '20261017', '2030', Decimal('20.00')) != base
        assert compute_seal('PT', 'INT', 1, '20261017', '2031', Decimal('20.00')) != base
        assert compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.01')) != base
        assert compute_seal('TR', 'INT', 1, '20261017', '2030', Decimal('20.00')) != base

    @pytest.mark.parametrize('args', [
        ('PT', 'XXX', 1, '20261017', '2030', 20),
        ('PT', 'INT', 0, '20261017', '2030', 20),
        ('PT', 'INT', 1, '2026-10-17', '2030', 20),
        ('PT', 'INT', 1, '20261017', '20:30', 20),
        ('', 'INT', 1, '20261017', '2030', 20),
    ])
    def test_invalid_input_raises(self, args):
        """Malformed fiscal fields cannot be sealed."""
        with pytest.raises(NumberingFailure) as exc:
            compute_seal(*args)
        assert exc.value.code == 'invalid_seal_input'


# =============================================================================
# Progressive Number Tests
# =============================================================================

class TestProgressiveNumbers:
    """Per-event counter row."""

    def test_sequence_starts_at_one(self, event):
        """First number of an event is 1, then 2, 3..."""
        numbers = [NumberingService.next_progressive_number(event.id) for _ in range(3)]
        db.session.commit()
        assert numbers == [1, 2, 3]
        assert db.session.get(EventCounter, event.id).last_number == 3

    def test_rollback_returns_the_number(self, event):
        """A rolled back allocation leaves no gap."""
        assert NumberingService.next_progressive_number(event.id) == 1
        db.session.commit()

        assert NumberingService.next_progressive_number(event.id) == 2
        db.session.rollback()

        assert NumberingService.next_progressive_number(event.id) == 2
        db.session.commit()

    def test_counters_are_per_event(self, app):
        """Each event has its own sequence."""
        from boxoffice.services.provisioning_service import ProvisioningService

        first = ProvisioningService.create_ticketed_event('EVT-A', 'Primo')
        second = ProvisioningService.create_ticketed_event('EVT-B', 'Secondo')

        assert NumberingService.next_progressive_number(first.id) == 1
        assert NumberingService.next_progressive_number(first.id) == 2
        assert NumberingService.next_progressive_number(second.id) == 1
        db.session.commit()

    def test_missing_counter_raises(self, app):
        """No counter row, no number."""
        with pytest.raises(NumberingFailure) as exc:
            NumberingService.next_progressive_number(9999)
        assert exc.value.code == 'counter_missing'

    def test_ensure_counter_is_idempotent(self, event):
        """ensure_counter returns the existing row."""
        counter = NumberingService.ensure_counter(event.id)
        assert counter is db.session.get(EventCounter, event.id)
        assert EventCounter.query.filter_by(ticketed_event_id=event.id).count() == 1


class TestConfiguredSeal:
    """NumberingService.compute_seal uses FISCAL_SEAL_KEY."""

    def test_unkeyed_by_default(self, app):
        seal = NumberingService.compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.00'))
        assert seal == compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.00'))

    def test_keyed_when_configured(self, app):
        app.config['FISCAL_SEAL_KEY'] = 'seal-key'
        seal = NumberingService.compute_seal('PT', 'INT', 1, '20261017', '2030', Decimal('20.00'))
        assert seal == '4F5FE78E45E51C25937AAD23E7DEFE7B7D39DCA3FADF5EACB9786A2234CB2B0B'

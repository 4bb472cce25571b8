"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and commit-deferred event logging.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from bank_ledger.storage import InMemoryStorage
from bank_ledger.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent hashing"""

    def _event(self, **overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id="SAV0000000001",
            previous_hash="",
            current_hash="",
            metadata={"branch_id": "BR01", "rate": Decimal('4.50')},
            user_id="teller-1"
        )
        values.update(overrides)
        return AuditEvent(**values)

    def test_metadata_values_are_json_safe(self):
        event = self._event()
        assert event.metadata["rate"] == "4.50"

    def test_hash_is_deterministic(self):
        event = self._event()
        assert event.calculate_hash() == event.calculate_hash()
        assert len(event.calculate_hash()) == 64

    def test_hash_changes_with_content(self):
        event = self._event()
        other = self._event(entity_id="SAV0000000002")
        assert event.calculate_hash() != other.calculate_hash()

    def test_verify_hash(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()
        event.metadata["branch_id"] = "BR02"
        assert not event.verify_hash()

    def test_round_trip_through_dict(self):
        event = self._event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.event_type == AuditEventType.ACCOUNT_OPENED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test chain building and verification"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")
        second = self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A2")

        assert first.sequence == 1
        assert second.sequence == 2
        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.get_latest_hash() == second.current_hash

    def test_event_deferred_until_commit(self):
        with self.storage.atomic():
            result = self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "LN1")
            assert result is None
            assert self.audit_trail.count_events() == 0
        assert self.audit_trail.count_events() == 1

    def test_rolled_back_event_is_not_written(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "LN1")
                raise RuntimeError("boom")
        assert self.audit_trail.count_events() == 0
        assert self.audit_trail.verify_integrity()["valid"]

    def test_out_of_band_event_survives_rollback(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                event = self.audit_trail.log_event(
                    AuditEventType.TRANSACTION_FAILED, "transaction", "TXN1", out_of_band=True
                )
                assert event is not None
                raise RuntimeError("boom")
        assert self.audit_trail.count_events() == 1

    def test_disabled_trail_writes_nothing(self):
        trail = AuditTrail(InMemoryStorage(), enabled=False)
        assert trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1") is None
        assert trail.count_events() == 0

    def test_queries(self):
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "LN1")
        self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "LN1")
        self.audit_trail.log_event(AuditEventType.LOAN_APPLIED, "loan", "LN2")

        events = self.audit_trail.get_events_for_entity("loan", "LN1")
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_APPLIED, AuditEventType.LOAN_APPROVED
        ]
        assert len(self.audit_trail.get_events_for_entity("loan", "LN1", limit=1)) == 1
        assert len(self.audit_trail.get_events_by_type(AuditEventType.LOAN_APPLIED)) == 2

    def test_integrity_valid(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", f"A{i}")
        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5

    def test_tampering_detected(self):
        event = self.audit_trail.log_event(
            AuditEventType.TRANSACTION_COMPLETED, "transaction", "TXN1",
            metadata={"amount": "100.00"}
        )
        self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "1000000.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_chain_resumes_after_restart(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")
        restarted = AuditTrail(self.storage)
        event = restarted.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A2")
        assert event.sequence == 2
        assert restarted.verify_integrity()["valid"]

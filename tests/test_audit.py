"""
Test suite for the audit trail

Tests hash chaining and tamper detection.
"""

from decimal import Decimal

from mobile_money.storage import InMemoryStorage
from mobile_money.audit import AuditEvent, AuditEventType, AuditTrail


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_REGISTERED,
            entity_type="account",
            entity_id="01711111111",
            metadata={"role": "customer"},
            user_id="SYSTEM"
        )

        assert event.previous_hash == ""  # First event has no previous hash
        assert len(event.current_hash) == 64  # SHA-256 hash
        assert event.sequence == 1
        assert event.verify_hash()

    def test_events_chain_by_hash(self):
        first = self.audit_trail.log_event(AuditEventType.ACCOUNT_REGISTERED, "account", "A")
        second = self.audit_trail.log_event(AuditEventType.ACCOUNT_ACTIVATED, "account", "A")

        assert second.previous_hash == first.current_hash
        assert second.sequence == 2

    def test_metadata_is_made_json_safe(self):
        event = self.audit_trail.log_event(
            AuditEventType.TRANSFER_SETTLED, "transfer", "T1",
            {"amount": Decimal("30.00"), "type": AuditEventType.TRANSFER_SETTLED}
        )
        stored = AuditEvent.from_dict(self.storage.load("audit_events", event.id))

        assert stored.metadata == {"amount": "30.00", "type": "transfer_settled"}
        assert stored.verify_hash()

    def test_queries(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_REGISTERED, "account", "A")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_REGISTERED, "account", "B")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_BLOCKED, "account", "A")

        assert len(self.audit_trail.get_events_for_entity("account", "A")) == 2
        assert len(self.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_REGISTERED)) == 2

    def test_integrity_of_untouched_chain(self):
        for n in range(5):
            self.audit_trail.log_event(AuditEventType.LOGIN_SUCCESS, "account", str(n))

        result = self.audit_trail.verify_integrity()

        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_event_is_detected(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_ACTIVATED, "account", "A", {"seed": "40"})
        target = self.audit_trail.log_event(AuditEventType.ACCOUNT_ACTIVATED, "account", "B", {"seed": "40"})
        self.audit_trail.log_event(AuditEventType.ACCOUNT_BLOCKED, "account", "A")

        data = self.storage.load("audit_events", target.id)
        data["metadata"]["seed"] = "1000000"
        self.storage.save("audit_events", target.id, data)

        result = self.audit_trail.verify_integrity()

        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]

    def test_deleted_event_breaks_the_chain(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_REGISTERED, "account", "A")
        middle = self.audit_trail.log_event(AuditEventType.ACCOUNT_ACTIVATED, "account", "A")
        last = self.audit_trail.log_event(AuditEventType.ACCOUNT_BLOCKED, "account", "A")

        self.storage.delete("audit_events", middle.id)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == last.id

    def test_disabled_trail_records_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.LOGIN_FAILED, "account", "A") is None
        assert self.storage.count("audit_events") == 0

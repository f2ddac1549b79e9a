"""
Tests for the hash-chained audit trail
"""

import pytest

from lending_core.audit import AuditEventType, AuditTrail
from lending_core.config import LendingConfig
from lending_core.currency import Money
from lending_core.errors import InvalidAmount
from lending_core.storage import InMemoryStorage
from lending_core.system import LendingSystem


class TestAuditTrail:
    """Chain mechanics"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_chain_links_events(self):
        first = self.audit.log_event(AuditEventType.BORROWER_REGISTERED, "borrower", "b-1")
        second = self.audit.log_event(AuditEventType.APPLICATION_SUBMITTED, "application", "a-1",
                                      {"requested_amount": Money(500000)})

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert (first.sequence, second.sequence) == (1, 2)
        assert second.metadata == {"requested_amount": "500000"}
        assert self.audit.get_latest_hash() == second.current_hash

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_tampered_metadata_detected(self):
        event = self.audit.log_event(AuditEventType.REPAYMENT_RECORDED, "loan", "l-1",
                                     {"amount": Money(90258)})
        self.audit.log_event(AuditEventType.LOAN_CLOSED, "loan", "l-1")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "9025800"
        self.storage.save("audit_events", event.id, data)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert [error["event_id"] for error in result["hash_errors"]] == [event.id]

    def test_deleted_event_breaks_chain(self):
        events = [
            self.audit.log_event(AuditEventType.BORROWER_REGISTERED, "borrower", f"b-{i}")
            for i in range(3)
        ]
        self.storage.delete("audit_events", events[1].id)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == events[2].id

    def test_chain_resumes_from_storage(self):
        last = self.audit.log_event(AuditEventType.BORROWER_REGISTERED, "borrower", "b-1")

        reopened = AuditTrail(self.storage)
        following = reopened.log_event(AuditEventType.CREDIT_RATING_CHANGED, "borrower", "b-1")

        assert following.previous_hash == last.current_hash
        assert following.sequence == 2
        assert reopened.verify_integrity()["valid"]

    def test_queries(self):
        event = self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "l-1")
        self.audit.log_event(AuditEventType.LOAN_DISBURSED, "loan", "l-1")
        self.audit.log_event(AuditEventType.LOAN_CREATED, "loan", "l-2")

        assert [e.event_type for e in self.audit.get_events_for_entity("loan", "l-1")] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_DISBURSED
        ]
        assert len(self.audit.get_events_by_type(AuditEventType.LOAN_CREATED)) == 2
        assert self.audit.get_event_by_id(event.id) == event
        assert self.audit.get_event_by_id("missing") is None
        assert self.audit.count_events() == 3

    def test_disabled_trail_records_nothing(self):
        audit = AuditTrail(self.storage, enabled=False)
        assert audit.log_event(AuditEventType.LOAN_CREATED, "loan", "l-1") is None
        assert audit.count_events() == 0


class TestWorkflowAudit:
    """Committed operations leave audit entries"""

    def setup_method(self):
        self.system = LendingSystem(storage=InMemoryStorage(), config=LendingConfig())
        self.audit = self.system.audit_trail

    def run_workflow(self):
        borrower = self.system.register_borrower("Sarah", "Achieng", "0752000111")
        application = self.system.submit_application(300000, 6, "Tailoring", borrower_id=borrower.id)
        loan = self.system.approve_application(application.id).loan
        self.system.record_payment(loan.id, loan.total_amount)
        return borrower, application, loan

    def test_full_lifecycle_is_audited(self):
        borrower, application, loan = self.run_workflow()

        types = [event.event_type for event in self.audit.get_all_events()]
        assert types == [
            AuditEventType.BORROWER_REGISTERED,
            AuditEventType.APPLICATION_SUBMITTED,
            AuditEventType.LOAN_CREATED,
            AuditEventType.APPLICATION_APPROVED,
            AuditEventType.CREDIT_RATING_CHANGED,
            AuditEventType.REPAYMENT_RECORDED,
            AuditEventType.LOAN_CLOSED,
            AuditEventType.CREDIT_RATING_CHANGED,
        ]
        assert self.audit.verify_integrity()["valid"]

        rating_events = self.audit.get_events_for_entity("borrower", borrower.id)
        assert [e.metadata.get("new_rating") for e in rating_events] == [None, "FAIR", "GOOD"]

    def test_failed_operation_is_not_audited(self):
        borrower = self.system.register_borrower("Sarah", "Achieng", "0752000111")
        before = self.audit.count_events()

        with pytest.raises(InvalidAmount):
            self.system.submit_application(0, 6, "Tailoring", borrower_id=borrower.id)

        assert self.audit.count_events() == before

    def test_audit_disabled_by_config(self):
        system = LendingSystem(storage=InMemoryStorage(),
                               config=LendingConfig(enable_audit_logging=False))
        borrower = system.register_borrower("Sarah", "Achieng", "0752000111")
        system.submit_application(300000, 6, "Tailoring", borrower_id=borrower.id)

        assert system.audit_trail.count_events() == 0

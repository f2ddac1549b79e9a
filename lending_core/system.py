"""
Lending system facade

Wires storage, audit trail, event dispatcher and the managers together and
exposes the operations an outer surface (HTTP routes, CLI, batch jobs) calls.
"""

from datetime import date
from typing import Iterable, List, Optional

from .amortization import Installment
from .applications import ApplicationManager, ApplicationStatistics, LoanApplication
from .approvals import ApprovalResult, ApprovalWorkflow, BulkApprovalResult
from .audit import AuditTrail
from .borrowers import Borrower, BorrowerManager
from .config import LendingConfig, get_config
from .errors import ValidationError
from .events import EventDispatcher
from .identifiers import IdentifierAllocator
from .loans import Loan, LoanManager, PaymentMethod, Repayment
from .logging_config import get_logger, setup_logging
from .overdue import OverdueRecord, OverdueSummary, classify, summarize
from .payments import PaymentProcessor, PaymentResult
from .rates import RatePolicy
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface

logger = get_logger(__name__)


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LendingConfig] = None,
                 dispatcher: Optional[EventDispatcher] = None):
        self.config = config or get_config()
        self.storage = storage if storage is not None else self._create_storage(self.config)
        self.dispatcher = dispatcher or EventDispatcher()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.rate_policy: RatePolicy = self.config.rate_policy()
        self.identifiers = IdentifierAllocator(self.storage, self.config.id_padding)

        self.borrower_manager = BorrowerManager(
            self.storage, self.audit_trail, self.identifiers, self.dispatcher,
            prefix=self.config.borrower_prefix
        )
        self.application_manager = ApplicationManager(
            self.storage, self.audit_trail, self.identifiers, self.dispatcher,
            self.rate_policy, prefix=self.config.application_prefix
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.identifiers, self.dispatcher,
            prefix=self.config.loan_prefix,
            payment_interval_days=self.config.payment_interval_days
        )
        self.approval_workflow = ApprovalWorkflow(
            self.application_manager, self.loan_manager, self.borrower_manager,
            self.rate_policy, self.audit_trail, self.dispatcher
        )
        self.payment_processor = PaymentProcessor(
            self.loan_manager, self.borrower_manager, self.identifiers,
            self.audit_trail, self.dispatcher,
            receipt_prefix=self.config.receipt_prefix,
            payment_interval_days=self.config.payment_interval_days
        )

    @staticmethod
    def _create_storage(config: LendingConfig) -> StorageInterface:
        if config.database_path == ":memory:":
            return InMemoryStorage()
        return SQLiteStorage(config.database_path)

    @classmethod
    def from_config(cls, config: Optional[LendingConfig] = None) -> 'LendingSystem':
        """Build a system for an application entrypoint, configuring package logging"""
        config = config or get_config()
        setup_logging(config.log_level, config.log_format)
        return cls(config=config)

    def close(self) -> None:
        self.storage.close()

    # Borrowers and applications

    def register_borrower(self, first_name: str, last_name: str, phone: str,
                          email: Optional[str] = None) -> Borrower:
        return self.borrower_manager.register_borrower(first_name, last_name, phone, email)

    def submit_application(
        self,
        requested_amount,
        term_months,
        purpose: str,
        borrower_id: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        requested_rate=None,
        collateral: Optional[str] = None,
        guarantor_name: Optional[str] = None,
        guarantor_phone: Optional[str] = None
    ) -> LoanApplication:
        """
        Submit an application for a known borrower, or for an applicant
        identified by phone number

        An applicant whose phone number is not registered yet becomes a new
        borrower at NO_CREDIT. The full name is split on the first space.
        """
        if borrower_id:
            borrower = self.borrower_manager.require(borrower_id)
        else:
            if not full_name or not phone:
                raise ValidationError("Either borrower_id or full_name and phone are required")
            parts = full_name.strip().split(' ', 1)
            first_name = parts[0]
            last_name = parts[1].strip() if len(parts) > 1 else ''
            borrower, _ = self.borrower_manager.find_or_register(
                first_name, last_name or first_name, phone, email
            )

        return self.application_manager.submit_application(
            borrower.id, requested_amount, term_months, purpose,
            requested_rate=requested_rate, collateral=collateral,
            guarantor_name=guarantor_name, guarantor_phone=guarantor_phone
        )

    def get_application(self, application_id: str) -> LoanApplication:
        return self.application_manager.require(application_id)

    def application_statistics(self) -> ApplicationStatistics:
        return self.application_manager.get_statistics()

    # Approval workflow

    def approve_application(self, application_id: str, approved_amount=None,
                            rate_override=None) -> ApprovalResult:
        return self.approval_workflow.approve(application_id, approved_amount, rate_override)

    def reject_application(self, application_id: str, reason: str) -> LoanApplication:
        return self.approval_workflow.reject(application_id, reason)

    def bulk_approve(self, application_ids: Iterable[str], approved_amount=None) -> BulkApprovalResult:
        return self.approval_workflow.bulk_approve(application_ids, approved_amount)

    # Loans and payments

    def get_loan(self, loan_id: str) -> Loan:
        return self.loan_manager.require(loan_id)

    def disburse_loan(self, loan_id: str) -> Loan:
        return self.loan_manager.disburse_loan(loan_id)

    def loan_schedule(self, loan_id: str) -> List[Installment]:
        return self.loan_manager.get_schedule(loan_id)

    def record_payment(self, loan_id: str, amount, payment_date=None,
                       method=PaymentMethod.CASH, notes: Optional[str] = None) -> PaymentResult:
        return self.payment_processor.record_payment(loan_id, amount, payment_date, method, notes)

    def get_repayments(self, loan_id: str) -> List[Repayment]:
        self.loan_manager.require(loan_id)
        return self.loan_manager.get_repayments(loan_id)

    # Arrears

    def classify_overdue_loans(self, loans: Optional[Iterable[Loan]], as_of: date,
                               order_by) -> List[OverdueRecord]:
        """Classify the given loans, or every stored loan when loans is None"""
        if loans is None:
            loans = self.loan_manager.list_loans()
        return classify(loans, as_of, order_by)

    def overdue_summary(self, as_of: Optional[date] = None) -> OverdueSummary:
        as_of = as_of or date.today()
        return summarize(classify(self.loan_manager.list_loans(), as_of, "daysOverdue"))

"""
Loan Engine

LoanEngine is the single entry point for loan lifecycle actions and
queries. Each mutation holds the loan's lock, runs as one atomic storage
unit, validates everything before its first write, and leaves an audit
event behind. Balances and usage figures are recomputed from a consistent
snapshot on every read.
"""

from contextlib import ExitStack, contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import uuid

from .allocation import (
    AllocationPolicy, PaymentAllocation, allocate_payment, allocate_settlement,
    validate_explicit_allocation
)
from .audit import AuditTrail, AuditEvent, AuditEventType
from .balance import calculate_balance, projected_total_interest
from .config import EngineConfig, get_config
from .daycount import InterestBasis, reporting_today, to_reporting_date
from .exceptions import (
    ConcurrentModificationError, IdempotencyConflictError, InvalidStateError,
    LoanEngineError, LoanNotFoundError, OverpaymentError, RevolvingPeriodExceededError,
    ValidationError
)
from .facilities import FacilityDirectory
from .ledger import LedgerStore
from .locking import LoanLockManager
from .logging_config import get_logger, log_action
from .models import (
    Balance, LedgerTransaction, Loan, LoanStatus, RevolvingUsage, TransactionType
)
from .money import ZERO, to_money, to_rate
from .revolving import RevolvingPeriodTracker
from .storage import StorageInterface
from . import whatif


DateInput = Union[date, datetime, str]


class LoanEngine:
    """
    Loan ledger and interest-accrual engine
    """

    def __init__(
        self,
        storage: StorageInterface,
        facilities: FacilityDirectory,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[EngineConfig] = None,
        locks: Optional[LoanLockManager] = None,
        table_name: str = "loans"
    ):
        self.config = config or get_config()
        self.storage = storage
        self.facilities = facilities
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.locks = locks or LoanLockManager()
        self.table_name = table_name
        self.ledger = LedgerStore(storage)
        self.tracker = RevolvingPeriodTracker(
            self.config.revolving_warning_threshold,
            self.config.revolving_critical_threshold
        )
        self.allocation_policy = AllocationPolicy(self.config.payment_allocation_policy)
        self.places = self.config.money_decimal_places
        self.logger = get_logger("loan_engine.engine")

    # Lifecycle actions

    def create_loan(
        self,
        facility_id: str,
        principal_amount: Decimal,
        base_rate: Decimal,
        margin: Decimal,
        start_date: DateInput,
        due_date: DateInput,
        reference_number: Optional[str] = None,
        interest_basis: Optional[Union[InterestBasis, str]] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Draw a new loan on a facility

        Args:
            facility_id: Facility the loan is drawn on
            principal_amount: Amount disbursed
            base_rate: Index rate in percent
            margin: Bank margin in percent
            start_date: Draw-down date
            due_date: Maturity date
            reference_number: Bank reference (generated when omitted)
            interest_basis: actual_365 or actual_360 (config default when omitted)
            notes: Free text
            user_id: User performing the draw-down

        Returns:
            Created Loan

        Raises:
            ValidationError: Malformed amounts, rates or dates
            FacilityNotFoundError: Unknown facility
            RevolvingPeriodExceededError: The term does not fit the facility window
        """
        action = "create_loan"
        with self._rejections_logged(action, f"facility:{facility_id}", user_id):
            facility = self.facilities.get_facility(facility_id)
            if not facility.is_active:
                raise ValidationError("Facility is not active", {'facility_id': facility_id})

            base_rate = to_rate(base_rate, "base_rate")
            margin = to_rate(margin, "margin")
            if base_rate < ZERO or margin < ZERO:
                raise ValidationError(
                    "Rates cannot be negative",
                    {'base_rate': str(base_rate), 'margin': str(margin)}
                )
            basis = interest_basis or self.config.default_interest_basis
            try:
                basis = InterestBasis(basis)
            except ValueError:
                raise ValidationError("Unknown interest basis", {'interest_basis': str(basis)})

            start_date = self._as_date(start_date, "start_date")
            due_date = self._as_date(due_date, "due_date")
            if start_date is None or due_date is None:
                raise ValidationError("Start and due dates are required")

            now = datetime.now(timezone.utc)
            loan_id = str(uuid.uuid4())
            loan = Loan(
                id=loan_id,
                created_at=now,
                updated_at=now,
                facility_id=facility_id,
                reference_number=reference_number or f"LN-{loan_id[:8].upper()}",
                principal_amount=to_money(principal_amount, "principal_amount", self.places),
                base_rate=base_rate,
                margin=margin,
                interest_basis=basis,
                start_date=start_date,
                due_date=due_date,
                notes=notes
            )

            with self.locks.hold(f"facility:{facility_id}"):
                with self.storage.atomic():
                    self.tracker.ensure_capacity(facility, self._facility_loans(facility_id), loan.term_days)

                    self.storage.save(self.table_name, loan.id, loan.to_dict())
                    draw = self.ledger.append(
                        loan_id=loan.id,
                        transaction_type=TransactionType.DRAW,
                        amount=loan.principal_amount,
                        effective_date=loan.start_date,
                        annual_rate=loan.annual_rate,
                        memo="Initial draw-down",
                        created_by=user_id
                    )
                    self._audit(
                        AuditEventType.LOAN_CREATED, loan.id,
                        {
                            "facility_id": facility_id,
                            "reference_number": loan.reference_number,
                            "principal_amount": str(loan.principal_amount),
                            "annual_rate": str(loan.annual_rate),
                            "interest_basis": basis.value,
                            "start_date": loan.start_date.isoformat(),
                            "due_date": loan.due_date.isoformat(),
                            "transaction_id": draw.id
                        },
                        user_id=user_id
                    )

        log_action(self.logger, "info", f"Created loan {loan.reference_number}",
                   user_id=user_id, action=action, resource=f"loan:{loan.id}",
                   extra={"facility_id": facility_id, "principal_amount": str(loan.principal_amount)})
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: Decimal,
        payment_date: Optional[DateInput] = None,
        allocation: Optional[PaymentAllocation] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LedgerTransaction:
        """
        Record a repayment against an active loan

        Without an explicit allocation the configured policy splits the
        payment over the balance as of the payment date.

        Raises:
            OverpaymentError: Payment exceeds what is outstanding
            InvalidStateError: Loan is not active
        """
        action = "record_payment"
        amount = to_money(amount, "amount", self.places)
        self._require_key(idempotency_key, action)

        with self._mutation(loan_id, action, user_id):
            replayed = self._replayed(loan_id, idempotency_key, TransactionType.REPAYMENT, amount)
            if replayed:
                return replayed[0]

            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            payment_date = self._entry_date(payment_date, loan, ledger, "payment_date")
            balance = calculate_balance(loan, ledger, payment_date, self.places)

            if allocation is None:
                allocation = allocate_payment(amount, balance, self.allocation_policy, loan_id)
            else:
                allocation = validate_explicit_allocation(
                    amount,
                    PaymentAllocation(
                        principal=to_money(allocation.principal, "principal", self.places),
                        interest=to_money(allocation.interest, "interest", self.places),
                        fees=to_money(allocation.fees, "fees", self.places)
                    ),
                    balance,
                    loan_id
                )

            transaction = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.REPAYMENT,
                amount=amount,
                effective_date=payment_date,
                principal_portion=allocation.principal,
                interest_portion=allocation.interest,
                fee_portion=allocation.fees,
                idempotency_key=idempotency_key,
                created_by=user_id
            )
            self._save_loan(loan)
            self._audit(
                AuditEventType.PAYMENT_RECORDED, loan_id,
                {
                    "transaction_id": transaction.id,
                    "amount": str(amount),
                    "payment_date": payment_date.isoformat(),
                    "allocation": allocation.to_dict()
                },
                user_id=user_id
            )

        log_action(self.logger, "info", f"Recorded payment of {amount}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}",
                   extra={"allocation": allocation.to_dict()})
        return transaction

    def pay_interest(
        self,
        loan_id: str,
        amount: Decimal,
        payment_date: Optional[DateInput] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LedgerTransaction:
        """Pay accrued interest without touching principal"""
        action = "pay_interest"
        amount = to_money(amount, "amount", self.places)
        if amount <= ZERO:
            raise ValidationError("Interest payment must be positive", {'amount': str(amount)})

        with self._mutation(loan_id, action, user_id):
            replayed = self._replayed(loan_id, idempotency_key, TransactionType.INTEREST, amount)
            if replayed:
                return replayed[0]

            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            payment_date = self._entry_date(payment_date, loan, ledger, "payment_date")
            balance = calculate_balance(loan, ledger, payment_date, self.places)
            if amount > balance.interest:
                raise OverpaymentError(amount, balance.interest, loan_id)

            transaction = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.INTEREST,
                amount=amount,
                effective_date=payment_date,
                idempotency_key=idempotency_key,
                created_by=user_id
            )
            self._save_loan(loan)
            self._audit(
                AuditEventType.INTEREST_PAID, loan_id,
                {"transaction_id": transaction.id, "amount": str(amount),
                 "payment_date": payment_date.isoformat()},
                user_id=user_id
            )

        log_action(self.logger, "info", f"Recorded interest payment of {amount}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}")
        return transaction

    def charge_fee(
        self,
        loan_id: str,
        amount: Decimal,
        fee_date: Optional[DateInput] = None,
        memo: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LedgerTransaction:
        """Assess a fee against an active loan"""
        action = "charge_fee"
        amount = to_money(amount, "amount", self.places)
        if amount <= ZERO:
            raise ValidationError("Fee amount must be positive", {'amount': str(amount)})

        with self._mutation(loan_id, action, user_id):
            replayed = self._replayed(loan_id, idempotency_key, TransactionType.FEE, amount)
            if replayed:
                return replayed[0]

            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            fee_date = self._entry_date(fee_date, loan, ledger, "fee_date")

            transaction = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.FEE,
                amount=amount,
                effective_date=fee_date,
                idempotency_key=idempotency_key,
                memo=memo,
                created_by=user_id
            )
            self._save_loan(loan)
            self._audit(
                AuditEventType.FEE_CHARGED, loan_id,
                {"transaction_id": transaction.id, "amount": str(amount),
                 "fee_date": fee_date.isoformat(), "memo": memo},
                user_id=user_id
            )

        log_action(self.logger, "info", f"Charged fee of {amount}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}")
        return transaction

    def settle(
        self,
        loan_id: str,
        settlement_date: DateInput,
        settlement_amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Settle an active loan and freeze its balance at the settlement date

        When no amount is given the loan is settled for everything owed on
        the settlement date.

        Raises:
            InvalidStateError: Loan is not active
        """
        action = "settle_loan"
        if settlement_amount is not None:
            settlement_amount = to_money(settlement_amount, "settlement_amount", self.places)
            if settlement_amount <= ZERO:
                raise ValidationError(
                    "Settlement amount must be positive",
                    {'settlement_amount': str(settlement_amount)}
                )
        self._require_key(idempotency_key, action)

        with self._mutation(loan_id, action, user_id):
            replayed = self._replayed(loan_id, idempotency_key, TransactionType.SETTLEMENT,
                                      settlement_amount)
            if replayed:
                return self._load_loan(loan_id)

            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            settlement_date = self._entry_date(settlement_date, loan, ledger, "settlement_date")
            balance = calculate_balance(loan, ledger, settlement_date, self.places)

            amount = balance.total if settlement_amount is None else settlement_amount
            allocation = allocate_settlement(amount, balance)

            transaction = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.SETTLEMENT,
                amount=amount,
                effective_date=settlement_date,
                principal_portion=allocation.principal,
                interest_portion=allocation.interest,
                fee_portion=allocation.fees,
                idempotency_key=idempotency_key,
                created_by=user_id
            )
            loan.status = LoanStatus.SETTLED
            loan.settled_date = settlement_date
            loan.settled_amount = amount
            self._save_loan(loan)
            self._audit(
                AuditEventType.LOAN_SETTLED, loan_id,
                {
                    "transaction_id": transaction.id,
                    "settled_date": settlement_date.isoformat(),
                    "settled_amount": str(amount),
                    "allocation": allocation.to_dict()
                },
                user_id=user_id
            )

        log_action(self.logger, "info", f"Settled loan {loan.reference_number} for {amount}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}")
        return loan

    def reverse_settlement(
        self,
        loan_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Reopen a settled loan

        The original settlement stays in the ledger; a compensating record
        with negated portions is appended at the same effective date.
        """
        action = "reverse_settlement"
        with self._mutation(loan_id, action, user_id):
            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.SETTLED, action)
            ledger = self.ledger.get_ledger(loan_id)
            original = self._open_settlement(ledger)
            if original is None:
                raise InvalidStateError(loan_id, loan.status.value, action)

            reversal = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.SETTLEMENT,
                amount=-original.amount,
                effective_date=original.effective_date,
                principal_portion=-(original.principal_portion or ZERO),
                interest_portion=-(original.interest_portion or ZERO),
                fee_portion=-(original.fee_portion or ZERO),
                reverses_transaction_id=original.id,
                memo=reason,
                created_by=user_id
            )
            previous_date = loan.settled_date
            previous_amount = loan.settled_amount
            loan.status = LoanStatus.ACTIVE
            loan.settled_date = None
            loan.settled_amount = None
            self._save_loan(loan)
            self._audit(
                AuditEventType.SETTLEMENT_REVERSED, loan_id,
                {
                    "transaction_id": reversal.id,
                    "reversed_transaction_id": original.id,
                    "previous_settled_date": previous_date.isoformat(),
                    "previous_settled_amount": str(previous_amount)
                },
                user_id=user_id,
                reason=reason
            )

        log_action(self.logger, "info", f"Reversed settlement of loan {loan.reference_number}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}",
                   extra={"reason": reason})
        return loan

    def cancel(
        self,
        loan_id: str,
        reason: str,
        cancel_date: Optional[DateInput] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Cancel an active loan

        A settled loan has to be reversed first. The balance is frozen at
        the cancellation date.
        """
        action = "cancel_loan"
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")

        with self._mutation(loan_id, action, user_id):
            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            cancel_date = self._entry_date(cancel_date, loan, ledger, "cancel_date")

            loan.status = LoanStatus.CANCELLED
            loan.cancelled_date = cancel_date
            loan.cancellation_reason = reason.strip()
            self._save_loan(loan)
            self._audit(
                AuditEventType.LOAN_CANCELLED, loan_id,
                {"cancelled_date": cancel_date.isoformat()},
                user_id=user_id,
                reason=loan.cancellation_reason
            )

        log_action(self.logger, "info", f"Cancelled loan {loan.reference_number}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}",
                   extra={"reason": loan.cancellation_reason})
        return loan

    def permanently_delete(self, loan_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Physically remove a cancelled loan and its ledger

        Irreversible. The audit history of the loan is kept.
        """
        action = "delete_loan"
        with self._mutation(loan_id, action, user_id):
            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.CANCELLED, action)
            self._check_version(loan)

            removed = self.ledger.delete_ledger(loan_id)
            self.storage.delete(self.table_name, loan_id)
            self._audit(
                AuditEventType.LOAN_DELETED, loan_id,
                {
                    "reference_number": loan.reference_number,
                    "facility_id": loan.facility_id,
                    "principal_amount": str(loan.principal_amount),
                    "ledger_transactions_removed": removed
                },
                user_id=user_id,
                reason=loan.cancellation_reason
            )

        log_action(self.logger, "warning", f"Permanently deleted loan {loan.reference_number}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}",
                   extra={"ledger_transactions_removed": removed})
        return {"loan_id": loan_id, "ledger_transactions_removed": removed}

    def revolve(
        self,
        loan_id: str,
        new_due_date: DateInput,
        new_base_rate: Optional[Decimal] = None,
        new_margin: Optional[Decimal] = None,
        revolve_date: Optional[DateInput] = None,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Roll an active loan forward to a new due date, optionally at a new rate

        The outstanding principal is settled and redrawn on the revolve date;
        unpaid interest stays owed at the old rate. On a tracked facility the
        extension must fit in the remaining revolving days, otherwise nothing
        is written.

        Raises:
            RevolvingPeriodExceededError: Extension does not fit the facility window,
                or the window is already used up
            InvalidStateError: Loan is not active
        """
        action = "revolve_loan"
        self._require_key(idempotency_key, action)

        with self._mutation(loan_id, action, user_id, with_facility=True):
            replayed = self._replayed(loan_id, idempotency_key, TransactionType.SETTLEMENT, None)
            if replayed:
                return self._load_loan(loan_id)

            loan = self._load_loan(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action)
            ledger = self.ledger.get_ledger(loan_id)
            revolve_date = self._entry_date(revolve_date, loan, ledger, "revolve_date")
            new_due_date = self._as_date(new_due_date, "new_due_date")
            if new_due_date <= revolve_date:
                raise ValidationError(
                    "New due date must be after the revolve date",
                    {'new_due_date': new_due_date.isoformat(), 'revolve_date': revolve_date.isoformat()}
                )
            base_rate = loan.base_rate if new_base_rate is None else to_rate(new_base_rate, "new_base_rate")
            margin = loan.margin if new_margin is None else to_rate(new_margin, "new_margin")
            if base_rate < ZERO or margin < ZERO:
                raise ValidationError(
                    "Rates cannot be negative",
                    {'base_rate': str(base_rate), 'margin': str(margin)}
                )

            balance = calculate_balance(loan, ledger, revolve_date, self.places)
            if balance.principal <= ZERO:
                raise ValidationError("Loan has no outstanding principal to revolve", {'loan_id': loan_id})

            extension_days = max(0, (new_due_date - loan.due_date).days)
            facility = self.facilities.get_facility(loan.facility_id)
            usage = self.tracker.ensure_capacity(facility, self._facility_loans(loan.facility_id), extension_days)
            # An exhausted window blocks every revolve, rate-only ones included
            if usage is not None and not usage.can_revolve:
                raise RevolvingPeriodExceededError(facility.id, extension_days, usage.days_remaining)

            previous_due_date = loan.due_date
            previous_rate = loan.annual_rate
            roll_off = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.SETTLEMENT,
                amount=balance.principal,
                effective_date=revolve_date,
                principal_portion=balance.principal,
                interest_portion=ZERO,
                fee_portion=ZERO,
                idempotency_key=idempotency_key,
                memo="Revolve roll-off",
                created_by=user_id
            )
            redraw = self.ledger.append(
                loan_id=loan_id,
                transaction_type=TransactionType.DRAW,
                amount=balance.principal,
                effective_date=revolve_date,
                annual_rate=base_rate + margin,
                idempotency_key=idempotency_key,
                memo="Revolve redraw",
                created_by=user_id
            )
            loan.due_date = new_due_date
            loan.base_rate = base_rate
            loan.margin = margin
            self._save_loan(loan)
            self._audit(
                AuditEventType.LOAN_REVOLVED, loan_id,
                {
                    "revolve_date": revolve_date.isoformat(),
                    "principal": str(balance.principal),
                    "previous_due_date": previous_due_date.isoformat(),
                    "new_due_date": new_due_date.isoformat(),
                    "previous_rate": str(previous_rate),
                    "new_rate": str(loan.annual_rate),
                    "extension_days": extension_days,
                    "transaction_ids": [roll_off.id, redraw.id]
                },
                user_id=user_id
            )

        log_action(self.logger, "info", f"Revolved loan {loan.reference_number} to {new_due_date.isoformat()}",
                   user_id=user_id, action=action, resource=f"loan:{loan_id}",
                   extra={"extension_days": extension_days})
        return loan

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self._load_loan(loan_id)

    def list_loans(self, facility_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        """Loans in creation order, optionally filtered"""
        filters = {}
        if facility_id:
            filters["facility_id"] = facility_id
        if status:
            filters["status"] = status.value
        with self.storage.snapshot():
            if filters:
                records = self.storage.find(self.table_name, filters)
            else:
                records = self.storage.load_all(self.table_name)
        loans = [Loan.from_dict(data) for data in records]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_balance(self, loan_id: str, as_of: Optional[DateInput] = None) -> Balance:
        """Balance as of a date (today by default; frozen for settled and cancelled loans)"""
        with self.storage.snapshot():
            loan = self._load_loan(loan_id)
            ledger = self.ledger.get_ledger(loan_id)
        return calculate_balance(loan, ledger, self._as_date(as_of, "as_of"), self.places)

    def get_ledger(self, loan_id: str) -> List[LedgerTransaction]:
        """The loan's transactions in append order"""
        with self.storage.snapshot():
            self._load_loan(loan_id)
            return self.ledger.get_ledger(loan_id)

    def get_loan_summary(self, loan_id: str) -> Dict[str, Any]:
        """Loan record with its current balance, accrued and projected interest"""
        with self.storage.snapshot():
            loan = self._load_loan(loan_id)
            ledger = self.ledger.get_ledger(loan_id)
        balance = calculate_balance(loan, ledger, None, self.places)

        summary = loan.to_dict()
        summary['annual_rate'] = str(loan.annual_rate)
        summary['term_days'] = loan.term_days
        summary['balance'] = balance.to_dict()
        summary['accrued_interest'] = str(balance.interest_accrued if loan.is_active else ZERO)
        summary['projected_total_interest'] = str(projected_total_interest(loan, self.places))
        return summary

    def get_facility_revolving_usage(self, facility_id: str) -> RevolvingUsage:
        facility = self.facilities.get_facility(facility_id)
        with self.storage.snapshot():
            loans = self._facility_loans(facility_id)
        return self.tracker.facility_usage(facility, loans)

    def get_loan_revolving_usage(self, loan_id: str, today: Optional[date] = None) -> RevolvingUsage:
        loan = self._load_loan(loan_id)
        facility = self.facilities.get_facility(loan.facility_id)
        return self.tracker.loan_usage(facility, loan, today)

    def get_revolving_usage(self, facility_id: Optional[str] = None,
                            loan_id: Optional[str] = None) -> RevolvingUsage:
        """Usage for exactly one of a facility or a loan"""
        if (facility_id is None) == (loan_id is None):
            raise ValidationError("Specify exactly one of facility_id or loan_id")
        if facility_id is not None:
            return self.get_facility_revolving_usage(facility_id)
        return self.get_loan_revolving_usage(loan_id)

    def simulate(self, loan_id: str, scenario: whatif.Scenario,
                 today: Optional[date] = None) -> whatif.ScenarioResult:
        """Evaluate a what-if scenario; nothing is written"""
        return whatif.simulate(self._load_loan(loan_id), scenario, today)

    def get_audit_history(self, loan_id: str, limit: Optional[int] = None) -> List[AuditEvent]:
        """Audit events of a loan, including after it was deleted"""
        return self.audit_trail.get_events_for_entity("loan", loan_id, limit)

    def verify_audit_integrity(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Verify the hash chain and record that the check ran"""
        result = self.audit_trail.verify_integrity()
        if not result['valid']:
            log_action(self.logger, "error", "Audit chain integrity check failed",
                       user_id=user_id, action="verify_audit_integrity",
                       extra={"hash_errors": len(result['hash_errors']),
                              "chain_breaks": len(result['chain_breaks'])})
        with self.storage.atomic():
            self._audit(
                AuditEventType.AUDIT_INTEGRITY_CHECK, "audit_trail",
                {"valid": result['valid'], "total_events": result['total_events']},
                user_id=user_id,
                entity_type="system"
            )
        return result

    # Internals

    @contextmanager
    def _rejections_logged(self, action: str, resource: str, user_id: Optional[str]):
        try:
            yield
        except LoanEngineError as e:
            log_action(self.logger, "warning", f"Rejected {action}: {e.message}",
                       user_id=user_id, action=action, resource=resource, extra=e.details)
            raise

    @contextmanager
    def _mutation(self, loan_id: str, action: str, user_id: Optional[str], with_facility: bool = False):
        """
        Loan lock, atomic unit of work, and rejection logging.

        with_facility also takes the facility lock, always after the loan
        lock and before storage, the same order create_loan uses.
        """
        with self._rejections_logged(action, f"loan:{loan_id}", user_id):
            with ExitStack() as stack:
                stack.enter_context(self.locks.hold(loan_id))
                if with_facility:
                    facility_id = self._load_loan(loan_id).facility_id
                    stack.enter_context(self.locks.hold(f"facility:{facility_id}"))
                stack.enter_context(self.storage.atomic())
                yield

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any],
               user_id: Optional[str] = None, reason: Optional[str] = None,
               entity_type: str = "loan") -> None:
        if not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            user_id=user_id,
            reason=reason
        )

    def _load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            raise LoanNotFoundError(loan_id)
        return Loan.from_dict(data)

    def _facility_loans(self, facility_id: str) -> List[Loan]:
        return [Loan.from_dict(data)
                for data in self.storage.find(self.table_name, {"facility_id": facility_id})]

    def _check_version(self, loan: Loan) -> None:
        stored = self.storage.load(self.table_name, loan.id)
        if stored is None:
            raise LoanNotFoundError(loan.id)
        if stored.get('version', 1) != loan.version:
            raise ConcurrentModificationError(loan.id, loan.version, stored.get('version', 1))

    def _save_loan(self, loan: Loan) -> None:
        """Write the loan back if nobody else has since it was read"""
        self._check_version(loan)
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    @staticmethod
    def _require_status(loan: Loan, status: LoanStatus, action: str) -> None:
        if loan.status != status:
            raise InvalidStateError(loan.id, loan.status.value, action, [status.value])

    def _require_key(self, idempotency_key: Optional[str], action: str) -> None:
        if self.config.require_idempotency_keys and not idempotency_key:
            raise ValidationError(f"An idempotency key is required for {action}")

    def _replayed(
        self,
        loan_id: str,
        idempotency_key: Optional[str],
        transaction_type: TransactionType,
        amount: Optional[Decimal]
    ) -> List[LedgerTransaction]:
        """Transactions already appended under the key, after checking they match"""
        if not idempotency_key:
            return []
        existing = self.ledger.find_by_idempotency_key(loan_id, idempotency_key)
        if not existing:
            return []
        first = existing[0]
        if first.transaction_type != transaction_type or (amount is not None and first.amount != amount):
            raise IdempotencyConflictError(idempotency_key, loan_id)
        log_action(self.logger, "info", "Replayed idempotent request",
                   action="idempotent_replay", resource=f"loan:{loan_id}",
                   extra={"idempotency_key": idempotency_key})
        return existing

    @staticmethod
    def _open_settlement(ledger: List[LedgerTransaction]) -> Optional[LedgerTransaction]:
        """Latest closing settlement that has not been reversed"""
        reversed_ids = {t.reverses_transaction_id for t in ledger if t.is_reversal}
        for transaction in reversed(ledger):
            if (transaction.transaction_type == TransactionType.SETTLEMENT
                    and not transaction.is_reversal
                    and transaction.id not in reversed_ids):
                return transaction
        return None

    def _entry_date(self, value: Optional[DateInput], loan: Loan,
                    ledger: List[LedgerTransaction], field_name: str) -> date:
        """
        Effective date for a new ledger entry or status change: today by
        default, never before the loan started or before the latest entry.
        """
        entry_date = self._as_date(value, field_name) or reporting_today()
        if entry_date < loan.start_date:
            raise ValidationError(
                f"{field_name} cannot be before the start date",
                {field_name: entry_date.isoformat(), 'start_date': loan.start_date.isoformat()}
            )
        if ledger:
            latest = max(t.effective_date for t in ledger)
            if entry_date < latest:
                raise ValidationError(
                    f"{field_name} cannot precede the latest ledger entry",
                    {field_name: entry_date.isoformat(), 'latest_entry': latest.isoformat()}
                )
        return entry_date

    def _as_date(self, value: Optional[DateInput], field_name: str) -> Optional[date]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return to_reporting_date(value, self.config.reporting_timezone)
        if isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"{field_name} must be an ISO date", {field_name: str(value)})

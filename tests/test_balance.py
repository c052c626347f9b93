"""
Test suite for the balance calculator

The balance is a pure fold over a loan's ledger. These tests build ledgers
by hand so every figure can be checked against simple-interest arithmetic.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_engine.balance import balance_as_of_date, calculate_balance, projected_total_interest
from loan_engine.daycount import InterestBasis
from loan_engine.exceptions import ValidationError
from loan_engine.models import LedgerTransaction, Loan, LoanStatus, TransactionType


def make_loan(principal='1000000', base_rate='5', margin='1', start=date(2024, 1, 1),
              due=date(2024, 12, 31), **kwargs) -> Loan:
    now = datetime.now(timezone.utc)
    return Loan(
        id="LOAN001",
        created_at=now,
        updated_at=now,
        facility_id="FAC001",
        reference_number="LN-001",
        principal_amount=Decimal(principal),
        base_rate=Decimal(base_rate),
        margin=Decimal(margin),
        interest_basis=kwargs.pop('interest_basis', InterestBasis.ACTUAL_365),
        start_date=start,
        due_date=due,
        **kwargs
    )


def make_entry(sequence, transaction_type, amount, effective_date, **kwargs) -> LedgerTransaction:
    now = datetime.now(timezone.utc)
    return LedgerTransaction(
        id=f"TXN{sequence:03d}",
        created_at=now,
        updated_at=now,
        loan_id="LOAN001",
        transaction_type=transaction_type,
        amount=Decimal(amount),
        effective_date=effective_date,
        sequence=sequence,
        **kwargs
    )


def draw(sequence=1, amount='1000000', effective_date=date(2024, 1, 1), rate='6'):
    return make_entry(sequence, TransactionType.DRAW, amount, effective_date, annual_rate=Decimal(rate))


class TestLoanModel:
    """Test loan record validation"""
    
    def test_annual_rate_is_base_plus_margin(self):
        loan = make_loan(base_rate='5.25', margin='0.5')
        assert loan.annual_rate == Decimal('5.75')
        assert loan.term_days == 365
        assert loan.is_active
    
    def test_non_positive_principal_rejected(self):
        with pytest.raises(ValidationError):
            make_loan(principal='0')
        with pytest.raises(ValidationError):
            make_loan(principal='-100')
    
    def test_due_before_start_rejected(self):
        with pytest.raises(ValidationError):
            make_loan(start=date(2024, 6, 1), due=date(2024, 5, 31))
    
    def test_settlement_fields_follow_status(self):
        with pytest.raises(ValidationError):
            make_loan(status=LoanStatus.SETTLED)
        with pytest.raises(ValidationError):
            make_loan(settled_date=date(2024, 6, 1), settled_amount=Decimal('1000'))
        loan = make_loan(status=LoanStatus.SETTLED, settled_date=date(2024, 6, 1),
                         settled_amount=Decimal('1000'))
        assert loan.status == LoanStatus.SETTLED
    
    def test_round_trip_through_dict(self):
        loan = make_loan(notes="Working capital")
        restored = Loan.from_dict(loan.to_dict())
        assert restored == loan


class TestCalculateBalance:
    """Test the ledger fold"""
    
    def test_single_draw_accrues_from_start(self):
        loan = make_loan(base_rate='5', margin='0.75')
        balance = calculate_balance(loan, [draw(rate='5.75')], date(2024, 7, 1))
        
        assert balance.principal == Decimal('1000000')
        assert balance.interest == Decimal('28671.23')
        assert balance.fees == Decimal('0')
        assert balance.total == Decimal('1028671.23')
        assert balance.as_of_date == date(2024, 7, 1)
    
    def test_nothing_accrues_before_draw(self):
        loan = make_loan()
        balance = calculate_balance(loan, [draw()], date(2024, 1, 1))
        assert balance.interest == Decimal('0')
        assert balance.total == Decimal('1000000')
    
    def test_entries_after_as_of_are_ignored(self):
        loan = make_loan()
        ledger = [
            draw(),
            make_entry(2, TransactionType.FEE, '500', date(2024, 6, 1))
        ]
        balance = calculate_balance(loan, ledger, date(2024, 3, 1))
        assert balance.fees == Decimal('0')
    
    def test_repayment_reduces_principal_for_later_accrual(self):
        loan = make_loan()
        ledger = [
            draw(),
            make_entry(2, TransactionType.REPAYMENT, '100000', date(2024, 4, 1),
                       principal_portion=Decimal('85041.10'), interest_portion=Decimal('14958.90'),
                       fee_portion=Decimal('0'))
        ]
        at_payment = calculate_balance(loan, ledger, date(2024, 4, 1))
        assert at_payment.principal == Decimal('914958.90')
        assert at_payment.interest == Decimal('0')
        
        later = calculate_balance(loan, ledger, date(2024, 5, 1))
        assert later.principal == Decimal('914958.90')
        assert later.interest == Decimal('4512.13')
        assert later.interest_paid == Decimal('14958.90')
    
    def test_fee_and_interest_entries(self):
        loan = make_loan()
        ledger = [
            draw(),
            make_entry(2, TransactionType.FEE, '750', date(2024, 1, 15)),
            make_entry(3, TransactionType.INTEREST, '1000', date(2024, 2, 1))
        ]
        balance = calculate_balance(loan, ledger, date(2024, 2, 1))
        
        # 31 days at 6% on 1,000,000
        assert balance.interest_accrued == Decimal('5095.89')
        assert balance.interest == Decimal('4095.89')
        assert balance.fees == Decimal('750')
        assert balance.total == balance.principal + balance.interest + balance.fees
    
    def test_ordered_by_date_then_sequence(self):
        loan = make_loan()
        ledger = [
            make_entry(3, TransactionType.REPAYMENT, '500000', date(2024, 7, 1),
                       principal_portion=Decimal('500000'), interest_portion=Decimal('0')),
            draw(),
            make_entry(2, TransactionType.FEE, '100', date(2024, 2, 1))
        ]
        balance = calculate_balance(loan, ledger, date(2024, 7, 1))
        assert balance.principal == Decimal('500000')
        assert balance.drawn_principal == Decimal('1000000')
    
    def test_rate_follows_latest_draw(self):
        loan = make_loan(due=date(2024, 7, 1))
        ledger = [
            draw(),
            make_entry(2, TransactionType.SETTLEMENT, '1000000', date(2024, 4, 1),
                       principal_portion=Decimal('1000000'), interest_portion=Decimal('0'),
                       fee_portion=Decimal('0')),
            draw(sequence=3, effective_date=date(2024, 4, 1), rate='7')
        ]
        balance = calculate_balance(loan, ledger, date(2024, 5, 1))
        
        # 91 days at 6% then 30 days at 7%
        assert balance.interest == Decimal('20712.33')
        assert balance.principal == Decimal('1000000')
    
    def test_settled_loan_is_frozen(self):
        loan = make_loan(status=LoanStatus.SETTLED, settled_date=date(2024, 7, 1),
                         settled_amount=Decimal('1029917.81'))
        ledger = [
            draw(),
            make_entry(2, TransactionType.SETTLEMENT, '1029917.81', date(2024, 7, 1),
                       principal_portion=Decimal('1000000'), interest_portion=Decimal('29917.81'),
                       fee_portion=Decimal('0'))
        ]
        balance = calculate_balance(loan, ledger, date(2025, 1, 1))
        assert balance.as_of_date == date(2024, 7, 1)
        assert balance.total == Decimal('0')
    
    def test_cancelled_loan_is_frozen(self):
        loan = make_loan(status=LoanStatus.CANCELLED, cancelled_date=date(2024, 3, 1))
        balance = calculate_balance(loan, [draw()], date(2024, 12, 31))
        
        # 60 days at 6% on 1,000,000
        assert balance.as_of_date == date(2024, 3, 1)
        assert balance.interest == Decimal('9863.01')
    
    def test_excess_principal_is_clamped(self):
        loan = make_loan()
        ledger = [
            draw(),
            make_entry(2, TransactionType.SETTLEMENT, '1000100', date(2024, 1, 1),
                       principal_portion=Decimal('1000100'), interest_portion=Decimal('0'))
        ]
        balance = calculate_balance(loan, ledger, date(2024, 2, 1))
        assert balance.principal == Decimal('0')
        assert balance.interest == Decimal('0')
    
    def test_same_inputs_same_balance(self):
        loan = make_loan()
        ledger = [draw()]
        assert calculate_balance(loan, ledger, date(2024, 9, 9)) == calculate_balance(loan, ledger, date(2024, 9, 9))
    
    def test_empty_ledger(self):
        balance = calculate_balance(make_loan(), [], date(2024, 6, 1))
        assert balance.total == Decimal('0')


class TestBalanceHelpers:
    """Test valuation date and projection helpers"""
    
    def test_active_loan_uses_requested_date(self):
        assert balance_as_of_date(make_loan(), date(2024, 2, 2)) == date(2024, 2, 2)
    
    def test_projected_total_interest(self):
        loan = make_loan(due=date(2024, 12, 31))
        assert projected_total_interest(loan) == Decimal('60000.00')
    
    def test_balance_to_dict(self):
        balance = calculate_balance(make_loan(), [draw()], date(2024, 1, 1))
        data = balance.to_dict()
        assert data['principal'] == '1000000.00'
        assert data['as_of_date'] == '2024-01-01'

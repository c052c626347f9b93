"""
Test suite for revolving period tracking

Facility-level allocated days, per-loan elapsed days, status bands, the
draw-down and revolve gates, and the zero-window boundary.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from loan_engine.audit import AuditTrail
from loan_engine.config import EngineConfig
from loan_engine.engine import LoanEngine
from loan_engine.exceptions import RevolvingPeriodExceededError, ValidationError
from loan_engine.facilities import StorageFacilityDirectory
from loan_engine.models import LoanStatus, UsageStatus
from loan_engine.revolving import days_remaining, percentage_used, usage_status
from loan_engine.storage import InMemoryStorage


START = date(2024, 1, 1)


def build_engine(**config_overrides) -> LoanEngine:
    config = EngineConfig(database_url="memory://", **config_overrides)
    storage = InMemoryStorage()
    audit_trail = AuditTrail(storage)
    facilities = StorageFacilityDirectory(storage, audit_trail)
    return LoanEngine(storage, facilities, audit_trail=audit_trail, config=config)


class TestUsageArithmetic:
    """Test the pure usage helpers"""
    
    def test_percentage_rounded_to_one_decimal(self):
        assert percentage_used(350, 360) == 97.2
        assert percentage_used(1, 3) == 33.3
        assert percentage_used(1, 8) == 12.5
    
    def test_percentage_capped_at_100(self):
        assert percentage_used(400, 360) == 100.0
    
    def test_zero_or_invalid_window(self):
        assert percentage_used(50, 0) == 0.0
        assert percentage_used(50, None) == 0.0
        assert percentage_used(50, float('nan')) == 0.0
        assert percentage_used(50, float('inf')) == 0.0
        assert percentage_used(50, -10) == 0.0
        assert days_remaining(50, 0) == 0
    
    def test_days_remaining(self):
        assert days_remaining(350, 360) == 10
        assert days_remaining(400, 360) == 0
    
    def test_status_bands(self):
        assert usage_status(0.0) == UsageStatus.AVAILABLE
        assert usage_status(69.9) == UsageStatus.AVAILABLE
        assert usage_status(70.0) == UsageStatus.WARNING
        assert usage_status(89.9) == UsageStatus.WARNING
        assert usage_status(90.0) == UsageStatus.CRITICAL
        assert usage_status(99.9) == UsageStatus.CRITICAL
        assert usage_status(100.0) == UsageStatus.EXPIRED
    
    def test_custom_thresholds(self):
        assert usage_status(60.0, warning_threshold=50, critical_threshold=80) == UsageStatus.WARNING


class TestFacilityUsage:
    """Test cumulative usage across a facility's loans"""
    
    def setup_method(self):
        self.engine = build_engine()
        self.facility = self.engine.facilities.register_facility(
            bank_name="Al Rajhi Bank",
            facility_type="revolving",
            credit_limit=Decimal('20000000'),
            cost_of_funding=Decimal('5'),
            enable_revolving_tracking=True,
            max_revolving_period=360
        )
    
    def draw(self, days, start=START):
        return self.engine.create_loan(
            facility_id=self.facility.id,
            principal_amount=Decimal('1000000'),
            base_rate=Decimal('5'),
            margin=Decimal('1'),
            start_date=start,
            due_date=start + timedelta(days=days)
        )
    
    def test_two_loans_near_the_limit(self):
        self.draw(200)
        self.draw(150)
        usage = self.engine.get_revolving_usage(facility_id=self.facility.id)
        
        assert usage.days_used == 350
        assert usage.percentage_used == 97.2
        assert usage.status == UsageStatus.CRITICAL
        assert usage.can_revolve is True
        assert usage.days_remaining == 10
        assert usage.active_loans == 2
        assert usage.total_loans == 2
    
    def test_third_loan_exceeding_window_rejected(self):
        self.draw(200)
        self.draw(150)
        with pytest.raises(RevolvingPeriodExceededError) as exc_info:
            self.draw(20)
        
        assert exc_info.value.details['requested_days'] == 20
        assert exc_info.value.details['days_remaining'] == 10
        assert len(self.engine.list_loans(facility_id=self.facility.id)) == 2
    
    def test_loan_filling_window_exactly(self):
        self.draw(200)
        self.draw(150)
        self.draw(10)
        usage = self.engine.get_facility_revolving_usage(self.facility.id)
        
        assert usage.days_used == 360
        assert usage.percentage_used == 100.0
        assert usage.status == UsageStatus.EXPIRED
        assert usage.can_revolve is False
    
    def test_cancelled_loans_keep_their_term(self):
        first = self.draw(200)
        self.draw(150)
        self.engine.cancel(first.id, "Not drawn", START)
        usage = self.engine.get_facility_revolving_usage(self.facility.id)
        
        assert usage.days_used == 350
        assert usage.active_loans == 1
        assert usage.total_loans == 2
    
    def test_cancelling_does_not_free_days(self):
        first = self.draw(200)
        self.draw(150)
        self.engine.cancel(first.id, "Not drawn", START)
        
        with pytest.raises(RevolvingPeriodExceededError):
            self.draw(20)
    
    def test_early_settlement_counts_to_settlement_date(self):
        loan = self.draw(200)
        self.engine.settle(loan.id, START + timedelta(days=50))
        usage = self.engine.get_facility_revolving_usage(self.facility.id)
        
        assert usage.days_used == 50
        assert usage.active_loans == 0
        assert usage.total_loans == 1
    
    def test_usage_to_dict(self):
        self.draw(100)
        data = self.engine.get_facility_revolving_usage(self.facility.id).to_dict()
        assert data['status'] == 'available'
        assert data['percentage_used'] == 27.8
        assert data['total_loans'] == 1
        assert 'loan_id' not in data
    
    def test_warning_band(self):
        self.draw(260)
        usage = self.engine.get_facility_revolving_usage(self.facility.id)
        assert usage.percentage_used == 72.2
        assert usage.status == UsageStatus.WARNING


class TestLoanUsage:
    """Test elapsed usage of a single loan"""
    
    def setup_method(self):
        self.engine = build_engine()
        self.facility = self.engine.facilities.register_facility(
            bank_name="Banque Saudi Fransi",
            facility_type="revolving",
            credit_limit=Decimal('5000000'),
            cost_of_funding=Decimal('5'),
            enable_revolving_tracking=True,
            max_revolving_period=360
        )
        self.loan = self.engine.create_loan(
            facility_id=self.facility.id,
            principal_amount=Decimal('500000'),
            base_rate=Decimal('5'),
            margin=Decimal('1'),
            start_date=START,
            due_date=START + timedelta(days=180)
        )
    
    def test_in_flight_loan(self):
        usage = self.engine.get_loan_revolving_usage(self.loan.id, today=START + timedelta(days=30))
        assert usage.days_used == 30
        assert usage.percentage_used == 8.3
        assert usage.loan_id == self.loan.id
        assert usage.loan_status == LoanStatus.ACTIVE
    
    def test_after_due_date(self):
        usage = self.engine.get_loan_revolving_usage(self.loan.id, today=START + timedelta(days=500))
        assert usage.days_used == 180
        assert usage.percentage_used == 50.0
    
    def test_settled_loan_stops_at_settlement(self):
        self.engine.settle(self.loan.id, START + timedelta(days=40))
        usage = self.engine.get_loan_revolving_usage(self.loan.id, today=START + timedelta(days=100))
        assert usage.days_used == 40
        assert usage.loan_status == LoanStatus.SETTLED
    
    def test_exactly_one_target(self):
        with pytest.raises(ValidationError):
            self.engine.get_revolving_usage()
        with pytest.raises(ValidationError):
            self.engine.get_revolving_usage(facility_id=self.facility.id, loan_id=self.loan.id)


class TestRevolveGate:
    """Test that revolving re-checks the facility window"""
    
    def setup_method(self):
        self.engine = build_engine()
        self.facility = self.engine.facilities.register_facility(
            bank_name="Alinma Bank",
            facility_type="revolving",
            credit_limit=Decimal('5000000'),
            cost_of_funding=Decimal('5'),
            enable_revolving_tracking=True,
            max_revolving_period=360
        )
        self.loan = self.engine.create_loan(
            facility_id=self.facility.id,
            principal_amount=Decimal('1000000'),
            base_rate=Decimal('5'),
            margin=Decimal('1'),
            start_date=START,
            due_date=START + timedelta(days=350)
        )
    
    def test_extension_beyond_window_is_all_or_nothing(self):
        old_due = self.loan.due_date
        with pytest.raises(RevolvingPeriodExceededError):
            self.engine.revolve(self.loan.id, old_due + timedelta(days=20), revolve_date=old_due)
        
        assert self.engine.get_loan(self.loan.id).due_date == old_due
        assert len(self.engine.get_ledger(self.loan.id)) == 1
        assert self.engine.get_loan(self.loan.id).version == self.loan.version
    
    def test_extension_within_window(self):
        old_due = self.loan.due_date
        revolved = self.engine.revolve(self.loan.id, old_due + timedelta(days=10), revolve_date=old_due)
        
        assert revolved.due_date == old_due + timedelta(days=10)
        usage = self.engine.get_facility_revolving_usage(self.facility.id)
        assert usage.days_used == 360
        assert usage.can_revolve is False
    
    def test_exhausted_window_blocks_rate_only_revolve(self):
        old_due = self.loan.due_date
        self.engine.revolve(self.loan.id, old_due + timedelta(days=10), revolve_date=old_due)
        
        with pytest.raises(RevolvingPeriodExceededError) as exc_info:
            self.engine.revolve(
                self.loan.id, old_due + timedelta(days=10),
                new_base_rate=Decimal('4'), revolve_date=old_due
            )
        
        assert exc_info.value.details['requested_days'] == 0
        assert self.engine.get_loan(self.loan.id).base_rate == Decimal('5')
    
    def test_shortening_revolve_allowed_while_days_remain(self):
        old_due = self.loan.due_date
        revolved = self.engine.revolve(
            self.loan.id, old_due - timedelta(days=50), revolve_date=START + timedelta(days=100)
        )
        assert revolved.due_date == old_due - timedelta(days=50)


class TestUntrackedFacility:
    """Test facilities without revolving tracking"""
    
    def setup_method(self):
        self.engine = build_engine()
        self.facility = self.engine.facilities.register_facility(
            bank_name="Riyad Bank",
            facility_type="term",
            credit_limit=Decimal('5000000'),
            cost_of_funding=Decimal('5'),
            max_revolving_period=30
        )
    
    def test_usage_request_rejected(self):
        with pytest.raises(ValidationError):
            self.engine.get_revolving_usage(facility_id=self.facility.id)
    
    def test_no_gate_on_draw_down(self):
        loan = self.engine.create_loan(
            facility_id=self.facility.id,
            principal_amount=Decimal('1000000'),
            base_rate=Decimal('5'),
            margin=Decimal('1'),
            start_date=START,
            due_date=START + timedelta(days=365)
        )
        assert loan.term_days == 365
    
    def test_zero_window_reports_zero_percent(self):
        facility = self.engine.facilities.register_facility(
            bank_name="Riyad Bank",
            facility_type="revolving",
            credit_limit=Decimal('5000000'),
            cost_of_funding=Decimal('5'),
            enable_revolving_tracking=True,
            max_revolving_period=0
        )
        usage = self.engine.get_facility_revolving_usage(facility.id)
        assert usage.percentage_used == 0.0
        assert usage.days_remaining == 0
        assert usage.can_revolve is False

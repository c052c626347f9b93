"""
Tests for the per-key lock registry
"""

import threading
import time
from datetime import date
from decimal import Decimal

from loan_engine.audit import AuditTrail
from loan_engine.config import EngineConfig
from loan_engine.engine import LoanEngine
from loan_engine.facilities import StorageFacilityDirectory
from loan_engine.locking import LoanLockManager
from loan_engine.storage import InMemoryStorage


class TestLoanLockManager:
    """Test mutual exclusion and registry pruning"""
    
    def setup_method(self):
        self.locks = LoanLockManager()
    
    def test_registry_empty_after_release(self):
        with self.locks.hold("LOAN_A"):
            assert len(self.locks) == 1
        assert len(self.locks) == 0
    
    def test_reentrant_hold(self):
        with self.locks.hold("LOAN_A"):
            with self.locks.hold("LOAN_A"):
                assert len(self.locks) == 1
            assert len(self.locks) == 1
        assert len(self.locks) == 0
    
    def test_released_on_error(self):
        try:
            with self.locks.hold("LOAN_A"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(self.locks) == 0
    
    def test_same_key_serialized(self):
        active = []
        overlaps = []
        
        def worker():
            with self.locks.hold("LOAN_A"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                active.pop()
        
        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        
        assert overlaps == []
        assert len(self.locks) == 0
    
    def test_different_keys_do_not_block(self):
        entered = threading.Event()
        
        def worker():
            with self.locks.hold("LOAN_B"):
                entered.set()
        
        with self.locks.hold("LOAN_A"):
            thread = threading.Thread(target=worker)
            thread.start()
            assert entered.wait(timeout=5)
            thread.join(timeout=5)


class TestEngineLockUsage:
    """Test that engine operations leave no locks behind"""
    
    def test_no_locks_retained(self):
        storage = InMemoryStorage()
        audit = AuditTrail(storage)
        facilities = StorageFacilityDirectory(storage, audit)
        engine = LoanEngine(storage, facilities, audit, EngineConfig(database_url="memory://"))
        facility = facilities.register_facility("Test Bank", "term", Decimal('5000000'), Decimal('5.0'))
        
        for _ in range(5):
            loan = engine.create_loan(
                facility.id, Decimal('1000'), Decimal('5.0'), Decimal('1.0'),
                date(2024, 1, 1), date(2024, 12, 31)
            )
            engine.record_payment(loan.id, Decimal('100'), date(2024, 2, 1))
            engine.revolve(loan.id, date(2025, 6, 30), revolve_date=date(2024, 3, 1))
        
        assert len(engine.locks) == 0

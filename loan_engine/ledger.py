"""
Ledger Store

Append-only, per-loan transaction log. Records are never updated; the only
way to remove them is dropping a whole loan's ledger, which the engine
allows solely for permanently deleted (cancelled) loans.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from .models import LedgerTransaction, TransactionType
from .storage import StorageInterface


class LedgerStore:
    """Ordered transaction log keyed by loan"""
    
    def __init__(self, storage: StorageInterface, table_name: str = "ledger_transactions"):
        self.storage = storage
        self.table_name = table_name
    
    def append(
        self,
        loan_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        effective_date: date,
        principal_portion: Optional[Decimal] = None,
        interest_portion: Optional[Decimal] = None,
        fee_portion: Optional[Decimal] = None,
        annual_rate: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None,
        reverses_transaction_id: Optional[str] = None,
        memo: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> LedgerTransaction:
        """
        Append a transaction to a loan's ledger
        
        The sequence number is one past the loan's current last record, so
        callers must hold the loan's lock while appending.
        """
        now = datetime.now(timezone.utc)
        transaction = LedgerTransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            transaction_type=transaction_type,
            amount=amount,
            effective_date=effective_date,
            sequence=self._next_sequence(loan_id),
            principal_portion=principal_portion,
            interest_portion=interest_portion,
            fee_portion=fee_portion,
            annual_rate=annual_rate,
            idempotency_key=idempotency_key,
            reverses_transaction_id=reverses_transaction_id,
            memo=memo,
            created_by=created_by
        )
        
        if self.storage.exists(self.table_name, transaction.id):
            raise RuntimeError(f"Ledger transaction {transaction.id} already exists")
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction
    
    def get_ledger(self, loan_id: str) -> List[LedgerTransaction]:
        """All transactions for a loan in append order (single read)"""
        records = self.storage.find(self.table_name, {"loan_id": loan_id})
        transactions = [LedgerTransaction.from_dict(data) for data in records]
        transactions.sort(key=lambda t: t.sequence)
        return transactions
    
    def find_by_idempotency_key(self, loan_id: str, idempotency_key: str) -> List[LedgerTransaction]:
        """Transactions appended under a key, in append order"""
        records = self.storage.find(
            self.table_name,
            {"loan_id": loan_id, "idempotency_key": idempotency_key}
        )
        transactions = [LedgerTransaction.from_dict(data) for data in records]
        transactions.sort(key=lambda t: t.sequence)
        return transactions
    
    def delete_ledger(self, loan_id: str) -> int:
        """Drop every transaction of a loan; returns the number removed"""
        removed = 0
        for record in self.storage.find(self.table_name, {"loan_id": loan_id}):
            if self.storage.delete(self.table_name, record["id"]):
                removed += 1
        return removed
    
    def _next_sequence(self, loan_id: str) -> int:
        records = self.storage.find(self.table_name, {"loan_id": loan_id})
        if not records:
            return 1
        return max(record.get("sequence", 0) for record in records) + 1

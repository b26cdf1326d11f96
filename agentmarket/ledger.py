"""
Transaction ledger
Append-only audit trail; writes are best-effort and never raise
"""

from typing import List, Optional, Protocol

import structlog

from agentmarket.models import TransactionRecord, TransactionStatus

logger = structlog.get_logger()


class LedgerStore(Protocol):
    async def insert_transaction(self, record: TransactionRecord) -> TransactionRecord:
        ...

    async def list_transactions(
        self,
        buyer: Optional[str] = None,
        service_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        limit: Optional[int] = None,
    ) -> List[TransactionRecord]:
        ...


class TransactionLedger:
    def __init__(self, store: LedgerStore):
        self.store = store

    async def record(self, transaction: TransactionRecord) -> bool:
        """
        Persist a terminal outcome.

        Returns:
            False when the store rejected the write; the failure is only logged
        """
        try:
            await self.store.insert_transaction(transaction)
        except Exception as e:
            logger.error(
                "ledger_write_failed",
                transaction_id=transaction.id,
                session_id=transaction.session_id,
                status=transaction.status.value,
                error=str(e),
            )
            return False

        logger.info(
            "transaction_recorded",
            transaction_id=transaction.id,
            session_id=transaction.session_id,
            service_id=transaction.service_id,
            status=transaction.status.value,
            amount=str(transaction.amount),
        )
        return True

    async def history(
        self,
        buyer: Optional[str] = None,
        service_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[TransactionRecord]:
        """Recent ledger rows, newest first"""
        return await self.store.list_transactions(buyer=buyer, service_id=service_id, limit=limit)

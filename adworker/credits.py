"""
Credit ledger.

Every balance change is one atomic call into Postgres (`deduct_credits` /
`add_credits` RPCs), followed by an audit row in `credit_transactions`.
The audit insert is secondary: if it fails the balance change stands and
the failure is logged.

Balances are never read, modified and written back from Python.
"""

import asyncio
import logging
from typing import Optional

from .pipeline.errors import InsufficientCreditsError, LedgerError
from .pipeline.models import CreditTransaction, TransactionType, utcnow

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
TRANSACTIONS_TABLE = "credit_transactions"


# ── Supabase store ───────────────────────────────────────────────────────────

class SupabaseCreditStore:
    def __init__(self, client_factory=None):
        if client_factory is None:
            from adworker.supabase_client import get_service_client
            client_factory = get_service_client
        self._client_factory = client_factory

    async def adjust_balance(self, user_id: str, delta: int):
        """Atomically add `delta` (negative to deduct) to the user's balance."""
        fn = "deduct_credits" if delta < 0 else "add_credits"
        params = {"p_user_id": user_id, "p_amount": abs(delta)}
        try:
            await asyncio.to_thread(lambda: self._client_factory().rpc(fn, params).execute())
        except Exception as e:
            if "insufficient" in str(e).lower():
                raise InsufficientCreditsError(user_id, abs(delta)) from e
            raise LedgerError(f"{fn} failed for user {user_id}: {e}") from e

    async def get_balance(self, user_id: str) -> int:
        def _query():
            return (
                self._client_factory()
                .table(USERS_TABLE)
                .select("credits")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        if not result.data:
            raise LedgerError(f"User not found: {user_id}")
        return int(result.data[0].get("credits") or 0)

    async def insert_transaction(self, tx: CreditTransaction):
        row = {
            "user_id": tx.user_id,
            "amount": tx.amount,
            "transaction_type": tx.transaction_type.value,
            "related_job_id": tx.related_job_id,
            "stripe_payment_id": tx.external_payment_id,
        }
        await asyncio.to_thread(
            lambda: self._client_factory().table(TRANSACTIONS_TABLE).insert(row).execute()
        )

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        def _query():
            return (
                self._client_factory()
                .table(TRANSACTIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )

        result = await asyncio.to_thread(_query)
        return [
            CreditTransaction(
                user_id=row["user_id"],
                amount=row["amount"],
                transaction_type=row["transaction_type"],
                related_job_id=row.get("related_job_id"),
                external_payment_id=row.get("stripe_payment_id"),
                created_at=row.get("created_at"),
            )
            for row in result.data
        ]


# ── Ledger ───────────────────────────────────────────────────────────────────

def _check_amount(amount: int):
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Credit amount must be a positive integer, got {amount!r}")


class CreditLedger:
    def __init__(self, store):
        self.store = store

    async def _audit(self, tx: CreditTransaction):
        try:
            await self.store.insert_transaction(tx)
        except Exception as e:
            logger.error(
                f"Failed to log {tx.transaction_type.value} transaction for user {tx.user_id} "
                f"(job={tx.related_job_id}): {e}"
            )

    async def deduct(self, user_id: str, amount: int, job_id: str):
        """Raises InsufficientCreditsError if the balance would go negative."""
        _check_amount(amount)
        await self.store.adjust_balance(user_id, -amount)
        await self._audit(CreditTransaction(
            user_id=user_id,
            amount=-amount,
            transaction_type=TransactionType.USAGE,
            related_job_id=job_id,
            created_at=utcnow(),
        ))
        logger.info(f"[{job_id}] Deducted {amount} credit(s) from user {user_id}")

    async def refund(self, user_id: str, amount: int, job_id: str):
        _check_amount(amount)
        await self.store.adjust_balance(user_id, amount)
        await self._audit(CreditTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=TransactionType.REFUND,
            related_job_id=job_id,
            created_at=utcnow(),
        ))
        logger.info(f"[{job_id}] Refunded {amount} credit(s) to user {user_id}")

    async def purchase(self, user_id: str, amount: int, payment_ref: str):
        _check_amount(amount)
        await self.store.adjust_balance(user_id, amount)
        await self._audit(CreditTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=TransactionType.PURCHASE,
            external_payment_id=payment_ref,
            created_at=utcnow(),
        ))
        logger.info(f"Added {amount} purchased credit(s) to user {user_id} (payment={payment_ref})")

    async def get_balance(self, user_id: str) -> int:
        return await self.store.get_balance(user_id)

    async def has_credits(self, user_id: str, required: int) -> bool:
        return await self.get_balance(user_id) >= required

    async def transaction_history(self, user_id: str, limit: Optional[int] = 50) -> list[CreditTransaction]:
        return await self.store.list_transactions(user_id, limit=limit or 50)

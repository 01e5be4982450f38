"""
Manual Payments

Credit, debit, block and unblock operations outside the billing passes.
These share the ledger's atomic update path with the engine and keep the
block-threshold invariant: the credit path is the only one that unblocks.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from .base import (
    Account,
    AccountStatus,
    LedgerStore,
    PaymentSource,
    PolicyViolationError,
    StatusTransition,
)
from .pricing import round_currency
from .processor import AccountProcessor


logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """Outcome of a manual ledger operation."""

    account: Account
    transition: StatusTransition = StatusTransition.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account.id,
            "balance": float(self.account.balance),
            "status": self.account.status.value,
            "transition": self.transition.value,
        }


class PaymentService:
    """Manual credit/debit and status overrides."""

    def __init__(self, store: LedgerStore, processor: AccountProcessor):
        self._store = store
        self._processor = processor

    @staticmethod
    def _validate_amount(amount: Decimal) -> Decimal:
        amount = round_currency(Decimal(amount))
        if amount <= 0:
            raise ValueError("Amount must be positive")
        return amount

    async def credit(
        self,
        account_id: str,
        amount: Decimal,
        source: PaymentSource = PaymentSource.MANUAL,
        comment: str = "",
    ) -> PaymentResult:
        """Add funds. Unblocks a BLOCKED account that is back above its threshold."""
        amount = self._validate_amount(amount)
        account = await self._store.apply_payment_atomic(account_id, amount, source, comment)
        logger.info(f"Credited {amount} to account {account_id}, balance {account.balance}")

        if account.status == AccountStatus.BLOCKED and not account.is_below_threshold():
            account = await self._processor.unblock(account)
            return PaymentResult(account=account, transition=StatusTransition.UNBLOCKED)

        return PaymentResult(account=account)

    async def debit(
        self,
        account_id: str,
        amount: Decimal,
        comment: str = "",
    ) -> PaymentResult:
        """Withdraw funds. Blocks an ACTIVE account that falls below its threshold."""
        amount = self._validate_amount(amount)
        account = await self._store.apply_payment_atomic(
            account_id, -amount, PaymentSource.MANUAL, comment
        )
        logger.info(f"Debited {amount} from account {account_id}, balance {account.balance}")

        if account.status == AccountStatus.ACTIVE and account.is_below_threshold():
            blocked = await self._processor.block(account)
            return PaymentResult(account=blocked, transition=StatusTransition.BLOCKED)

        return PaymentResult(account=account)

    async def block(self, account_id: str) -> PaymentResult:
        """Manually block an account."""
        account = await self._store.get_account(account_id)
        if account.status == AccountStatus.BLOCKED:
            return PaymentResult(account=account)

        blocked = await self._processor.block(account)
        logger.info(f"Account {account_id} blocked manually")
        return PaymentResult(account=blocked, transition=StatusTransition.BLOCKED)

    async def unblock(self, account_id: str) -> PaymentResult:
        """Manually unblock an account. Refused while the balance is below threshold."""
        account = await self._store.get_account(account_id)
        if account.status != AccountStatus.BLOCKED:
            return PaymentResult(account=account)

        if account.is_below_threshold():
            raise PolicyViolationError(
                f"Cannot unblock account {account_id}: balance {account.balance} "
                f"is below threshold {account.block_threshold}"
            )

        active = await self._processor.unblock(account)
        logger.info(f"Account {account_id} unblocked manually")
        return PaymentResult(account=active, transition=StatusTransition.UNBLOCKED)

    async def handle_top_up(self, account_id: str) -> Optional[PaymentResult]:
        """
        Re-evaluate an account after an external payment.

        Returns None when the account is not BLOCKED.
        """
        account = await self._store.get_account(account_id)
        if account.status != AccountStatus.BLOCKED:
            return None

        if account.is_below_threshold():
            logger.info(f"Top-up on account {account_id} not enough to unblock")
            return PaymentResult(account=account)

        active = await self._processor.unblock(account)
        return PaymentResult(account=active, transition=StatusTransition.UNBLOCKED)

"""
Ledger System Wiring

Builds every engine component around one store handle.
"""

from typing import Optional

from .accounts import AccountBalanceManager
from .audit import AuditTrail
from .config import YieldLedgerConfig, get_config
from .deposits import YieldDepositRegistry
from .ledger import TransactionLedger
from .payouts import PayoutScheduler
from .storage import StorageInterface, create_storage
from .withdrawals import ShortfallPolicy, WithdrawalAllocator, WithdrawalRequestManager


class LedgerSystem:
    """Ledger engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[YieldLedgerConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage if storage is not None else create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountBalanceManager(self.storage, self.ledger, self.audit_trail)
        self.deposit_registry = YieldDepositRegistry(
            self.storage, self.account_manager, self.audit_trail
        )
        self.payout_scheduler = PayoutScheduler(
            self.storage, self.account_manager, self.deposit_registry,
            self.audit_trail, system_user_id=self.config.system_user_id
        )
        self.request_manager = WithdrawalRequestManager(
            self.storage, self.account_manager, self.audit_trail
        )
        self.withdrawal_allocator = WithdrawalAllocator(
            self.storage, self.account_manager, self.deposit_registry,
            self.request_manager, self.audit_trail,
            shortfall_policy=ShortfallPolicy(self.config.withdrawal_shortfall_policy)
        )

    def close(self) -> None:
        self.storage.close()

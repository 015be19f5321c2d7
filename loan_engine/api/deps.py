"""
Loan system container and request dependencies
"""

from typing import Optional

from ..config import LoanEngineConfig, get_config
from ..events import get_global_dispatcher
from ..ledger import EventLedger
from ..loans import LoanMutationEngine
from ..replay import ScheduleReplayer
from ..schedule import ScheduleStore
from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..summary import SummaryAggregator


class LoanSystem:
    """Loan engine with all components wired to one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LoanEngineConfig] = None):
        self.config = config or get_config()

        if storage is not None:
            self.storage = storage
        elif self.config.storage_backend == "memory":
            self.storage = InMemoryStorage()
        else:
            self.storage = SQLiteStorage(self.config.database_path)

        self.schedule_store = ScheduleStore(self.storage)
        self.ledger = EventLedger(self.storage)
        self.dispatcher = get_global_dispatcher()
        self.engine = LoanMutationEngine(
            self.storage,
            self.schedule_store,
            self.ledger,
            dispatcher=self.dispatcher,
            foreclosure_day_count=self.config.foreclosure_day_count,
            notifications_enabled=self.config.enable_notifications,
            default_currency=self.config.default_currency
        )
        self.summaries = SummaryAggregator(
            self.storage, self.schedule_store, self.ledger, self.engine
        )
        self.replayer = ScheduleReplayer(self.storage, self.schedule_store, self.ledger)

    def close(self) -> None:
        self.storage.close()


# Global loan system instance, created on first request
_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Dependency to get the loan system"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system

"""
Lending system wiring and request dependencies
"""

from typing import Optional

from fastapi import Header, Request

from ..config import LendingConfig, get_config
from ..events import EventDispatcher
from ..loans import LoanManager
from ..payments import PaymentRecorder
from ..storage import StorageInterface, create_storage
from ..subsidies import SubsidyLedger


class LendingSystem:
    """Lending core with all components initialized over one storage backend"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.dispatcher = dispatcher or EventDispatcher()

        self.subsidy_ledger = SubsidyLedger(self.storage, self.dispatcher, self.config)
        self.payment_recorder = PaymentRecorder(self.storage, self.dispatcher, self.config)
        self.loan_manager = LoanManager(
            self.storage, self.subsidy_ledger, self.payment_recorder, self.dispatcher, self.config
        )

    def close(self) -> None:
        self.storage.close()


def get_lending_system(request: Request) -> LendingSystem:
    return request.app.state.lending_system


def get_actor_id(x_actor_id: Optional[str] = Header(None)) -> Optional[str]:
    """Opaque actor identity supplied by the authentication layer"""
    return x_actor_id

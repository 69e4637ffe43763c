"""Background workers: settlement polling and loan release."""
from .loan_release_worker import LoanReleaseWorker, start_loan_release_worker
from .settlement_poller import SettlementPoller

__all__ = ["LoanReleaseWorker", "SettlementPoller", "start_loan_release_worker"]

"""Payment recovery: server-side invoice retries and the client-side batch driver."""

from .billing import PaymentAttemptFailed, StripeBillingClient
from .job_state import JsonFileJobStateStore, RecoveryJobState
from .processor import RecoveryApiClient, RecoveryBatchProcessor
from .service import RecoveryInterrupted, RecoveryPage, RevenueRecoveryService

__all__ = [
    "JsonFileJobStateStore",
    "PaymentAttemptFailed",
    "RecoveryApiClient",
    "RecoveryBatchProcessor",
    "RecoveryInterrupted",
    "RecoveryJobState",
    "RecoveryPage",
    "RevenueRecoveryService",
    "StripeBillingClient",
]

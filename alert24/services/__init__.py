"""Services for monitoring, status derivation, escalation, and scheduling."""
from .checker import CheckerService, ProbeResult
from .dispatcher import NotificationDispatcher
from .escalation import EscalationWalker
from .incidents import IncidentService
from .ingestor import CheckResultIn, CheckResultIngestor
from .publisher import StatusUpdatePublisher
from .results import BatchReport, OperationOutcome
from .scheduler import SchedulerService
from .status_engine import StatusDerivationEngine

__all__ = [
    "CheckerService",
    "ProbeResult",
    "NotificationDispatcher",
    "EscalationWalker",
    "IncidentService",
    "CheckResultIn",
    "CheckResultIngestor",
    "StatusUpdatePublisher",
    "BatchReport",
    "OperationOutcome",
    "SchedulerService",
    "StatusDerivationEngine",
]

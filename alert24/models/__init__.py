"""Database models."""
from .organization import Organization, StatusPage
from .monitoring_check import MonitoringCheck
from .check_result import CheckResult
from .service import Service, ServiceMonitoringAssociation, ServiceStatusHistory
from .status_update import StatusUpdate
from .escalation_policy import EscalationPolicy, Contact
from .on_call import OnCallSchedule, OnCallScheduleMember
from .incident import Incident, IncidentEscalation
from .notification_log import NotificationLog

__all__ = [
    "Organization",
    "StatusPage",
    "MonitoringCheck",
    "CheckResult",
    "Service",
    "ServiceMonitoringAssociation",
    "ServiceStatusHistory",
    "StatusUpdate",
    "EscalationPolicy",
    "Contact",
    "OnCallSchedule",
    "OnCallScheduleMember",
    "Incident",
    "IncidentEscalation",
    "NotificationLog",
]

"""API routers."""
from .check_results import router as check_results_router
from .cron import router as cron_router
from .incidents import router as incidents_router
from .status import router as status_router

__all__ = ["check_results_router", "cron_router", "incidents_router", "status_router"]

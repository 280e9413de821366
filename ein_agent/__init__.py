from .models import CaseRecord, RunResult
from .orchestrator import EinWorkflowOrchestrator, run_automation
from .settings import Settings

__all__ = ["CaseRecord", "RunResult", "EinWorkflowOrchestrator", "Settings", "run_automation"]

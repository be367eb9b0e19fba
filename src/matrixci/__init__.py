from .dsl import axis, sh, matrix, single, wf, workflow, expand_all, Matrix
from .dag import Scheduler, run_jobs
from .report import Report, aggregate
from .model import (
    Axis,
    Step,
    JobSpec,
    Outcome,
    Status,
    CIError,
    ConfigurationError,
    SchedulingError,
    StepFailure,
    ProvisioningUnavailable,
)

__all__ = [
    "axis", "sh", "matrix", "single", "wf", "workflow", "expand_all", "Matrix",
    "Scheduler", "run_jobs", "Report", "aggregate",
    "Axis", "Step", "JobSpec", "Outcome", "Status",
    "CIError", "ConfigurationError", "SchedulingError", "StepFailure", "ProvisioningUnavailable",
]

from .dsl import job, sh, uses, wf, JobBuilder
from .errors import (
    Cancelled,
    EnvironmentProvisioningFailure,
    MalformedDefinition,
    StepExecutionFailure,
)
from .loader import load, load_file, loads
from .model import ActionRef, Event, Job, JobStatus, Step, StepStatus, Verdict, Workflow
from .runner import PipelineRunner, run_workflow, trigger, verdict

__all__ = [
    "job", "sh", "uses", "wf", "JobBuilder",
    "load", "load_file", "loads",
    "trigger", "verdict", "PipelineRunner", "run_workflow",
    "ActionRef", "Event", "Job", "JobStatus", "Step", "StepStatus", "Verdict", "Workflow",
    "Cancelled", "EnvironmentProvisioningFailure", "MalformedDefinition", "StepExecutionFailure",
]

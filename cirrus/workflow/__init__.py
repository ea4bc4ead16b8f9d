from .step import Step, StepImpl
from .tasks import TaskTracker
from .workflow import Workflow

__all__ = [
    "Step",
    "StepImpl",
    "TaskTracker",
    "Workflow",
]

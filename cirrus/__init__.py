"""Cirrus - provision cloud infrastructure as a graph of steps.

Example:

    from cirrus import CreateInstances, Workflow

    wf = Workflow.create("build", sources={"build.sh": "./build.sh"})
    wf.add_step("create-builder", CreateInstances([
        {
            "name": "builder",
            "disks": [{"initializeParams": {"sourceImage": "projects/debian-cloud/global/images/family/debian-12"}}],
            "startupScript": "build.sh",
        },
    ]))
    await wf.run()
"""

# Errors
from cirrus.core import (
    CirrusError,
    CompositeError,
    ConfigurationError,
    ConflictError,
    ErrorCollector,
    NotFoundError,
    RemoteOperationError,
    ResourceLookupError,
    ResourceReferenceError,
    StepTimeoutError,
    UnresolvedError,
    ValidationError,
)

# Configuration and logging
from cirrus.config import WorkflowConfig, load_config, resolve_project, workflow_config
from cirrus.logging import LogConfig, setup_logging, teardown_logging

# Registries
from cirrus.resources import Registries, Resource, ResourceRegistry

# Steps
from cirrus.steps import CreateInstances, InstanceDescriptor, stream_serial_output

# Workflow
from cirrus.workflow import Step, StepImpl, TaskTracker, Workflow

__version__ = "0.1.0"

__all__ = [
    "CirrusError",
    "CompositeError",
    "ConfigurationError",
    "ConflictError",
    "CreateInstances",
    "ErrorCollector",
    "InstanceDescriptor",
    "LogConfig",
    "NotFoundError",
    "Registries",
    "RemoteOperationError",
    "Resource",
    "ResourceLookupError",
    "ResourceReferenceError",
    "ResourceRegistry",
    "Step",
    "StepImpl",
    "StepTimeoutError",
    "TaskTracker",
    "UnresolvedError",
    "ValidationError",
    "Workflow",
    "WorkflowConfig",
    "load_config",
    "resolve_project",
    "setup_logging",
    "stream_serial_output",
    "teardown_logging",
    "workflow_config",
]

"""Core of the StoryFlow workflow engine.

- **instructions**: the closed instruction set and its wire codec
- **generation**: partial settings (``config`` payloads) and resolved request config
- **support**: Full / Partial / Unsupported classification
- **validator**: pre-run checks producing errors and warnings
- **engine**: the async program-counter interpreter
- **results** / **events**: run reports and the listener channel
- **workflow_io**: JSON export and import
- **config**: environment-driven settings (``STORYFLOW_`` prefix)

Usage Example
-------------
    import asyncio
    from storyflow.core import WorkflowEngine, config, validate
    from storyflow.core.workflow_io import load_from_file
    from storyflow.providers import provider_registry

    workflow = load_from_file("story.json")
    report = validate(workflow)
    if report.is_valid:
        provider = provider_registry.instantiate(config.provider_transport, config)
        result = asyncio.run(WorkflowEngine(provider, config).run(workflow))
"""

from storyflow.core.config import StoryflowConfig, config
from storyflow.core.engine import WorkflowEngine, WorkingDirectoryError
from storyflow.core.results import ExecutionResult, ExecutionStatus, InstructionOutcome
from storyflow.core.support import SupportLevel, classify
from storyflow.core.validator import ValidationReport, WorkflowValidationFailed, validate

__all__ = [
    "ExecutionResult",
    "ExecutionStatus",
    "InstructionOutcome",
    "StoryflowConfig",
    "SupportLevel",
    "ValidationReport",
    "WorkflowEngine",
    "WorkflowValidationFailed",
    "WorkingDirectoryError",
    "classify",
    "config",
    "validate",
]

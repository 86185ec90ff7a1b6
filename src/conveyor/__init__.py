"""Conveyor - sequential workflow runner with sandboxed code execution."""

__version__ = "0.1.0"

from conveyor.engine.dag import Workflow, parse, parse_dict, parse_yaml_string
from conveyor.engine.runner import RunHandle, WorkflowRunner
from conveyor.engine.tools import ToolRegistry, create_default_registry

__all__ = [
    "RunHandle",
    "ToolRegistry",
    "Workflow",
    "WorkflowRunner",
    "create_default_registry",
    "parse",
    "parse_dict",
    "parse_yaml_string",
    "__version__",
]

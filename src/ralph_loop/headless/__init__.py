from .engine import ANY_EVENT, ExitCode, HeadlessEngine
from .interrupt import InterruptMenu, MenuChoice
from .output import OUTPUT_FORMATS, OutputSink, create_output
from .requirements import RequirementsResult, check_requirements

__all__ = [
    "ANY_EVENT",
    "ExitCode",
    "HeadlessEngine",
    "InterruptMenu",
    "MenuChoice",
    "OUTPUT_FORMATS",
    "OutputSink",
    "RequirementsResult",
    "check_requirements",
    "create_output",
]

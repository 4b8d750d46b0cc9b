"""Previsbine: precombine and previs builds driven from the command line.

Key classes:
    PipelineController  - step state machine with resume and recovery
    StepLibrary         - the eight build steps
    ProcessSupervisor   - external tool launch, log scraping, timeouts
    ArchiveMergeEngine  - create or extract-merge-repack BA2 containers
    BuildConfiguration  - immutable per-run settings
"""

from .archive import ArchiveMergeEngine
from .config import BuildConfiguration, BuildMode, ConfigurationError
from .models import ErrorKind, StepResult
from .pipeline import PipelineController, PipelineOutcome, Recovery
from .runner import ProcessSupervisor
from .steps import StepLibrary

__version__ = "0.3.0"

__all__ = [
    "ArchiveMergeEngine",
    "BuildConfiguration",
    "BuildMode",
    "ConfigurationError",
    "ErrorKind",
    "PipelineController",
    "PipelineOutcome",
    "ProcessSupervisor",
    "Recovery",
    "StepLibrary",
    "StepResult",
]

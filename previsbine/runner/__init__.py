"""External process supervision for the previsbine pipeline.

Key pieces:
    ProcessSupervisor   - launch, poll, log scraping, timeout enforcement
    suspended_injectors - keeps shader injectors away from the Creation Kit
    markers             - versioned table of log signatures
"""

from .injection import restore_injectors, suspended_injectors
from .markers import MARKER_TABLE_VERSION
from .supervisor import ProcessSupervisor, read_log

__all__ = [
    "ProcessSupervisor",
    "read_log",
    "suspended_injectors",
    "restore_injectors",
    "MARKER_TABLE_VERSION",
]

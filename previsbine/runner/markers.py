"""Versioned table of log markers for the external tools.

The Creation Kit, xEdit and the archivers only report their state through
free-text log files. Every string the pipeline scrapes for lives here so a
new tool release only needs a table change. Bump ``MARKER_TABLE_VERSION``
whenever an entry is added, removed or reworded.
"""

from __future__ import annotations

from previsbine.models import ErrorKind, Marker

MARKER_TABLE_VERSION = 3

# ---------------------------------------------------------------------------
# Fatal markers: the process is killed as soon as one shows up in its log.
# ---------------------------------------------------------------------------

HANDLE_EXHAUSTION = Marker(
    name="handle-exhaustion",
    pattern=r"OUT OF HANDLE ARRAY ENTRIES",
    kind=ErrorKind.RESOURCE_EXHAUSTION,
    message="Creation Kit ran out of reference handles",
    remediation=(
        "Set bBSPointerHandleExtremly=true in CreationKitPlatformExtended.ini "
        "(or the equivalent option of your Creation Kit extender) and retry."
    ),
)

ACCESS_VIOLATION = Marker(
    name="access-violation",
    pattern=r"EXCEPTION_ACCESS_VIOLATION",
    kind=ErrorKind.CRASH,
    message="Creation Kit crashed with an access violation",
    remediation=(
        "Check the plugin for errors in xEdit, make sure no ENB/ReShade "
        "libraries are loaded by the Creation Kit and retry."
    ),
)

CREATION_KIT_FATAL: tuple[Marker, ...] = (HANDLE_EXHAUSTION, ACCESS_VIOLATION)

# ---------------------------------------------------------------------------
# Failure markers: the tool may exit 0, but the operation did not succeed.
# ---------------------------------------------------------------------------

PREVIS_INCOMPLETE = Marker(
    name="previs-incomplete",
    pattern=r"visibility task did not complete",
    message="Previs generation did not complete",
    remediation=(
        "Usually caused by broken precombines or missing meshes; "
        "rebuild precombines from step 1."
    ),
)

XEDIT_ERROR = Marker(
    name="xedit-error",
    pattern=r"^\s*Error: ",
    message="xEdit script reported an error",
    remediation="Open the xEdit log for the failing record and fix the plugin.",
)

# ---------------------------------------------------------------------------
# Completion markers: the tool announces it is done. Some tools linger after
# this line in automation mode, so the supervisor may terminate them.
# ---------------------------------------------------------------------------

XEDIT_COMPLETED = Marker(
    name="xedit-completed",
    pattern=r"Completed: No Errors\.",
    message="xEdit script completed",
)


def find_first(text: str, markers: tuple[Marker, ...]) -> tuple[Marker, str] | None:
    """Return the first marker found in *text* together with its matching line."""
    if not text:
        return None
    for marker in markers:
        line = marker.search(text)
        if line is not None:
            return marker, line
    return None

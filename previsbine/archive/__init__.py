"""BA2 container handling: archiver backends and the create/merge engine."""

from .backends import (
    Archive2Backend,
    ArchiveBackend,
    ArchiveBackendKind,
    BSArchBackend,
    create_backend,
)
from .engine import PRECOMBINE_MESH_DIR, VISIBILITY_DIR, ArchiveMergeEngine

__all__ = [
    "ArchiveBackend",
    "ArchiveBackendKind",
    "Archive2Backend",
    "BSArchBackend",
    "create_backend",
    "ArchiveMergeEngine",
    "PRECOMBINE_MESH_DIR",
    "VISIBILITY_DIR",
]

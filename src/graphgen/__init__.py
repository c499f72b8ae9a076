"""Knowledge-graph generation pipeline: export, submit, poll, map and persist."""

from __future__ import annotations

from .config import Settings
from .errors import (
    ConflictError,
    GraphGenError,
    GraphNotFoundError,
    MappingError,
    NotFoundError,
    UpstreamError,
    UpstreamTimeout,
    ValidationError,
)
from .models import GraphCluster, GraphEdge, GraphNode, GraphSnapshot, GraphStats
from .store import GraphSnapshotStore

__all__ = [
    "Settings",
    "GraphGenError",
    "ValidationError",
    "MappingError",
    "NotFoundError",
    "GraphNotFoundError",
    "ConflictError",
    "UpstreamError",
    "UpstreamTimeout",
    "GraphNode",
    "GraphEdge",
    "GraphCluster",
    "GraphStats",
    "GraphSnapshot",
    "GraphSnapshotStore",
    "GraphGenerationService",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "GraphGenerationService":
        from .service import GraphGenerationService

        return GraphGenerationService
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'graphgen' has no attribute {name}")

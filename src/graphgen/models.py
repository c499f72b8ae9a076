"""Graph entities persisted per user."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import ValidationError

EDGE_TYPE_HARD = "hard"
EDGE_TYPE_INSIGHT = "insight"
EDGE_TYPES = frozenset({EDGE_TYPE_HARD, EDGE_TYPE_INSIGHT})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def edge_key(user_id: str, source: int, target: int) -> str:
    """Return the natural key of a directed edge."""

    return f"{user_id}::{source}->{target}"


def _require_text(value: Any, name: str, entity: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{entity}.{name} is required", details={"field": name})


def _require_int(value: Any, name: str, entity: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{entity}.{name} must be an integer", details={"field": name})


@dataclass(slots=True)
class NodeKeyword:
    term: str
    score: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeKeyword":
        return cls(term=str(data.get("term", "")), score=float(data.get("score", 0.0)))


@dataclass(slots=True)
class GraphNode:
    """A conversation topic placed in the user's graph."""

    id: int
    user_id: str
    orig_id: str
    cluster_id: str
    cluster_name: str = ""
    timestamp: str | None = None
    num_messages: int = 0
    keywords: list[NodeKeyword] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def validate(self) -> None:
        _require_int(self.id, "id", "node")
        _require_text(self.user_id, "user_id", "node")
        _require_text(self.orig_id, "orig_id", "node")
        _require_text(self.cluster_id, "cluster_id", "node")
        _require_int(self.num_messages, "num_messages", "node")
        if self.num_messages < 0:
            raise ValidationError("node.num_messages must not be negative", details={"node_id": self.id})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphNode":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            orig_id=data.get("orig_id", ""),
            cluster_id=data.get("cluster_id", ""),
            cluster_name=data.get("cluster_name", ""),
            timestamp=data.get("timestamp"),
            num_messages=int(data.get("num_messages", 0)),
            keywords=[NodeKeyword.from_dict(item) for item in data.get("keywords") or []],
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphEdge:
    """A relation between two nodes of the same user."""

    user_id: str
    source: int
    target: int
    weight: float
    type: str
    intra_cluster: bool = False
    id: str = ""
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        if not self.id and isinstance(self.user_id, str):
            self.id = edge_key(self.user_id, self.source, self.target)

    def validate(self) -> None:
        _require_text(self.user_id, "user_id", "edge")
        _require_int(self.source, "source", "edge")
        _require_int(self.target, "target", "edge")
        if self.source == self.target:
            raise ValidationError(
                "edge.source and edge.target must differ",
                details={"source": self.source, "target": self.target},
            )
        if self.type not in EDGE_TYPES:
            raise ValidationError(f"edge.type must be one of {sorted(EDGE_TYPES)}", details={"type": self.type})
        if not 0.0 <= float(self.weight) <= 1.0:
            raise ValidationError("edge.weight must be within [0, 1]", details={"weight": self.weight})

    def touches(self, node_id: int) -> bool:
        return self.source == node_id or self.target == node_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphEdge":
        return cls(
            id=data.get("id", ""),
            user_id=data["user_id"],
            source=data["source"],
            target=data["target"],
            weight=float(data.get("weight", 0.0)),
            type=data.get("type", EDGE_TYPE_INSIGHT),
            intra_cluster=bool(data.get("intra_cluster", False)),
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphCluster:
    id: str
    user_id: str
    name: str
    description: str = ""
    size: int = 0
    themes: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def validate(self) -> None:
        _require_text(self.id, "id", "cluster")
        _require_text(self.user_id, "user_id", "cluster")
        _require_int(self.size, "size", "cluster")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphCluster":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            size=int(data.get("size", 0)),
            themes=[str(item) for item in data.get("themes") or []],
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphSubcluster:
    id: str
    user_id: str
    cluster_id: str
    node_ids: list[int] = field(default_factory=list)
    representative_node_id: int | None = None
    size: int = 0
    density: float = 0.0
    top_keywords: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def validate(self) -> None:
        _require_text(self.id, "id", "subcluster")
        _require_text(self.user_id, "user_id", "subcluster")
        _require_text(self.cluster_id, "cluster_id", "subcluster")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphSubcluster":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            cluster_id=data.get("cluster_id", ""),
            node_ids=[int(item) for item in data.get("node_ids") or []],
            representative_node_id=data.get("representative_node_id"),
            size=int(data.get("size", 0)),
            density=float(data.get("density", 0.0)),
            top_keywords=[str(item) for item in data.get("top_keywords") or []],
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphStats:
    """Cached aggregate for a user's graph, doubling as the generation status marker."""

    user_id: str
    node_count: int = 0
    edge_count: int = 0
    cluster_count: int = 0
    generated_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str | None = None
    task_id: str | None = None
    error: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphStats":
        return cls(
            user_id=data["user_id"],
            node_count=int(data.get("node_count", 0)),
            edge_count=int(data.get("edge_count", 0)),
            cluster_count=int(data.get("cluster_count", 0)),
            generated_at=data.get("generated_at"),
            metadata=dict(data.get("metadata") or {}),
            status=data.get("status"),
            task_id=data.get("task_id"),
            error=data.get("error"),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphSummary:
    """Narrative insight report generated from a stored graph."""

    user_id: str
    overview: dict[str, Any] = field(default_factory=dict)
    clusters: list[dict[str, Any]] = field(default_factory=list)
    patterns: list[dict[str, Any]] = field(default_factory=list)
    connections: list[dict[str, Any]] = field(default_factory=list)
    recommendations: list[dict[str, Any]] = field(default_factory=list)
    generated_at: str | None = None
    detail_level: str = "basic"
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def empty(cls, user_id: str) -> "GraphSummary":
        return cls(
            user_id=user_id,
            overview={
                "total_conversations": 0,
                "time_span": "N/A",
                "primary_interests": [],
                "conversation_style": "",
                "most_active_period": "N/A",
                "summary_text": "",
            },
            generated_at=utcnow_iso(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphSummary":
        return cls(
            user_id=data["user_id"],
            overview=dict(data.get("overview") or {}),
            clusters=list(data.get("clusters") or []),
            patterns=list(data.get("patterns") or []),
            connections=list(data.get("connections") or []),
            recommendations=list(data.get("recommendations") or []),
            generated_at=data.get("generated_at"),
            detail_level=data.get("detail_level") or "basic",
            updated_at=data.get("updated_at") or utcnow_iso(),
        )


@dataclass(slots=True)
class GraphSnapshot:
    """Full graph state for one user at one point in time."""

    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)
    clusters: list[GraphCluster] = field(default_factory=list)
    subclusters: list[GraphSubcluster] = field(default_factory=list)
    stats: GraphStats | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "clusters": [cluster.to_dict() for cluster in self.clusters],
            "subclusters": [subcluster.to_dict() for subcluster in self.subclusters],
            "stats": self.stats.to_dict() if self.stats else None,
        }


@dataclass(slots=True)
class TaskRecord:
    """Durable record of an engine task accepted for a user."""

    task_id: str
    user_id: str
    kind: str
    submitted_at: str = field(default_factory=utcnow_iso)
    status: str = "processing"
    updated_at: str = field(default_factory=utcnow_iso)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

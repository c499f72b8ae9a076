"""Translation between the engine's graph schema and the stored graph schema."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import MappingError
from .models import (
    EDGE_TYPE_HARD,
    EDGE_TYPE_INSIGHT,
    GraphCluster,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
    GraphStats,
    GraphSubcluster,
    NodeKeyword,
    utcnow_iso,
)


def classify_edge_type(confidence: Any) -> str:
    """Only a ``"high"`` confidence yields a hard edge."""

    if confidence == "high":
        return EDGE_TYPE_HARD
    return EDGE_TYPE_INSIGHT


def _field(item: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in item or item[key] is None:
        raise MappingError(f"{where} is missing '{key}'", details={"field": key, "where": where})
    return item[key]


def _as_int(value: Any, key: str, where: str) -> int:
    if isinstance(value, bool):
        raise MappingError(f"{where}.{key} must be an integer", details={"field": key, "where": where})
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise MappingError(f"{where}.{key} must be an integer", details={"field": key, "where": where})


def _as_float(value: Any, key: str, where: str) -> float:
    if isinstance(value, bool):
        raise MappingError(f"{where}.{key} must be numeric", details={"field": key, "where": where})
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MappingError(f"{where}.{key} must be numeric", details={"field": key, "where": where}) from exc


def _as_list(value: Any, key: str, where: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MappingError(f"{where}.{key} must be a list", details={"field": key, "where": where})
    return value


def _as_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise MappingError(f"{where} must be an object", details={"where": where})
    return value


def _map_node(item: Any, index: int, user_id: str, stamp: str) -> GraphNode:
    where = f"nodes[{index}]"
    item = _as_mapping(item, where)
    keywords = []
    for kw_index, keyword in enumerate(_as_list(item.get("keywords"), "keywords", where)):
        keyword = _as_mapping(keyword, f"{where}.keywords[{kw_index}]")
        keywords.append(
            NodeKeyword(
                term=str(_field(keyword, "term", f"{where}.keywords[{kw_index}]")),
                score=_as_float(keyword.get("score", 0.0), "score", f"{where}.keywords[{kw_index}]"),
            )
        )
    return GraphNode(
        id=_as_int(_field(item, "id", where), "id", where),
        user_id=user_id,
        orig_id=str(_field(item, "orig_id", where)),
        cluster_id=str(_field(item, "cluster_id", where)),
        cluster_name=str(item.get("cluster_name") or ""),
        timestamp=item.get("timestamp"),
        num_messages=_as_int(item.get("num_messages", 0), "num_messages", where),
        keywords=keywords,
        created_at=stamp,
        updated_at=stamp,
    )


def _map_edge(item: Any, index: int, user_id: str, stamp: str) -> GraphEdge:
    where = f"edges[{index}]"
    item = _as_mapping(item, where)
    source = _as_int(_field(item, "source", where), "source", where)
    target = _as_int(_field(item, "target", where), "target", where)
    if source == target:
        raise MappingError(f"{where} is a self-loop on node {source}", details={"where": where})
    return GraphEdge(
        user_id=user_id,
        source=source,
        target=target,
        weight=_as_float(item.get("weight", 0.0), "weight", where),
        type=classify_edge_type(item.get("confidence")),
        intra_cluster=bool(item.get("is_intra_cluster", False)),
        created_at=stamp,
        updated_at=stamp,
    )


def _map_cluster(cluster_id: Any, item: Any, user_id: str, stamp: str) -> GraphCluster:
    where = f"metadata.clusters[{cluster_id}]"
    item = _as_mapping(item, where)
    return GraphCluster(
        id=str(cluster_id),
        user_id=user_id,
        name=str(item.get("name") or ""),
        description=str(item.get("description") or ""),
        size=_as_int(item.get("size", 0), "size", where),
        themes=[str(theme) for theme in _as_list(item.get("key_themes"), "key_themes", where)],
        created_at=stamp,
        updated_at=stamp,
    )


def _map_subcluster(item: Any, index: int, user_id: str, stamp: str) -> GraphSubcluster:
    where = f"subclusters[{index}]"
    item = _as_mapping(item, where)
    representative = item.get("representative_node_id")
    return GraphSubcluster(
        id=str(_field(item, "id", where)),
        user_id=user_id,
        cluster_id=str(_field(item, "cluster_id", where)),
        node_ids=[_as_int(node_id, "node_ids", where) for node_id in _as_list(item.get("node_ids"), "node_ids", where)],
        representative_node_id=(
            _as_int(representative, "representative_node_id", where) if representative is not None else None
        ),
        size=_as_int(item.get("size", 0), "size", where),
        density=_as_float(item.get("density", 0.0), "density", where),
        top_keywords=[str(kw) for kw in _as_list(item.get("top_keywords"), "top_keywords", where)],
        created_at=stamp,
        updated_at=stamp,
    )


def map_engine_output(output: Any, user_id: str) -> GraphSnapshot:
    """Convert an engine result payload into a snapshot for ``user_id``.

    Pure: no I/O, deterministic for a given input. Raises ``MappingError``
    on any contract violation instead of returning a partial snapshot.
    """

    if not user_id:
        raise MappingError("user_id is required")
    output = _as_mapping(output, "engine output")
    metadata = _as_mapping(output.get("metadata") or {}, "metadata")
    generated_at = metadata.get("generated_at")
    stamp = str(generated_at) if generated_at else utcnow_iso()

    nodes = [
        _map_node(item, index, user_id, stamp)
        for index, item in enumerate(_as_list(output.get("nodes"), "nodes", "output"))
    ]
    seen: set[int] = set()
    for node in nodes:
        if node.id in seen:
            raise MappingError(f"Duplicate node id {node.id}", details={"node_id": node.id})
        seen.add(node.id)
    edges = [
        _map_edge(item, index, user_id, stamp)
        for index, item in enumerate(_as_list(output.get("edges"), "edges", "output"))
    ]
    clusters = [
        _map_cluster(cluster_id, item, user_id, stamp)
        for cluster_id, item in _as_mapping(metadata.get("clusters") or {}, "metadata.clusters").items()
    ]
    subclusters = [
        _map_subcluster(item, index, user_id, stamp)
        for index, item in enumerate(_as_list(output.get("subclusters"), "subclusters", "output"))
    ]

    stats_metadata: dict[str, Any] = {"source_generated_at": generated_at}
    if metadata.get("language"):
        stats_metadata["language"] = metadata["language"]
    stats = GraphStats(
        user_id=user_id,
        node_count=_as_int(metadata.get("total_nodes", len(nodes)), "total_nodes", "metadata"),
        edge_count=_as_int(metadata.get("total_edges", len(edges)), "total_edges", "metadata"),
        cluster_count=_as_int(metadata.get("total_clusters", len(clusters)), "total_clusters", "metadata"),
        generated_at=stamp,
        metadata=stats_metadata,
        updated_at=stamp,
    )
    return GraphSnapshot(nodes=nodes, edges=edges, clusters=clusters, subclusters=subclusters, stats=stats)


def snapshot_to_engine_input(snapshot: GraphSnapshot, *, language: str | None = None) -> dict[str, Any]:
    """Rebuild the engine's graph schema from a stored snapshot (for summaries)."""

    cluster_names = {cluster.id: cluster.name for cluster in snapshot.clusters}
    nodes = [
        {
            "id": node.id,
            "orig_id": node.orig_id,
            "cluster_id": node.cluster_id,
            "cluster_name": node.cluster_name or cluster_names.get(node.cluster_id, ""),
            "keywords": [{"term": kw.term, "score": kw.score} for kw in node.keywords],
            "top_keywords": [kw.term for kw in node.keywords],
            "timestamp": node.timestamp,
            "num_messages": node.num_messages,
        }
        for node in snapshot.nodes
    ]
    edges = [
        {
            "source": edge.source,
            "target": edge.target,
            "weight": edge.weight,
            "type": edge.type,
            "is_intra_cluster": edge.intra_cluster,
        }
        for edge in snapshot.edges
    ]
    clusters = {
        cluster.id: {
            "name": cluster.name,
            "description": cluster.description,
            "size": cluster.size,
            "key_themes": list(cluster.themes),
        }
        for cluster in snapshot.clusters
    }
    subclusters = [
        {
            "id": subcluster.id,
            "cluster_id": subcluster.cluster_id,
            "node_ids": list(subcluster.node_ids),
            "representative_node_id": subcluster.representative_node_id,
            "size": subcluster.size or len(subcluster.node_ids),
            "density": subcluster.density,
            "top_keywords": list(subcluster.top_keywords),
        }
        for subcluster in snapshot.subclusters
    ]
    metadata: dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_nodes": len(nodes),
        "total_edges": len(edges),
        "total_clusters": len(clusters),
        "clusters": clusters,
    }
    if language:
        metadata["language"] = language
    return {"nodes": nodes, "edges": edges, "subclusters": subclusters, "metadata": metadata}

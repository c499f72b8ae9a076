"""Per-user graph persistence backed by SQLite.

Every entity is stored as a JSON document keyed by ``(user_id, entity_id)``.
Multi-entity writes (snapshot persistence, cascade deletes, graph wipes) run
inside a single ``BEGIN IMMEDIATE`` transaction so partial application is
never visible. Soft-deleted rows carry ``deleted_at`` and are hidden from
every read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence, TYPE_CHECKING

from .errors import (
    NotFoundError,
    StoreNotConfiguredError,
    UpstreamError,
    ValidationError,
)
from .models import (
    GraphCluster,
    GraphEdge,
    GraphNode,
    GraphSnapshot,
    GraphStats,
    GraphSubcluster,
    GraphSummary,
    NodeKeyword,
    TaskRecord,
    edge_key,
    utcnow_iso,
)

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

_SERVICE = "graph-store"
_OPEN_TASK_STATUSES = ("processing",)
_NODE_PATCH_FIELDS = frozenset(
    {"orig_id", "cluster_id", "cluster_name", "timestamp", "num_messages", "keywords"}
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS graph_nodes (
        user_id TEXT NOT NULL,
        node_id INTEGER NOT NULL,
        cluster_id TEXT NOT NULL,
        doc TEXT NOT NULL,
        deleted_at TEXT,
        PRIMARY KEY (user_id, node_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_graph_nodes_cluster ON graph_nodes (user_id, cluster_id)",
    """
    CREATE TABLE IF NOT EXISTS graph_edges (
        user_id TEXT NOT NULL,
        edge_id TEXT NOT NULL,
        source INTEGER NOT NULL,
        target INTEGER NOT NULL,
        doc TEXT NOT NULL,
        deleted_at TEXT,
        PRIMARY KEY (user_id, edge_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_graph_edges_source ON graph_edges (user_id, source)",
    "CREATE INDEX IF NOT EXISTS idx_graph_edges_target ON graph_edges (user_id, target)",
    """
    CREATE TABLE IF NOT EXISTS graph_clusters (
        user_id TEXT NOT NULL,
        cluster_id TEXT NOT NULL,
        doc TEXT NOT NULL,
        deleted_at TEXT,
        PRIMARY KEY (user_id, cluster_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_subclusters (
        user_id TEXT NOT NULL,
        subcluster_id TEXT NOT NULL,
        cluster_id TEXT NOT NULL,
        doc TEXT NOT NULL,
        deleted_at TEXT,
        PRIMARY KEY (user_id, subcluster_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_stats (
        user_id TEXT PRIMARY KEY,
        doc TEXT NOT NULL,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_summaries (
        user_id TEXT PRIMARY KEY,
        doc TEXT NOT NULL,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_tasks (
        task_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        submitted_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_graph_tasks_status ON graph_tasks (status)",
    """
    CREATE TABLE IF NOT EXISTS graph_leases (
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        owner TEXT NOT NULL,
        expires_at REAL NOT NULL,
        PRIMARY KEY (user_id, kind)
    )
    """,
)

# Tables holding the node/edge/cluster set, in cascade order.
_GRAPH_TABLES = ("graph_edges", "graph_nodes", "graph_subclusters", "graph_clusters", "graph_stats")


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _patch_keywords(value: Any) -> list[NodeKeyword]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError("node.keywords must be a list", details={"field": "keywords"})
    keywords: list[NodeKeyword] = []
    for index, item in enumerate(value):
        if isinstance(item, NodeKeyword):
            keywords.append(item)
            continue
        score = item.get("score", 0.0) if isinstance(item, dict) else None
        if (
            not isinstance(item, dict)
            or not isinstance(item.get("term"), str)
            or isinstance(score, bool)
            or not isinstance(score, (int, float))
        ):
            raise ValidationError(
                f"node.keywords[{index}] must be an object with a text term and a numeric score",
                details={"field": "keywords", "index": index},
            )
        keywords.append(NodeKeyword(term=item["term"], score=float(score)))
    return keywords


class GraphSnapshotStore:
    """Transactional CRUD over nodes, edges, clusters, subclusters, stats and summaries."""

    def __init__(self, db_path: Path | str, *, metrics: MetricsRecorder | None = None) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._metrics = metrics
        self._closed = False
        self._write_lock = threading.Lock()
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Refuse further operations; later calls raise ``StoreNotConfiguredError``."""

        self._closed = True

    # ------------------------------------------------------------------
    # connection handling

    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreNotConfiguredError("Graph store is closed. Cannot start a transaction")
        try:
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as exc:
            raise UpstreamError(f"Graph store unavailable: {exc}", service=_SERVICE) from exc
        return conn

    def _ensure_schema(self) -> None:
        with self._read() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise UpstreamError(f"Graph store read failed: {exc}", service=_SERVICE) from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with self._write_lock:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("graph.store.transaction_failed op=%s error=%s", operation, exc)
            raise UpstreamError(
                f"Graph store transaction '{operation}' aborted: {exc}",
                service=_SERVICE,
                details={"operation": operation},
            ) from exc
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # row writers shared by single upserts and snapshot persistence

    @staticmethod
    def _check_owner(user_id: str, entity_user_id: str, entity: str) -> None:
        if not user_id:
            raise ValidationError("user_id is required")
        if entity_user_id != user_id:
            raise ValidationError(
                f"{entity} belongs to a different user",
                details={"expected": user_id, "actual": entity_user_id},
            )

    def _write_node(self, conn: sqlite3.Connection, user_id: str, node: GraphNode) -> None:
        node.validate()
        self._check_owner(user_id, node.user_id, "node")
        node.updated_at = utcnow_iso()
        conn.execute(
            """
            INSERT INTO graph_nodes (user_id, node_id, cluster_id, doc, deleted_at)
            VALUES (?, ?, ?, ?, NULL)
            ON CONFLICT(user_id, node_id) DO UPDATE SET
                cluster_id = excluded.cluster_id,
                doc = excluded.doc,
                deleted_at = NULL
            """,
            (user_id, node.id, node.cluster_id, _dumps(node.to_dict())),
        )

    def _write_edge(self, conn: sqlite3.Connection, user_id: str, edge: GraphEdge) -> None:
        edge.validate()
        self._check_owner(user_id, edge.user_id, "edge")
        if not edge.id:
            edge.id = edge_key(user_id, edge.source, edge.target)
        edge.updated_at = utcnow_iso()
        conn.execute(
            """
            INSERT INTO graph_edges (user_id, edge_id, source, target, doc, deleted_at)
            VALUES (?, ?, ?, ?, ?, NULL)
            ON CONFLICT(user_id, edge_id) DO UPDATE SET
                source = excluded.source,
                target = excluded.target,
                doc = excluded.doc,
                deleted_at = NULL
            """,
            (user_id, edge.id, edge.source, edge.target, _dumps(edge.to_dict())),
        )

    def _write_cluster(self, conn: sqlite3.Connection, user_id: str, cluster: GraphCluster) -> None:
        cluster.validate()
        self._check_owner(user_id, cluster.user_id, "cluster")
        cluster.updated_at = utcnow_iso()
        conn.execute(
            """
            INSERT INTO graph_clusters (user_id, cluster_id, doc, deleted_at)
            VALUES (?, ?, ?, NULL)
            ON CONFLICT(user_id, cluster_id) DO UPDATE SET doc = excluded.doc, deleted_at = NULL
            """,
            (user_id, cluster.id, _dumps(cluster.to_dict())),
        )

    def _write_subcluster(self, conn: sqlite3.Connection, user_id: str, subcluster: GraphSubcluster) -> None:
        subcluster.validate()
        self._check_owner(user_id, subcluster.user_id, "subcluster")
        subcluster.updated_at = utcnow_iso()
        conn.execute(
            """
            INSERT INTO graph_subclusters (user_id, subcluster_id, cluster_id, doc, deleted_at)
            VALUES (?, ?, ?, ?, NULL)
            ON CONFLICT(user_id, subcluster_id) DO UPDATE SET
                cluster_id = excluded.cluster_id,
                doc = excluded.doc,
                deleted_at = NULL
            """,
            (user_id, subcluster.id, subcluster.cluster_id, _dumps(subcluster.to_dict())),
        )

    def _write_stats(self, conn: sqlite3.Connection, user_id: str, stats: GraphStats) -> None:
        self._check_owner(user_id, stats.user_id, "stats")
        stats.updated_at = utcnow_iso()
        conn.execute(
            """
            INSERT INTO graph_stats (user_id, doc, deleted_at) VALUES (?, ?, NULL)
            ON CONFLICT(user_id) DO UPDATE SET doc = excluded.doc, deleted_at = NULL
            """,
            (user_id, _dumps(stats.to_dict())),
        )

    @staticmethod
    def _delete_edges_touching(conn: sqlite3.Connection, user_id: str, node_ids: Sequence[int]) -> int:
        if not node_ids:
            return 0
        marks = _placeholders(len(node_ids))
        cursor = conn.execute(
            f"DELETE FROM graph_edges WHERE user_id = ? AND (source IN ({marks}) OR target IN ({marks}))",
            (user_id, *node_ids, *node_ids),
        )
        return cursor.rowcount

    @staticmethod
    def _delete_nodes_by_id(conn: sqlite3.Connection, user_id: str, node_ids: Sequence[int]) -> int:
        if not node_ids:
            return 0
        cursor = conn.execute(
            f"DELETE FROM graph_nodes WHERE user_id = ? AND node_id IN ({_placeholders(len(node_ids))})",
            (user_id, *node_ids),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # nodes

    def upsert_node(self, user_id: str, node: GraphNode) -> GraphNode:
        with self._transaction("upsert_node") as conn:
            self._write_node(conn, user_id, node)
        return node

    def find_node(self, user_id: str, node_id: int) -> GraphNode | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT doc FROM graph_nodes WHERE user_id = ? AND node_id = ? AND deleted_at IS NULL",
                (user_id, node_id),
            ).fetchone()
        return GraphNode.from_dict(json.loads(row["doc"])) if row else None

    def list_nodes(self, user_id: str) -> list[GraphNode]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT doc FROM graph_nodes WHERE user_id = ? AND deleted_at IS NULL ORDER BY node_id",
                (user_id,),
            ).fetchall()
        return [GraphNode.from_dict(json.loads(row["doc"])) for row in rows]

    def list_nodes_by_cluster(self, user_id: str, cluster_id: str) -> list[GraphNode]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT doc FROM graph_nodes
                WHERE user_id = ? AND cluster_id = ? AND deleted_at IS NULL
                ORDER BY node_id
                """,
                (user_id, cluster_id),
            ).fetchall()
        return [GraphNode.from_dict(json.loads(row["doc"])) for row in rows]

    def update_node(self, user_id: str, node_id: int, patch: dict[str, Any]) -> GraphNode:
        """Apply a partial update to an existing node."""

        unknown = set(patch) - _NODE_PATCH_FIELDS
        if unknown:
            raise ValidationError(
                f"Unsupported node fields: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )
        with self._transaction("update_node") as conn:
            row = conn.execute(
                "SELECT doc FROM graph_nodes WHERE user_id = ? AND node_id = ? AND deleted_at IS NULL",
                (user_id, node_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Node {node_id} not found", details={"node_id": node_id})
            node = GraphNode.from_dict(json.loads(row["doc"]))
            for key, value in patch.items():
                if key == "keywords":
                    value = _patch_keywords(value)
                setattr(node, key, value)
            self._write_node(conn, user_id, node)
        return node

    def delete_node(self, user_id: str, node_id: int) -> bool:
        """Delete a node together with every edge touching it."""

        with self._transaction("delete_node") as conn:
            edges = self._delete_edges_touching(conn, user_id, [node_id])
            nodes = self._delete_nodes_by_id(conn, user_id, [node_id])
        logger.info("graph.node.deleted user=%s node=%s edges=%s", user_id, node_id, edges)
        return nodes > 0

    def delete_nodes(self, user_id: str, node_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(node_ids))
        with self._transaction("delete_nodes") as conn:
            self._delete_edges_touching(conn, user_id, ids)
            return self._delete_nodes_by_id(conn, user_id, ids)

    # ------------------------------------------------------------------
    # edges

    def upsert_edge(self, user_id: str, edge: GraphEdge) -> GraphEdge:
        with self._transaction("upsert_edge") as conn:
            self._write_edge(conn, user_id, edge)
        return edge

    def list_edges(self, user_id: str) -> list[GraphEdge]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT doc FROM graph_edges WHERE user_id = ? AND deleted_at IS NULL ORDER BY edge_id",
                (user_id,),
            ).fetchall()
        return [GraphEdge.from_dict(json.loads(row["doc"])) for row in rows]

    def delete_edge(self, user_id: str, edge_id: str) -> bool:
        with self._transaction("delete_edge") as conn:
            cursor = conn.execute(
                "DELETE FROM graph_edges WHERE user_id = ? AND edge_id = ?",
                (user_id, edge_id),
            )
        return cursor.rowcount > 0

    def delete_edge_between(self, user_id: str, source: int, target: int) -> int:
        """Delete edges between two nodes in both directions."""

        with self._transaction("delete_edge_between") as conn:
            cursor = conn.execute(
                """
                DELETE FROM graph_edges
                WHERE user_id = ?
                  AND ((source = ? AND target = ?) OR (source = ? AND target = ?))
                """,
                (user_id, source, target, target, source),
            )
        return cursor.rowcount

    def delete_edges_by_node_ids(self, user_id: str, node_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(node_ids))
        with self._transaction("delete_edges_by_node_ids") as conn:
            return self._delete_edges_touching(conn, user_id, ids)

    # ------------------------------------------------------------------
    # clusters and subclusters

    def upsert_cluster(self, user_id: str, cluster: GraphCluster) -> GraphCluster:
        with self._transaction("upsert_cluster") as conn:
            self._write_cluster(conn, user_id, cluster)
        return cluster

    def find_cluster(self, user_id: str, cluster_id: str) -> GraphCluster | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT doc FROM graph_clusters WHERE user_id = ? AND cluster_id = ? AND deleted_at IS NULL",
                (user_id, cluster_id),
            ).fetchone()
        return GraphCluster.from_dict(json.loads(row["doc"])) if row else None

    def list_clusters(self, user_id: str) -> list[GraphCluster]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT doc FROM graph_clusters WHERE user_id = ? AND deleted_at IS NULL ORDER BY cluster_id",
                (user_id,),
            ).fetchall()
        return [GraphCluster.from_dict(json.loads(row["doc"])) for row in rows]

    def delete_cluster(self, user_id: str, cluster_id: str) -> dict[str, int]:
        """Delete a cluster with its member nodes, their edges and its subclusters."""

        with self._transaction("delete_cluster") as conn:
            rows = conn.execute(
                "SELECT node_id FROM graph_nodes WHERE user_id = ? AND cluster_id = ?",
                (user_id, cluster_id),
            ).fetchall()
            node_ids = [row["node_id"] for row in rows]
            edges = self._delete_edges_touching(conn, user_id, node_ids)
            nodes = self._delete_nodes_by_id(conn, user_id, node_ids)
            subclusters = conn.execute(
                "DELETE FROM graph_subclusters WHERE user_id = ? AND cluster_id = ?",
                (user_id, cluster_id),
            ).rowcount
            clusters = conn.execute(
                "DELETE FROM graph_clusters WHERE user_id = ? AND cluster_id = ?",
                (user_id, cluster_id),
            ).rowcount
        counts = {"clusters": clusters, "nodes": nodes, "edges": edges, "subclusters": subclusters}
        logger.info(
            "graph.cluster.deleted user=%s cluster=%s nodes=%s edges=%s",
            user_id,
            cluster_id,
            nodes,
            edges,
        )
        return counts

    def upsert_subcluster(self, user_id: str, subcluster: GraphSubcluster) -> GraphSubcluster:
        with self._transaction("upsert_subcluster") as conn:
            self._write_subcluster(conn, user_id, subcluster)
        return subcluster

    def list_subclusters(self, user_id: str, cluster_id: str | None = None) -> list[GraphSubcluster]:
        query = "SELECT doc FROM graph_subclusters WHERE user_id = ? AND deleted_at IS NULL"
        params: list[Any] = [user_id]
        if cluster_id is not None:
            query += " AND cluster_id = ?"
            params.append(cluster_id)
        with self._read() as conn:
            rows = conn.execute(query + " ORDER BY subcluster_id", params).fetchall()
        return [GraphSubcluster.from_dict(json.loads(row["doc"])) for row in rows]

    def delete_subcluster(self, user_id: str, subcluster_id: str) -> bool:
        with self._transaction("delete_subcluster") as conn:
            cursor = conn.execute(
                "DELETE FROM graph_subclusters WHERE user_id = ? AND subcluster_id = ?",
                (user_id, subcluster_id),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # stats

    def save_stats(self, user_id: str, stats: GraphStats) -> GraphStats:
        with self._transaction("save_stats") as conn:
            self._write_stats(conn, user_id, stats)
        return stats

    def get_stats(self, user_id: str) -> GraphStats:
        """Return the stats document, or zero counts when none exists."""

        with self._read() as conn:
            row = conn.execute(
                "SELECT doc FROM graph_stats WHERE user_id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        if row is None:
            return GraphStats(user_id=user_id)
        return GraphStats.from_dict(json.loads(row["doc"]))

    def delete_stats(self, user_id: str) -> bool:
        with self._transaction("delete_stats") as conn:
            cursor = conn.execute("DELETE FROM graph_stats WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0

    def mark_generation_status(
        self,
        user_id: str,
        status: str,
        *,
        task_id: str | None = None,
        error: str | None = None,
    ) -> GraphStats:
        """Update only the status marker fields of the stats document.

        A soft-deleted document keeps its counts and stays deleted.
        """

        with self._transaction("mark_generation_status") as conn:
            row = conn.execute(
                "SELECT doc, deleted_at FROM graph_stats WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            stats = GraphStats.from_dict(json.loads(row["doc"])) if row else GraphStats(user_id=user_id)
            stats.status = status
            if task_id is not None:
                stats.task_id = task_id
            stats.error = error
            if row is not None and row["deleted_at"] is not None:
                stats.updated_at = utcnow_iso()
                conn.execute(
                    "UPDATE graph_stats SET doc = ? WHERE user_id = ?",
                    (_dumps(stats.to_dict()), user_id),
                )
            else:
                self._write_stats(conn, user_id, stats)
        return stats

    # ------------------------------------------------------------------
    # snapshot

    def persist_snapshot(self, user_id: str, snapshot: GraphSnapshot) -> GraphStats:
        """Write a whole snapshot atomically.

        Any invalid entity aborts the transaction; nothing from the snapshot
        becomes visible.
        """

        started = time.perf_counter()
        stats = snapshot.stats or GraphStats(user_id=user_id)
        if not snapshot.stats:
            stats.node_count = len(snapshot.nodes)
            stats.edge_count = len(snapshot.edges)
            stats.cluster_count = len(snapshot.clusters)
            stats.generated_at = utcnow_iso()

        with self._transaction("persist_snapshot") as conn:
            for node in snapshot.nodes:
                self._write_node(conn, user_id, node)
            for edge in snapshot.edges:
                self._write_edge(conn, user_id, edge)
            for cluster in snapshot.clusters:
                self._write_cluster(conn, user_id, cluster)
            for subcluster in snapshot.subclusters:
                self._write_subcluster(conn, user_id, subcluster)
            self._write_stats(conn, user_id, stats)

        elapsed = time.perf_counter() - started
        logger.info(
            "graph.snapshot.persisted user=%s nodes=%s edges=%s clusters=%s duration_ms=%.1f",
            user_id,
            len(snapshot.nodes),
            len(snapshot.edges),
            len(snapshot.clusters),
            elapsed * 1000.0,
        )
        if self._metrics:
            self._metrics.increment("graph.snapshot.persisted")
            self._metrics.record_timing("graph.snapshot.persist_duration", elapsed)
        return stats

    def get_snapshot_for_user(self, user_id: str) -> GraphSnapshot:
        return GraphSnapshot(
            nodes=self.list_nodes(user_id),
            edges=self.list_edges(user_id),
            clusters=self.list_clusters(user_id),
            subclusters=self.list_subclusters(user_id),
            stats=self.get_stats(user_id),
        )

    def delete_all_graph_data(self, user_id: str, *, permanent: bool = True) -> dict[str, int]:
        """Wipe (or soft delete) the user's nodes, edges, clusters, subclusters and stats."""

        counts: dict[str, int] = {}
        with self._transaction("delete_all_graph_data") as conn:
            if permanent:
                for table in _GRAPH_TABLES:
                    counts[table] = conn.execute(
                        f"DELETE FROM {table} WHERE user_id = ?", (user_id,)
                    ).rowcount
            else:
                deleted_at = utcnow_iso()
                for table in _GRAPH_TABLES:
                    counts[table] = conn.execute(
                        f"UPDATE {table} SET deleted_at = ? WHERE user_id = ? AND deleted_at IS NULL",
                        (deleted_at, user_id),
                    ).rowcount
        logger.info("graph.data.deleted user=%s permanent=%s counts=%s", user_id, permanent, counts)
        return counts

    def restore_graph(self, user_id: str) -> int:
        """Clear soft-delete markers on the user's graph; returns the rows restored."""

        restored = 0
        with self._transaction("restore_graph") as conn:
            for table in _GRAPH_TABLES:
                restored += conn.execute(
                    f"UPDATE {table} SET deleted_at = NULL WHERE user_id = ? AND deleted_at IS NOT NULL",
                    (user_id,),
                ).rowcount
        logger.info("graph.data.restored user=%s rows=%s", user_id, restored)
        return restored

    # ------------------------------------------------------------------
    # summary

    def upsert_graph_summary(self, user_id: str, summary: GraphSummary) -> GraphSummary:
        self._check_owner(user_id, summary.user_id, "summary")
        summary.updated_at = utcnow_iso()
        with self._transaction("upsert_graph_summary") as conn:
            conn.execute(
                """
                INSERT INTO graph_summaries (user_id, doc, deleted_at) VALUES (?, ?, NULL)
                ON CONFLICT(user_id) DO UPDATE SET doc = excluded.doc, deleted_at = NULL
                """,
                (user_id, _dumps(summary.to_dict())),
            )
        return summary

    def get_graph_summary(self, user_id: str) -> GraphSummary:
        with self._read() as conn:
            row = conn.execute(
                "SELECT doc FROM graph_summaries WHERE user_id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        if row is None:
            return GraphSummary.empty(user_id)
        return GraphSummary.from_dict(json.loads(row["doc"]))

    def delete_graph_summary(self, user_id: str, *, permanent: bool = False) -> bool:
        with self._transaction("delete_graph_summary") as conn:
            if permanent:
                cursor = conn.execute("DELETE FROM graph_summaries WHERE user_id = ?", (user_id,))
            else:
                cursor = conn.execute(
                    "UPDATE graph_summaries SET deleted_at = ? WHERE user_id = ? AND deleted_at IS NULL",
                    (utcnow_iso(), user_id),
                )
        return cursor.rowcount > 0

    def restore_graph_summary(self, user_id: str) -> bool:
        with self._transaction("restore_graph_summary") as conn:
            cursor = conn.execute(
                "UPDATE graph_summaries SET deleted_at = NULL WHERE user_id = ? AND deleted_at IS NOT NULL",
                (user_id,),
            )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # durable task records

    def record_task(self, task: TaskRecord) -> TaskRecord:
        with self._transaction("record_task") as conn:
            conn.execute(
                """
                INSERT INTO graph_tasks (task_id, user_id, kind, status, submitted_at, updated_at, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    error = excluded.error
                """,
                (
                    task.task_id,
                    task.user_id,
                    task.kind,
                    task.status,
                    task.submitted_at,
                    task.updated_at,
                    task.error,
                ),
            )
        return task

    def finish_task(self, task_id: str, status: str, *, error: str | None = None) -> None:
        with self._transaction("finish_task") as conn:
            conn.execute(
                "UPDATE graph_tasks SET status = ?, error = ?, updated_at = ? WHERE task_id = ?",
                (status, error, utcnow_iso(), task_id),
            )

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM graph_tasks WHERE task_id = ?", (task_id,)).fetchone()
        return self._task_from_row(row) if row else None

    def list_open_tasks(self) -> list[TaskRecord]:
        with self._read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM graph_tasks
                WHERE status IN ({_placeholders(len(_OPEN_TASK_STATUSES))})
                ORDER BY submitted_at, rowid
                """,
                _OPEN_TASK_STATUSES,
            ).fetchall()
        return [self._task_from_row(row) for row in rows]

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            user_id=row["user_id"],
            kind=row["kind"],
            status=row["status"],
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
            error=row["error"],
        )

    # ------------------------------------------------------------------
    # leases

    def acquire_lease(
        self,
        user_id: str,
        kind: str,
        owner: str,
        ttl_seconds: float,
        *,
        now: float | None = None,
    ) -> bool:
        """Take the (user, kind) lease unless an unexpired one exists."""

        current = time.time() if now is None else now
        with self._transaction("acquire_lease") as conn:
            conn.execute(
                "DELETE FROM graph_leases WHERE user_id = ? AND kind = ? AND expires_at <= ?",
                (user_id, kind, current),
            )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO graph_leases (user_id, kind, owner, expires_at) VALUES (?, ?, ?, ?)",
                (user_id, kind, owner, current + ttl_seconds),
            )
        return cursor.rowcount == 1

    def release_lease(self, user_id: str, kind: str, owner: str | None = None) -> bool:
        query = "DELETE FROM graph_leases WHERE user_id = ? AND kind = ?"
        params: list[Any] = [user_id, kind]
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        with self._transaction("release_lease") as conn:
            cursor = conn.execute(query, params)
        return cursor.rowcount > 0

    def has_lease(self, user_id: str, kind: str, *, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        with self._read() as conn:
            row = conn.execute(
                "SELECT 1 FROM graph_leases WHERE user_id = ? AND kind = ? AND expires_at > ?",
                (user_id, kind, current),
            ).fetchone()
        return row is not None

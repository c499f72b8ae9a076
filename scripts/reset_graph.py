"""Delete (or soft delete) a user's stored knowledge graph."""

from __future__ import annotations

import argparse

from graphgen import GraphSnapshotStore, Settings


def main(user_id: str, *, permanent: bool, include_summary: bool, dry_run: bool) -> None:
    settings = Settings.from_env()
    store = GraphSnapshotStore(settings.graph_db_file())

    stats = store.get_stats(user_id)
    if dry_run:
        print(
            f"Would delete graph for {user_id}: "
            f"{stats.node_count} nodes, {stats.edge_count} edges, {stats.cluster_count} clusters"
        )
        return

    counts = store.delete_all_graph_data(user_id, permanent=permanent)
    mode = "Deleted" if permanent else "Soft deleted"
    for table, count in counts.items():
        print(f"{mode} {count} rows from {table}")
    if include_summary and store.delete_graph_summary(user_id, permanent=permanent):
        print(f"{mode} graph summary")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("user_id", help="User whose graph should be removed")
    parser.add_argument(
        "--soft",
        action="store_true",
        help="Mark rows as deleted so they can be restored later",
    )
    parser.add_argument(
        "--include-summary",
        action="store_true",
        help="Remove the graph summary as well",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be removed without deleting anything",
    )
    args = parser.parse_args()
    main(
        args.user_id,
        permanent=not args.soft,
        include_summary=args.include_summary,
        dry_run=args.dry_run,
    )

from __future__ import annotations

import copy

import pytest

from graphgen.errors import MappingError
from graphgen.mapper import classify_edge_type, map_engine_output, snapshot_to_engine_input


def test_maps_nodes_edges_clusters_and_stats(engine_output) -> None:
    snapshot = map_engine_output(engine_output, "user-1")

    assert len(snapshot.nodes) == 5
    node = snapshot.nodes[0]
    assert node.id == 1
    assert node.user_id == "user-1"
    assert node.orig_id == "c1"
    assert node.cluster_id == "cluster_1"
    assert node.timestamp == "2025-01-01T10:00:00Z"
    assert node.num_messages == 2
    assert node.keywords[0].term == "kw1"

    assert [edge.type for edge in snapshot.edges] == ["hard", "hard", "insight", "insight"]
    assert snapshot.edges[0].id == "user-1::1->2"
    assert snapshot.edges[2].intra_cluster is False

    clusters = {cluster.id: cluster for cluster in snapshot.clusters}
    assert set(clusters) == {"cluster_1", "cluster_2"}
    assert clusters["cluster_1"].themes == ["baking", "knives", "spices"]
    assert clusters["cluster_1"].size == 3
    assert clusters["cluster_2"].description == "Trips and planning"

    assert snapshot.subclusters[0].node_ids == [1, 2]
    assert snapshot.stats is not None
    assert (snapshot.stats.node_count, snapshot.stats.edge_count, snapshot.stats.cluster_count) == (5, 4, 2)
    assert snapshot.stats.generated_at == "2025-01-10T12:00:00+00:00"
    assert snapshot.stats.metadata["source_generated_at"] == "2025-01-10T12:00:00+00:00"


def test_mapping_is_deterministic_and_does_not_mutate_input(engine_output) -> None:
    original = copy.deepcopy(engine_output)

    first = map_engine_output(engine_output, "user-1")
    second = map_engine_output(engine_output, "user-1")

    assert first.to_dict() == second.to_dict()
    assert engine_output == original


def test_engine_type_field_is_ignored(engine_output) -> None:
    engine_output["edges"] = [
        {"source": 1, "target": 2, "weight": 0.3, "type": "hard", "confidence": "low"},
    ]

    snapshot = map_engine_output(engine_output, "user-1")

    assert snapshot.edges[0].type == "insight"


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [
        ("high", "hard"),
        ("medium", "insight"),
        ("low", "insight"),
        (None, "insight"),
        (0.95, "insight"),
        ("", "insight"),
        ("High", "insight"),
        (" high ", "insight"),
    ],
)
def test_classify_edge_type(confidence, expected: str) -> None:
    assert classify_edge_type(confidence) == expected


def test_missing_node_field_fails_loudly(engine_output) -> None:
    del engine_output["nodes"][2]["orig_id"]

    with pytest.raises(MappingError) as excinfo:
        map_engine_output(engine_output, "user-1")

    assert excinfo.value.details["field"] == "orig_id"


@pytest.mark.parametrize(
    "mutate",
    [
        lambda output: output.update(nodes={"not": "a list"}),
        lambda output: output["edges"][0].update(source="abc"),
        lambda output: output["edges"][0].update(target=1),
        lambda output: output["metadata"].update(clusters=["cluster_1"]),
        lambda output: output["nodes"].append(dict(output["nodes"][0])),
    ],
)
def test_malformed_output_raises_mapping_error(engine_output, mutate) -> None:
    mutate(engine_output)

    with pytest.raises(MappingError):
        map_engine_output(engine_output, "user-1")


def test_snapshot_converts_back_to_engine_schema(engine_output) -> None:
    snapshot = map_engine_output(engine_output, "user-1")

    graph = snapshot_to_engine_input(snapshot, language="ko")

    assert [node["id"] for node in graph["nodes"]] == [1, 2, 3, 4, 5]
    assert graph["nodes"][0]["top_keywords"] == ["kw1"]
    assert graph["edges"][0] == {
        "source": 1,
        "target": 2,
        "weight": 0.9,
        "type": "hard",
        "is_intra_cluster": True,
    }
    assert graph["metadata"]["clusters"]["cluster_1"]["key_themes"] == ["baking", "knives", "spices"]
    assert graph["metadata"]["total_nodes"] == 5
    assert graph["metadata"]["language"] == "ko"
    assert graph["subclusters"][0]["representative_node_id"] == 1

from datetime import datetime, timezone

import pytest

from regenerator.api.mesh import (
    ANALYZE_HEALTH,
    BUILD_MESH,
    HEALTH_RESULT,
    MESH_RESULT,
    MeshError,
    MeshWorker,
    build_mesh,
    find_neighbors,
    format_inventory,
    handle_message,
)
from regenerator.api.models import PageRecord


def _pages():
    return [
        PageRecord(id=1, title="Nike Pegasus 40 Review", slug="nike-pegasus-40-review", link="https://example.com/nike-pegasus-40-review/"),
        PageRecord(id=2, title="Best Running Shoes", slug="best-running-shoes", link="https://example.com/best-running-shoes/"),
        PageRecord(id=3, title="Nike Vomero Review", slug="nike-vomero-review", link="https://example.com/nike-vomero-review/"),
        PageRecord(id=4, title="Garden Hose Guide", slug="garden-hose-guide", link="https://example.com/garden-hose-guide/"),
        PageRecord(id=5, title="Coffee Grinder Picks", slug="coffee-grinders", link="https://example.com/coffee-grinders/"),
    ]


def test_neighbors_exclude_target_and_rank_by_relevance():
    nodes = build_mesh(_pages())
    neighbors = find_neighbors(1, "Nike Pegasus 40 Review", nodes, k=2)
    assert [node.id for node in neighbors] == [3, 2]
    assert all(node.id != 1 for node in neighbors)
    assert neighbors[0].relevance > 0


def test_neighbors_backfill_in_inventory_order_and_truncate():
    nodes = build_mesh(_pages())
    neighbors = find_neighbors(1, "Nike Pegasus 40 Review", nodes, k=50)
    ids = [node.id for node in neighbors]
    assert ids[0] == 3
    assert set(ids) == {2, 3, 4, 5}
    # Zero-relevance nodes keep the order they were listed in.
    zero = [node.id for node in neighbors if node.relevance == 0]
    assert zero == sorted(zero)

    assert len(find_neighbors(1, "Nike Pegasus 40 Review", nodes, k=3)) == 3


def test_neighbors_do_not_mutate_mesh():
    nodes = build_mesh(_pages())
    find_neighbors(1, "Nike Pegasus 40 Review", nodes)
    assert all(node.relevance == 0.0 for node in nodes)


def test_format_inventory():
    nodes = build_mesh(_pages())
    lines = format_inventory(nodes, limit=2).splitlines()
    assert lines == ["ID: 1 | Title: Nike Pegasus 40 Review", "ID: 2 | Title: Best Running Shoes"]


def test_handle_message_contract():
    response = handle_message({"type": BUILD_MESH, "pages": [page.model_dump() for page in _pages()]})
    assert response["type"] == MESH_RESULT
    assert len(response["nodes"]) == 5

    page = PageRecord(id=9, html="<p>Hello there</p>", modified=datetime(2020, 1, 1, tzinfo=timezone.utc))
    response = handle_message(
        {
            "type": ANALYZE_HEALTH,
            "page": page.model_dump(),
            "site_url": "https://example.com",
            "now": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
    )
    assert response["type"] == HEALTH_RESULT
    assert response["page_id"] == 9
    assert response["metrics"].word_count == 2
    assert response["scores"].opportunity == 0

    with pytest.raises(MeshError):
        handle_message({"type": "NOPE"})


def test_worker_round_trip():
    worker = MeshWorker()
    worker.start()
    try:
        nodes = worker.build_mesh(_pages())
        assert [node.id for node in nodes] == [1, 2, 3, 4, 5]
        with pytest.raises(MeshError):
            worker.request({"type": "NOPE"}, timeout=5)
        # Worker survives a failed message.
        result = worker.analyze_health(_pages()[0], "https://example.com")
        assert result["type"] == HEALTH_RESULT
    finally:
        worker.stop()

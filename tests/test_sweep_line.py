import pytest

from ocpt_flow.flow_graph import GraphNode, Position
from ocpt_flow.sweep_line import HorizontalOverlapResolver


def rect(node_id, x, y, width=100, height=100):
    return GraphNode(id=node_id, type="box", position=Position(x, y), width=width, height=height)


@pytest.fixture
def resolver():
    return HorizontalOverlapResolver()


def test_detects_overlap_of_vertically_coresident_nodes(resolver):
    overlaps = resolver.detect_horizontal_overlaps([rect("a", 0, 0), rect("b", 60, 50)])
    assert len(overlaps) == 1
    assert {overlaps[0].node1.id, overlaps[0].node2.id} == {"a", "b"}
    assert overlaps[0].overlap_amount == 40


def test_nodes_on_different_heights_do_not_overlap(resolver):
    assert resolver.detect_horizontal_overlaps([rect("a", 0, 0), rect("b", 0, 150)]) == []


def test_side_by_side_nodes_do_not_overlap(resolver):
    assert resolver.detect_horizontal_overlaps([rect("a", 0, 0), rect("b", 100, 0)]) == []


def test_nodes_touching_vertically_count_as_coresident(resolver):
    assert len(resolver.detect_horizontal_overlaps([rect("a", 0, 0), rect("b", 0, 100)])) == 1


def test_nodes_without_size_are_left_out(resolver):
    unsized = GraphNode(id="x", type="box", position=Position(0, 0))
    assert resolver.detect_horizontal_overlaps([unsized, rect("a", 0, 0)]) == []


def test_two_overlapping_rectangles_are_resolved(resolver):
    nodes = [rect("a", 0, 0), rect("b", 50, 0)]
    resolved = resolver.resolve_horizontal_overlaps(nodes)
    assert resolver.detect_horizontal_overlaps(resolved) == []
    by_id = {node.id: node for node in resolved}
    # The right-hand node moves by half the overlap plus padding.
    assert by_id["a"].position.x == 0
    assert by_id["b"].position.x == 50 + 25 + resolver.padding
    # Inputs are untouched.
    assert nodes[1].position.x == 50


def test_resolution_never_increases_overlaps():
    nodes = [rect(f"n{i}", (i % 3) * 40, (i // 3) * 30, width=120, height=80) for i in range(9)]
    resolver = HorizontalOverlapResolver(max_iterations=2)
    before = len(resolver.detect_horizontal_overlaps(nodes))
    resolved = resolver.resolve_horizontal_overlaps(nodes)
    after = len(resolver.detect_horizontal_overlaps(resolved))
    assert after <= before
    assert resolver.iterations_used <= 2


def test_resolution_stops_early_without_overlaps(resolver):
    resolver.resolve_horizontal_overlaps([rect("a", 0, 0), rect("b", 500, 0)])
    assert resolver.iterations_used == 0

import networkx as nx

from conftest import act, op
from ocpt_flow.flow_graph import ACTIVITY_GROUP_NODE_TYPE, DECISION_NODE_TYPE
from ocpt_flow.flow_layout import (
    LANE_HEIGHT,
    LANE_Y_OFFSET,
    build_flow_graph,
    connector_in_id,
    connector_out_id,
    lane_y,
)
from ocpt_flow.flow_pipeline import build_flows
from ocpt_flow.flow_synthesis import BranchInfo, ExecOption
from ocpt_flow.tree_model import node_from_json


def graph_for(raw, object_types):
    return build_flow_graph(build_flows(node_from_json(raw), object_types).flows)


def test_activity_nodes_are_shared_between_lanes():
    graph = graph_for(op("sequence", act("Create", "Order"), act("Pack", "Order", "Item")), ["Order", "Item"])
    groups = [node for node in graph.nodes if node.type == ACTIVITY_GROUP_NODE_TYPE]
    assert sorted(node.id for node in groups) == ["activity-Create", "activity-Pack"]

    for object_type in ("Order", "Item"):
        entry = graph.node(connector_in_id(object_type, "activity-Pack"))
        exit_ = graph.node(connector_out_id(object_type, "activity-Pack"))
        assert entry.parent_id == exit_.parent_id == "activity-Pack"
        assert entry.type == exit_.type == DECISION_NODE_TYPE
    assert graph.node("Order-activity-Pack-connector-in").position.y == LANE_Y_OFFSET - 10
    assert graph.node("Item-activity-Pack-connector-in").position.y == LANE_Y_OFFSET + LANE_HEIGHT - 10


def test_every_activity_has_an_execute_edge_reachable_from_start():
    graph = graph_for(
        op("sequence", act("A", "Order"), op("parallel", act("B", "Order"), act("C", "Order", "Item"))),
        ["Order", "Item"],
    )
    lanes = {"Order": ["A", "B", "C"], "Item": ["C"]}
    for object_type, activities in lanes.items():
        for activity in activities:
            execute = [
                edge for edge in graph.edges if edge.is_execute and edge.data.ot == object_type and edge.data.activity == activity
            ]
            assert len(execute) == 1
            assert nx.has_path(graph.graph, f"{object_type}-startEvent", execute[0].source)


def test_exec_option_edges_follow_exhibits():
    graph = graph_for(op("sequence", act("A", "Order", exhibits={"Order": ["div"]}), act("B", "Order")), ["Order"])
    entry = connector_in_id("Order", "activity-A")
    exit_ = connector_out_id("Order", "activity-A")
    skip = graph.get_edge(f"e-{entry}-skip-{exit_}")
    execute = graph.get_edge(f"e-{entry}-execute-{exit_}")
    loop = graph.get_edge(f"e-{exit_}-loop-{entry}")
    assert skip.data.exec_option is ExecOption.SKIP
    assert execute.data.activity == "A"
    assert (loop.source, loop.target) == (exit_, entry)
    assert loop.source_handle == f"{exit_}-source-loop"


def test_split_and_join_handles():
    graph = graph_for(op("parallel", act("A", "Order"), act("B", "Order")), ["Order"])
    split_edges = graph.out_edges("Order-parallelSplit0")
    assert sorted(edge.source_handle for edge in split_edges) == [
        "Order-parallelSplit0-out-0",
        "Order-parallelSplit0-out-1",
    ]
    join_edges = graph.in_edges("Order-parallelJoin1")
    assert sorted(edge.target_handle for edge in join_edges) == [
        "Order-parallelJoin1-in-0",
        "Order-parallelJoin1-in-1",
    ]
    assert {edge.source for edge in join_edges} == {
        connector_out_id("Order", "activity-A"),
        connector_out_id("Order", "activity-B"),
    }


def test_several_silent_branches_keep_their_own_edges():
    graph = graph_for(op("parallel", act("A", "Order"), act("B", "Item"), act("C", "Item")), ["Order"])
    split_edges = graph.out_edges("Order-parallelSplit0")
    assert len(split_edges) == 3
    assert len({edge.id for edge in split_edges}) == 3
    to_join = [edge for edge in split_edges if edge.target == "Order-parallelJoin1"]
    assert sorted(edge.target_handle for edge in to_join) == ["Order-parallelJoin1-in-1", "Order-parallelJoin1-in-2"]


def test_div_loop_back_edge_is_marked():
    graph = graph_for(op("sequence", act("A", "Order", exhibits={"Order": ["div"]})), ["Order"])
    back = [edge for edge in graph.out_edges("Order-divLoopEnd1") if edge.target == "Order-divLoopStart0"]
    assert len(back) == 1
    assert back[0].data.is_div_loop_entry
    assert back[0].source_handle == "Order-divLoopEnd1-out-loop"
    assert back[0].target_handle == "Order-divLoopStart0-in-loop"


def test_branch_offsets():
    assert lane_y(0, None) == LANE_Y_OFFSET
    assert lane_y(1, BranchInfo("s", 0, 1)) == LANE_Y_OFFSET + LANE_HEIGHT
    assert lane_y(0, BranchInfo("s", 1, 1)) == LANE_Y_OFFSET + 100
    assert lane_y(0, BranchInfo("s", 0, 2)) == LANE_Y_OFFSET + 100


def test_overlapping_activity_groups_are_pushed_apart():
    # The Item lane places Pick where the Order lane already placed Create.
    graph = graph_for(
        op("sequence", act("Create", "Order"), act("Pick", "Item"), act("Pack", "Order", "Item")),
        ["Order", "Item"],
    )
    create = graph.node("activity-Create").position.x
    pick = graph.node("activity-Pick").position.x
    assert create != pick


def test_payload_shape():
    graph = graph_for(op("sequence", act("A", "Order")), ["Order"])
    payload = graph.to_payload()
    node = next(item for item in payload["nodes"] if item["id"] == "Order-activity-A-connector-in")
    assert node["parentId"] == "activity-A"
    assert node["extent"] == "parent"
    assert node["data"]["isBeginningActivityDecisionNode"] is True
    edge = next(item for item in payload["edges"] if item["source"] == "Order-startEvent")
    assert edge["target"] == "Order-activity-A-connector-in"
    assert edge["targetHandle"] == "Order-activity-A-connector-in-in"
    assert edge["type"] == "animatedSvgEdge"
    assert edge["data"] == {"ot": "Order", "tokens": []}

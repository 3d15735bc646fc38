from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from .app_logging import get_logger
from .flow_graph import (
    ACTIVITY_GROUP_NODE_TYPE,
    DECISION_NODE_TYPE,
    EdgeData,
    FlowGraph,
    GraphEdge,
    GraphNode,
    Position,
)
from .flow_synthesis import (
    JOIN_OPERATORS,
    SPLIT_OPERATORS,
    ActivityNode,
    AltFlow,
    AltFlowNode,
    BranchInfo,
    ExecOption,
    InterNode,
    InterOperator,
)
from .sweep_line import HorizontalOverlapResolver

LOGGER = get_logger("layout")

DECISION_NODE_SIZE = (40, 20)
START_END_EVENT_NODE_SIZE = (40, 40)
GATEWAY_NODE_SIZE = (64, 64)

LANE_Y_OFFSET = 100
LANE_HEIGHT = 300
BRANCH_Y_STEP = 50
ACTIVITY_NODE_WIDTH = 300
ACTIVITY_NODE_HEIGHT = 1500
NODE_X_SPACING = 400

GATEWAY_OPERATORS = (
    InterOperator.PARALLEL_SPLIT,
    InterOperator.PARALLEL_JOIN,
    InterOperator.XOR_SPLIT,
    InterOperator.XOR_JOIN,
    InterOperator.DIV_LOOP_START,
    InterOperator.DIV_LOOP_END,
)


def node_size(operator: InterOperator) -> Tuple[int, int]:
    if operator in GATEWAY_OPERATORS:
        return GATEWAY_NODE_SIZE
    return START_END_EVENT_NODE_SIZE


def connector_in_id(object_type: str, activity_id: str) -> str:
    return f"{object_type}-{activity_id}-connector-in"


def connector_out_id(object_type: str, activity_id: str) -> str:
    return f"{object_type}-{activity_id}-connector-out"


def lane_y(lane_index: int, branch_info: Optional[BranchInfo]) -> float:
    y = LANE_Y_OFFSET + lane_index * LANE_HEIGHT
    if branch_info is None:
        return y
    # The first branch of a top-level split stays on the lane line.
    if branch_info.depth == 1 and branch_info.branch_id == 0:
        return y
    return y + branch_info.depth * (branch_info.branch_id + 1) * BRANCH_Y_STEP


def activity_connectors(
    activity_node: ActivityNode, activity_id: str, object_type: str, y: float
) -> Tuple[GraphNode, GraphNode, List[GraphEdge]]:
    """Entry/exit connectors of one lane at an activity plus its Skip/Execute/Loop edges."""
    width, height = DECISION_NODE_SIZE
    source_id = connector_in_id(object_type, activity_id)
    target_id = connector_out_id(object_type, activity_id)
    exec_options = [opt.to_dict() for opt in activity_node.exec_options]

    source_node = GraphNode(
        id=source_id,
        type=DECISION_NODE_TYPE,
        position=Position(0, y - height / 2),
        data={"execOptions": exec_options, "isBeginningActivityDecisionNode": True},
        width=width,
        height=height,
        parent_id=activity_id,
    )
    target_node = GraphNode(
        id=target_id,
        type=DECISION_NODE_TYPE,
        position=Position(ACTIVITY_NODE_WIDTH - width, y - height / 2),
        data={"execOptions": exec_options, "isBeginningActivityDecisionNode": False},
        width=width,
        height=height,
        parent_id=activity_id,
    )

    options = {opt.option for opt in activity_node.exec_options}
    edges: List[GraphEdge] = []
    if ExecOption.SKIP in options:
        edges.append(
            GraphEdge(
                id=f"e-{source_id}-skip-{target_id}",
                source=source_id,
                target=target_id,
                source_handle=f"{source_id}-source-skip",
                target_handle=f"{target_id}-target-skip",
                data=EdgeData(ot=object_type, exec_option=ExecOption.SKIP),
            )
        )
    if ExecOption.EXECUTE in options:
        edges.append(
            GraphEdge(
                id=f"e-{source_id}-execute-{target_id}",
                source=source_id,
                target=target_id,
                source_handle=f"{source_id}-source-execute",
                target_handle=f"{target_id}-target-execute",
                data=EdgeData(ot=object_type, exec_option=ExecOption.EXECUTE, activity=activity_node.activity),
            )
        )
    if ExecOption.LOOP in options:
        edges.append(
            GraphEdge(
                id=f"e-{target_id}-loop-{source_id}",
                source=target_id,
                target=source_id,
                source_handle=f"{target_id}-source-loop",
                target_handle=f"{source_id}-target-loop",
                data=EdgeData(ot=object_type, exec_option=ExecOption.LOOP),
            )
        )
    return source_node, target_node, edges


def create_edge(
    flow_node: AltFlowNode,
    next_id: str,
    object_type: str,
    operators: Dict[str, InterOperator],
    branch_index: Optional[int] = None,
) -> GraphEdge:
    source_id = flow_node.id
    target_id = next_id
    source_handle = f"{source_id}-out"
    target_handle = f"{target_id}-in"
    data = EdgeData(ot=object_type)
    edge_id: Optional[str] = None

    is_split = isinstance(flow_node, InterNode) and flow_node.operator in SPLIT_OPERATORS
    if operators.get(next_id) is None and next_id.startswith("activity-"):
        target_id = connector_in_id(object_type, next_id)
        target_handle = f"{target_id}-in"
    elif operators.get(next_id) in JOIN_OPERATORS:
        if is_split or flow_node.branch_info is None:
            target_handle = f"{target_id}-in-{branch_index or 0}"
        else:
            target_handle = f"{target_id}-in-{flow_node.branch_info.branch_id}"

    if isinstance(flow_node, ActivityNode):
        source_id = connector_out_id(object_type, flow_node.id)
        source_handle = f"{source_id}-out"
    elif is_split:
        source_handle = f"{source_id}-out-{branch_index}"
        # Several silent branches may all lead straight to the join.
        edge_id = f"e-{source_id}-{branch_index}-{target_id}"
    elif flow_node.operator == InterOperator.DIV_LOOP_END and branch_index == 1:
        source_handle = f"{source_id}-out-loop"
        target_handle = f"{target_id}-in-loop"
        data = EdgeData(ot=object_type, is_div_loop_entry=True)

    return GraphEdge(
        id=edge_id or f"e-{source_id}-{target_id}",
        source=source_id,
        target=target_id,
        source_handle=source_handle,
        target_handle=target_handle,
        data=data,
    )


def build_flow_graph(flows: Sequence[AltFlow], resolver: Optional[HorizontalOverlapResolver] = None) -> FlowGraph:
    """
    Lay out the lanes of all object types into one flow graph.

    Activities are shared across lanes: the first lane meeting an activity
    places its group node, later lanes only add their own connectors.
    """
    graph = FlowGraph()
    resolver = resolver or HorizontalOverlapResolver()
    activity_nodes: Dict[str, GraphNode] = {}

    for lane_index, flow in enumerate(flows):
        object_type = flow.ot
        operators = {node.id: node.operator for node in flow.flow if isinstance(node, InterNode)}
        current_x = 0.0

        for flow_node in flow.flow:
            y = lane_y(lane_index, flow_node.branch_info)

            if isinstance(flow_node, ActivityNode):
                group = activity_nodes.get(flow_node.activity)
                if group is None:
                    group = GraphNode(
                        id=flow_node.id,
                        type=ACTIVITY_GROUP_NODE_TYPE,
                        position=Position(current_x, 0),
                        data={"label": flow_node.activity},
                        width=ACTIVITY_NODE_WIDTH,
                        height=ACTIVITY_NODE_HEIGHT,
                    )
                    graph.add_node(group)
                    activity_nodes[flow_node.activity] = group
                source_node, target_node, activity_edges = activity_connectors(flow_node, group.id, object_type, y)
                graph.add_node(source_node)
                graph.add_node(target_node)
                graph.add_edges(activity_edges)
                current_x = group.position.x + NODE_X_SPACING
            else:
                width, height = node_size(flow_node.operator)
                graph.add_node(
                    GraphNode(
                        id=flow_node.id,
                        type=flow_node.operator.value,
                        position=Position(current_x, y - height / 2),
                        data={"operator": flow_node.operator.value, "branches": flow_node.branches, "ot": object_type},
                        width=width,
                        height=height,
                    )
                )
                current_x += NODE_X_SPACING

            if isinstance(flow_node.next, tuple):
                for branch_index, next_id in enumerate(flow_node.next):
                    graph.add_edge(create_edge(flow_node, next_id, object_type, operators, branch_index))
            elif flow_node.next:
                graph.add_edge(create_edge(flow_node, flow_node.next, object_type, operators))

        movable = [node for node in graph.nodes if node.type != DECISION_NODE_TYPE]
        for moved in resolver.resolve_horizontal_overlaps(movable):
            graph.set_position(moved.id, moved.position.x, moved.position.y)
        LOGGER.debug("Laid out lane %s (%d nodes so far)", object_type, len(graph))

    return graph

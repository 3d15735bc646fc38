from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import pandas as pd
import pytest

from ocpt_flow.flow_graph import EdgeData, FlowGraph, GraphEdge, GraphNode, Position
from ocpt_flow.flow_synthesis import ExecOption
from ocpt_flow.tree_model import node_from_json

T0 = pd.Timestamp("2024-03-01T08:00:00Z")


def act(name: str, *ots: str, exhibits: Optional[Dict[str, Sequence[str]]] = None) -> Dict[str, Any]:
    exhibits = exhibits or {}
    refs = []
    for ot in ots:
        ref: Dict[str, Any] = {"ot": ot}
        if ot in exhibits:
            ref["exhibits"] = list(exhibits[ot])
        refs.append(ref)
    return {"value": {"activity": name, "ots": refs}}


def op(operator: str, *children: Dict[str, Any]) -> Dict[str, Any]:
    return {"value": operator, "children": list(children)}


def edge(edge_id: str, source: str, target: str, ot: str = "Order", activity: Optional[str] = None,
         option: Optional[ExecOption] = None) -> GraphEdge:
    if activity is not None and option is None:
        option = ExecOption.EXECUTE
    return GraphEdge(
        id=edge_id,
        source=source,
        target=target,
        source_handle=f"{source}-out",
        target_handle=f"{target}-in",
        data=EdgeData(ot=ot, exec_option=option, activity=activity),
    )


def event_node(node_id: str, operator: str) -> GraphNode:
    return GraphNode(id=node_id, type=operator, position=Position(0, 0), data={}, width=40, height=40)


@pytest.fixture
def order_tree():
    return node_from_json(op("sequence", act("Create", "Order"), act("Ship", "Order")))


@pytest.fixture
def straight_graph() -> FlowGraph:
    """start -> Create -> Ship -> end, with the execute edges leaving each activity."""
    graph = FlowGraph()
    graph.add_node(event_node("Order-startEvent", "startEvent"))
    graph.add_node(event_node("Order-endEvent", "endEvent"))
    graph.add_edge(edge("e1", "Order-startEvent", "Create"))
    graph.add_edge(edge("e2", "Create", "Ship", activity="Create"))
    graph.add_edge(edge("e3", "Ship", "Order-endEvent", activity="Ship"))
    return graph

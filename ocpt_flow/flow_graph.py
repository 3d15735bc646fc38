from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import networkx as nx

from .app_logging import get_logger
from .flow_synthesis import ExecOption, InterOperator, end_event_id, start_event_id

LOGGER = get_logger("graph")

EDGE_TYPE = "animatedSvgEdge"
ACTIVITY_GROUP_NODE_TYPE = "labeledGroupNode"
DECISION_NODE_TYPE = "activityDecisionNode"


@dataclass
class Position:
    x: float
    y: float


@dataclass
class GraphNode:
    id: str
    type: str
    position: Position
    data: Dict[str, Any] = field(default_factory=dict)
    width: Optional[float] = None
    height: Optional[float] = None
    parent_id: Optional[str] = None

    @property
    def operator(self) -> Optional[InterOperator]:
        try:
            return InterOperator(self.type)
        except ValueError:
            return None

    @property
    def branches(self) -> Optional[int]:
        return self.data.get("branches")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "position": {"x": self.position.x, "y": self.position.y},
            "data": dict(self.data),
            "width": self.width,
            "height": self.height,
        }
        if self.parent_id is not None:
            data["parentId"] = self.parent_id
            data["extent"] = "parent"
        return data


@dataclass
class EdgeData:
    ot: str
    exec_option: Optional[ExecOption] = None
    activity: Optional[str] = None
    is_div_loop_entry: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ot": self.ot}
        if self.exec_option is not None:
            data["execOption"] = self.exec_option.value
        if self.activity is not None:
            data["activity"] = self.activity
        if self.is_div_loop_entry:
            data["isDivLoopEntry"] = True
        return data


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    source_handle: str
    target_handle: str
    data: EdgeData
    type: str = EDGE_TYPE

    @property
    def is_execute(self) -> bool:
        """True for the execution edge of an activity (between its connectors)."""
        return self.data.exec_option == ExecOption.EXECUTE and self.data.activity is not None

    def to_dict(self, tokens: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
        data = self.data.to_dict()
        if tokens is not None:
            data["tokens"] = [token.to_dict() if hasattr(token, "to_dict") else token for token in tokens]
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
            "type": self.type,
            "data": data,
        }


class FlowGraph:
    """
    Positioned flow graph of all lanes.

    Edges are stored in a networkx MultiDiGraph keyed by edge id, since two
    connectors of an activity are linked by several edges (Skip, Execute).
    """

    def __init__(self) -> None:
        self._graph = nx.MultiDiGraph()
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def graph(self) -> nx.MultiDiGraph:
        return self._graph

    def add_node(self, node: GraphNode) -> None:
        self._nodes[node.id] = node
        self._graph.add_node(node.id)

    def add_edge(self, edge: GraphEdge) -> bool:
        if edge.id in self._edges:
            LOGGER.warning("Duplicate edge %s ignored", edge.id)
            return False
        self._edges[edge.id] = edge
        self._graph.add_edge(edge.source, edge.target, key=edge.id)
        return True

    def add_edges(self, edges: Iterable[GraphEdge]) -> None:
        for edge in edges:
            self.add_edge(edge)

    def node(self, node_id: str) -> GraphNode:
        return self._nodes[node_id]

    def get_edge(self, edge_id: str) -> Optional[GraphEdge]:
        return self._edges.get(edge_id)

    @property
    def nodes(self) -> List[GraphNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[GraphEdge]:
        return list(self._edges.values())

    def out_edges(self, node_id: str) -> List[GraphEdge]:
        if node_id not in self._graph:
            return []
        return [self._edges[key] for _, _, key in self._graph.out_edges(node_id, keys=True)]

    def in_edges(self, node_id: str) -> List[GraphEdge]:
        if node_id not in self._graph:
            return []
        return [self._edges[key] for _, _, key in self._graph.in_edges(node_id, keys=True)]

    def start_edges(self, object_type: str) -> List[GraphEdge]:
        return self.out_edges(start_event_id(object_type))

    def end_node_id(self, object_type: str) -> str:
        return end_event_id(object_type)

    def node_operator(self, node_id: str) -> Optional[InterOperator]:
        node = self._nodes.get(node_id)
        return node.operator if node is not None else None

    def set_position(self, node_id: str, x: float, y: float) -> None:
        node = self._nodes[node_id]
        node.position = Position(x, y)

    def to_payload(self, tokens_by_edge: Optional[Mapping[str, Sequence[Any]]] = None) -> Dict[str, Any]:
        tokens_by_edge = tokens_by_edge or {}
        return {
            "nodes": [node.to_dict() for node in self._nodes.values()],
            "edges": [edge.to_dict(tokens_by_edge.get(edge.id, [])) for edge in self._edges.values()],
        }

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .app_logging import get_logger
from .tree_model import (
    TAU_ACTIVITY,
    ModelingError,
    ObjectTypeRef,
    OperatorType,
    ProcessTreeNode,
    categorize,
    is_true_silent_activity,
    operator_of,
)

LOGGER = get_logger("synthesis")


class UnsupportedOperatorError(Exception):
    """Raised for process tree constructs that have no flow representation yet."""


class InterOperator(str, Enum):
    START_EVENT = "startEvent"
    END_EVENT = "endEvent"
    PARALLEL_SPLIT = "parallelSplit"
    PARALLEL_JOIN = "parallelJoin"
    XOR_SPLIT = "xorSplit"
    XOR_JOIN = "xorJoin"
    DIV_LOOP_START = "divLoopStart"
    DIV_LOOP_END = "divLoopEnd"


SPLIT_OPERATORS = (InterOperator.PARALLEL_SPLIT, InterOperator.XOR_SPLIT)
JOIN_OPERATORS = (InterOperator.PARALLEL_JOIN, InterOperator.XOR_JOIN)


class ExecOption(str, Enum):
    SKIP = "Skip"
    EXECUTE = "Execute"
    LOOP = "Loop"


@dataclass(frozen=True)
class ExecOptionObj:
    option: ExecOption
    cardinality: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"option": self.option.value}
        if self.cardinality is not None:
            data["cardinality"] = self.cardinality
        return data


@dataclass(frozen=True)
class BranchInfo:
    parent_split_id: str
    branch_id: int
    depth: int

    def to_dict(self) -> dict:
        return {"parentSplitId": self.parent_split_id, "branchId": self.branch_id, "depth": self.depth}


Next = Union[str, Tuple[str, ...]]


@dataclass
class InterNode:
    id: str
    operator: InterOperator
    next: Next
    branch_info: Optional[BranchInfo] = None
    branches: Optional[int] = None

    def to_dict(self) -> dict:
        value = {"operator": self.operator.value}
        if self.branches is not None:
            value["branches"] = self.branches
        return {
            "id": self.id,
            "type": "inter",
            "value": value,
            "next": list(self.next) if isinstance(self.next, tuple) else self.next,
            "branchInfo": self.branch_info.to_dict() if self.branch_info else None,
        }


@dataclass
class ActivityNode:
    id: str
    activity: str
    exec_options: Tuple[ExecOptionObj, ...]
    next: Next
    branch_info: Optional[BranchInfo] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "activity",
            "value": {"activity": self.activity, "execOptions": [opt.to_dict() for opt in self.exec_options]},
            "next": list(self.next) if isinstance(self.next, tuple) else self.next,
            "branchInfo": self.branch_info.to_dict() if self.branch_info else None,
        }


AltFlowNode = Union[InterNode, ActivityNode]


@dataclass
class AltFlow:
    """Flat flow description of one object type lane."""

    ot: str
    flow: List[AltFlowNode] = field(default_factory=list)
    activities: List[str] = field(default_factory=list)

    @property
    def start_event_id(self) -> str:
        return start_event_id(self.ot)

    @property
    def end_event_id(self) -> str:
        return end_event_id(self.ot)

    def node(self, node_id: str) -> AltFlowNode:
        for flow_node in self.flow:
            if flow_node.id == node_id:
                return flow_node
        raise KeyError(node_id)

    def to_dict(self) -> dict:
        return {"activities": list(self.activities), "ot": self.ot, "flow": [node.to_dict() for node in self.flow]}


def start_event_id(ot: str) -> str:
    return f"{ot}-startEvent"


def end_event_id(ot: str) -> str:
    return f"{ot}-endEvent"


def activity_node_id(activity: str) -> str:
    return f"activity-{activity}"


def exec_options_for(ref: ObjectTypeRef) -> Tuple[ExecOptionObj, ...]:
    """
    Execution options of one object type at an activity.

    Divergence always yields Skip, Execute and Loop; a convergent type marks
    its Execute option with a cardinality.
    """
    if not ref.exhibits:
        return (ExecOptionObj(ExecOption.EXECUTE),)
    if "div" in ref.exhibits:
        cardinality = "" if "con" in ref.exhibits else None
        return (
            ExecOptionObj(ExecOption.SKIP),
            ExecOptionObj(ExecOption.EXECUTE, cardinality=cardinality),
            ExecOptionObj(ExecOption.LOOP),
        )
    return tuple(
        ExecOptionObj(ExecOption.EXECUTE, cardinality="" if exhibit == "con" else None) for exhibit in ref.exhibits
    )


class FlowSynthesizer:
    """
    Turns a projected process tree into the flow of one object type.

    The traversal is pre-order and continuation passing: every call is told
    which flow node its first node hands over to.
    """

    def __init__(self, object_type: str):
        self.object_type = object_type
        self._counter = itertools.count()

    def _new_id(self, operator: InterOperator) -> str:
        return f"{self.object_type}-{operator.value}{next(self._counter)}"

    def synthesize(self, tree: ProcessTreeNode, activities: Sequence[str] = ()) -> AltFlow:
        end_id = end_event_id(self.object_type)
        nodes = self._build(tree, None, False, end_id)
        first_id = nodes[0].id if nodes else end_id

        flow = AltFlow(ot=self.object_type, activities=list(activities))
        flow.flow.append(InterNode(id=start_event_id(self.object_type), operator=InterOperator.START_EVENT, next=first_id))
        flow.flow.extend(nodes)
        flow.flow.append(InterNode(id=end_id, operator=InterOperator.END_EVENT, next=""))
        LOGGER.debug("Synthesised %d flow nodes for %s", len(flow.flow), self.object_type)
        return flow

    def _build(
        self,
        node: ProcessTreeNode,
        branch_info: Optional[BranchInfo],
        in_arbitrary: bool,
        next_id: str,
    ) -> List[AltFlowNode]:
        if categorize(node) == "leaf":
            return self._build_leaf(node, branch_info, next_id)

        operator = operator_of(node.value)
        children = list(node.children or ())

        if in_arbitrary or operator == OperatorType.SEQUENCE:
            return self._build_sequence(children, branch_info, in_arbitrary, next_id)
        if operator in (OperatorType.PARALLEL, OperatorType.XOR):
            return self._build_split_join(operator, children, branch_info, in_arbitrary, next_id)
        if operator == OperatorType.ARBITRARY:
            return self._build_div_loop(children, branch_info, next_id)
        if operator == OperatorType.SKIP:
            return []
        if operator == OperatorType.LOOP:
            LOGGER.error("Loop operator at node %s has no flow representation (lane %s)", node.id, self.object_type)
            raise UnsupportedOperatorError(f"Loop operator at node {node.id} cannot be turned into a flow")
        LOGGER.error("Unknown operator %r at node %s", operator, node.id)
        raise ModelingError(f"Unknown operator {operator!r} at node {node.id}")

    def _build_leaf(
        self, node: ProcessTreeNode, branch_info: Optional[BranchInfo], next_id: str
    ) -> List[AltFlowNode]:
        value = node.value
        if is_true_silent_activity(value) or value.activity == TAU_ACTIVITY:
            return []

        matching = next((ref for ref in value.object_types if ref.ot == self.object_type), None)
        if matching is None:
            return []
        return [
            ActivityNode(
                id=activity_node_id(value.activity),
                activity=value.activity,
                exec_options=exec_options_for(matching),
                next=next_id,
                branch_info=branch_info,
            )
        ]

    def _chain(
        self,
        children: Sequence[ProcessTreeNode],
        build_child: Callable[[ProcessTreeNode, str], List[AltFlowNode]],
        next_id: str,
    ) -> List[AltFlowNode]:
        # Right to left, so each child knows the first node of its right neighbour.
        collected: List[AltFlowNode] = []
        for child in reversed(children):
            child_nodes = build_child(child, next_id)
            if child_nodes:
                next_id = child_nodes[0].id
            collected = child_nodes + collected
        return collected

    def _build_sequence(
        self,
        children: Sequence[ProcessTreeNode],
        branch_info: Optional[BranchInfo],
        in_arbitrary: bool,
        next_id: str,
    ) -> List[AltFlowNode]:
        return self._chain(children, lambda child, nxt: self._build(child, branch_info, in_arbitrary, nxt), next_id)

    def _build_split_join(
        self,
        operator: OperatorType,
        children: Sequence[ProcessTreeNode],
        branch_info: Optional[BranchInfo],
        in_arbitrary: bool,
        next_id: str,
    ) -> List[AltFlowNode]:
        if operator == OperatorType.PARALLEL:
            split_op, join_op = InterOperator.PARALLEL_SPLIT, InterOperator.PARALLEL_JOIN
        else:
            split_op, join_op = InterOperator.XOR_SPLIT, InterOperator.XOR_JOIN
        split_id = self._new_id(split_op)
        join_id = self._new_id(join_op)
        depth = branch_info.depth if branch_info else 0

        branch_targets: List[str] = []
        inner: List[AltFlowNode] = []
        for index, child in enumerate(children):
            child_info = BranchInfo(parent_split_id=split_id, branch_id=index, depth=depth + 1)
            child_nodes = self._build(child, child_info, in_arbitrary, join_id)
            # A fully silenced branch connects the split straight to the join.
            branch_targets.append(child_nodes[0].id if child_nodes else join_id)
            inner.extend(child_nodes)

        branches = len(children)
        split_node = InterNode(
            id=split_id, operator=split_op, next=tuple(branch_targets), branch_info=branch_info, branches=branches
        )
        join_node = InterNode(id=join_id, operator=join_op, next=next_id, branch_info=branch_info, branches=branches)
        return [split_node, *inner, join_node]

    def _build_div_loop(
        self, children: Sequence[ProcessTreeNode], branch_info: Optional[BranchInfo], next_id: str
    ) -> List[AltFlowNode]:
        start_id = self._new_id(InterOperator.DIV_LOOP_START)
        end_id = self._new_id(InterOperator.DIV_LOOP_END)
        inner = self._chain(children, lambda child, nxt: self._build(child, branch_info, True, nxt), end_id)

        start_node = InterNode(
            id=start_id,
            operator=InterOperator.DIV_LOOP_START,
            next=inner[0].id if inner else end_id,
            branch_info=branch_info,
            branches=2,
        )
        end_node = InterNode(
            id=end_id,
            operator=InterOperator.DIV_LOOP_END,
            next=(next_id, start_id),
            branch_info=branch_info,
            branches=2,
        )
        return [start_node, *inner, end_node]


def synthesize_flow(tree: ProcessTreeNode, object_type: str, activities: Sequence[str] = ()) -> AltFlow:
    return FlowSynthesizer(object_type).synthesize(tree, activities)

from __future__ import annotations

import itertools
import json
import pathlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .app_logging import get_logger

LOGGER = get_logger("tree")

TAU_ACTIVITY = "tau"
EXHIBIT_VALUES = ("div", "con", "def")


class ModelingError(Exception):
    """Raised when a process tree node has a value of unexpected shape or kind."""


class OperatorType(str, Enum):
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    LOOP = "loop"
    XOR = "xor"
    SKIP = "skip"
    ARBITRARY = "arbitrary"


PLAIN_OPERATORS = (OperatorType.SEQUENCE, OperatorType.PARALLEL, OperatorType.LOOP, OperatorType.XOR)

# Spellings accepted for operator values, mirroring the miner backend.
_OPERATOR_ALIASES = {
    "sequence": OperatorType.SEQUENCE,
    "seq": OperatorType.SEQUENCE,
    "xor": OperatorType.XOR,
    "choice": OperatorType.XOR,
    "exclusivechoice": OperatorType.XOR,
    "parallel": OperatorType.PARALLEL,
    "and": OperatorType.PARALLEL,
    "par": OperatorType.PARALLEL,
    "concurrency": OperatorType.PARALLEL,
    "loop": OperatorType.LOOP,
}


@dataclass(frozen=True)
class ObjectTypeRef:
    ot: str
    exhibits: Optional[Tuple[str, ...]] = None

    def has_exhibit(self, exhibit: str) -> bool:
        return bool(self.exhibits) and exhibit in self.exhibits


@dataclass(frozen=True)
class Activity:
    activity: str
    object_types: Tuple[ObjectTypeRef, ...] = ()


@dataclass(frozen=True)
class SilentActivity(Activity):
    is_silent: bool = True


@dataclass(frozen=True)
class ExtendedOperator:
    operator: OperatorType
    object_types: Tuple[ObjectTypeRef, ...] = ()


NodeValue = Union[Activity, SilentActivity, OperatorType, ExtendedOperator]


@dataclass(frozen=True)
class ProcessTreeNode:
    id: int
    value: NodeValue
    is_expanded: Optional[bool] = None
    children: Optional[Tuple["ProcessTreeNode", ...]] = None


@dataclass
class OcptDocument:
    """A mined OCPT together with the object types it mentions."""

    object_types: List[str]
    root: ProcessTreeNode


class IdGenerator:
    """Pre-order id source. Each tree build uses its own instance."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)

    def next_id(self) -> int:
        return next(self._counter)


# --- predicates -------------------------------------------------------------


def is_activity(value: Any) -> bool:
    return isinstance(value, Activity)


def is_silent_activity(value: Any) -> bool:
    return isinstance(value, SilentActivity)


def is_true_silent_activity(value: Any) -> bool:
    return isinstance(value, SilentActivity) and value.is_silent is True


def is_process_tree_operator(value: Any) -> bool:
    return isinstance(value, OperatorType) and value in PLAIN_OPERATORS


def is_extended_operator(value: Any) -> bool:
    return isinstance(value, ExtendedOperator)


def operator_of(value: NodeValue) -> OperatorType:
    """Operator kind of a plain or extended operator value."""
    if is_extended_operator(value):
        return value.operator
    if is_process_tree_operator(value):
        return value
    raise ModelingError(f"Value {value!r} is not an operator")


def object_types_of(value: NodeValue) -> Tuple[ObjectTypeRef, ...]:
    if is_activity(value) or is_extended_operator(value):
        return value.object_types
    return ()


def categorize(node: ProcessTreeNode) -> str:
    """
    Return "leaf" or "internal".

    An activity-family value carrying children is a broken tree and raises.
    """
    if is_activity(node.value):
        if node.children:
            LOGGER.error("Activity node %s (%r) has children", node.id, node.value)
            raise ModelingError(f"Activity node {node.id} must not have children")
        return "leaf"
    if is_process_tree_operator(node.value) or is_extended_operator(node.value):
        return "internal"
    LOGGER.error("Node %s has an unexpected value %r", node.id, node.value)
    raise ModelingError(f"Node {node.id} has an unexpected value: {node.value!r}")


def iter_preorder(node: ProcessTreeNode) -> Iterator[ProcessTreeNode]:
    yield node
    for child in node.children or ():
        yield from iter_preorder(child)


def collect_activities(node: ProcessTreeNode) -> List[str]:
    """Distinct activity names of all leaves, in pre-order."""
    seen: Dict[str, None] = {}
    for current in iter_preorder(node):
        if is_activity(current.value) and current.value.activity != TAU_ACTIVITY:
            seen.setdefault(current.value.activity, None)
    return list(seen)


# --- JSON conversion --------------------------------------------------------


def _parse_object_types(raw: Iterable[Dict[str, Any]]) -> Tuple[ObjectTypeRef, ...]:
    refs = []
    for item in raw or ():
        exhibits = item.get("exhibits")
        if exhibits is not None:
            exhibits = tuple(str(ex).lower() for ex in exhibits if str(ex).lower() in EXHIBIT_VALUES)
        refs.append(ObjectTypeRef(ot=str(item["ot"]), exhibits=exhibits))
    return tuple(refs)


def parse_operator(raw: str) -> OperatorType:
    key = raw.strip().lower()
    if key.startswith("loop:"):
        return OperatorType.LOOP
    try:
        return _OPERATOR_ALIASES[key]
    except KeyError:
        try:
            return OperatorType(key)
        except ValueError as exc:
            raise ModelingError(f"Unknown operator: {raw}") from exc


def value_from_json(raw: Any) -> NodeValue:
    if isinstance(raw, str):
        return parse_operator(raw)
    if isinstance(raw, dict):
        if "activity" in raw:
            object_types = _parse_object_types(raw.get("ots", ()))
            if "isSilent" in raw:
                return SilentActivity(str(raw["activity"]), object_types, bool(raw["isSilent"]))
            return Activity(str(raw["activity"]), object_types)
        if "operator" in raw:
            return ExtendedOperator(parse_operator(raw["operator"]), _parse_object_types(raw.get("ots", ())))
    raise ModelingError(f"Cannot interpret node value: {raw!r}")


def node_from_json(data: Dict[str, Any], id_generator: Optional[IdGenerator] = None) -> ProcessTreeNode:
    """
    Build a tree from the `{value, isExpanded?, children?}` hierarchy.

    Ids are assigned by pre-order numbering, starting from 0 unless a
    generator is passed in.
    """
    generator = id_generator or IdGenerator()

    def build(raw_node: Dict[str, Any]) -> ProcessTreeNode:
        node_id = generator.next_id()
        value = value_from_json(raw_node.get("value"))
        raw_children = raw_node.get("children")
        children = tuple(build(child) for child in raw_children) if raw_children is not None else None
        node = ProcessTreeNode(id=node_id, value=value, is_expanded=raw_node.get("isExpanded"), children=children)
        categorize(node)
        return node

    return build(data)


def assign_ids(root: ProcessTreeNode, id_generator: Optional[IdGenerator] = None) -> ProcessTreeNode:
    """Renumber an existing tree in pre-order."""
    generator = id_generator or IdGenerator()

    def renumber(node: ProcessTreeNode) -> ProcessTreeNode:
        node_id = generator.next_id()
        children = tuple(renumber(child) for child in node.children) if node.children is not None else None
        return ProcessTreeNode(id=node_id, value=node.value, is_expanded=node.is_expanded, children=children)

    return renumber(root)


def _object_types_to_json(refs: Iterable[ObjectTypeRef]) -> List[Dict[str, Any]]:
    result = []
    for ref in refs:
        item: Dict[str, Any] = {"ot": ref.ot}
        if ref.exhibits is not None:
            item["exhibits"] = list(ref.exhibits)
        result.append(item)
    return result


def value_to_json(value: NodeValue) -> Any:
    if is_silent_activity(value):
        return {
            "activity": value.activity,
            "ots": _object_types_to_json(value.object_types),
            "isSilent": value.is_silent,
        }
    if is_activity(value):
        return {"activity": value.activity, "ots": _object_types_to_json(value.object_types)}
    if is_extended_operator(value):
        return {"operator": value.operator.value, "ots": _object_types_to_json(value.object_types)}
    if isinstance(value, OperatorType):
        return value.value
    raise ModelingError(f"Cannot serialise node value: {value!r}")


def node_to_json(node: ProcessTreeNode) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": node.id, "value": value_to_json(node.value)}
    if node.is_expanded is not None:
        data["isExpanded"] = node.is_expanded
    if node.children is not None:
        data["children"] = [node_to_json(child) for child in node.children]
    return data


def load_ocpt_document(source: Union[str, pathlib.Path, Dict[str, Any]]) -> OcptDocument:
    """
    Load an OCPT document of the form `{"ots": [...], "hierarchy": {...}}`.

    A bare hierarchy without the `ots` wrapper is accepted as well; the object
    types are then collected from the leaves.
    """
    if isinstance(source, dict):
        payload = source
    else:
        path = pathlib.Path(source)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ModelingError(f"OCPT file {path} is not valid JSON: {exc}") from exc

    hierarchy = payload.get("hierarchy", payload)
    root = node_from_json(hierarchy)
    object_types = payload.get("ots")
    if object_types is None:
        collected: Dict[str, None] = {}
        for node in iter_preorder(root):
            for ref in object_types_of(node.value):
                collected.setdefault(ref.ot, None)
        object_types = sorted(collected)
    LOGGER.debug("Loaded OCPT with %d object types", len(object_types))
    return OcptDocument(object_types=[str(ot) for ot in object_types], root=root)

from __future__ import annotations

from dataclasses import replace
from functools import reduce
from typing import Iterable, List, Sequence, Tuple

from .app_logging import get_logger
from .tree_model import (
    Activity,
    ExtendedOperator,
    ModelingError,
    ObjectTypeRef,
    OperatorType,
    ProcessTreeNode,
    SilentActivity,
    categorize,
    is_activity,
    is_extended_operator,
    is_process_tree_operator,
    is_true_silent_activity,
    object_types_of,
)

LOGGER = get_logger("projection")


def intersect_object_types(
    first: Sequence[ObjectTypeRef], second: Sequence[ObjectTypeRef]
) -> Tuple[ObjectTypeRef, ...]:
    """
    Intersect two object type lists on `ot`.

    Matching entries keep the exhibits both sides share; the result is empty
    when either side has no exhibits.
    """
    second_by_ot = {item.ot: item for item in second}
    result: List[ObjectTypeRef] = []
    for item in first:
        other = second_by_ot.get(item.ot)
        if other is None:
            continue
        common: Tuple[str, ...] = ()
        if item.exhibits and other.exhibits:
            common = tuple(ex for ex in item.exhibits if ex in other.exhibits)
        result.append(ObjectTypeRef(ot=item.ot, exhibits=common))
    return tuple(result)


def intersect_multiple_object_types(sets: Iterable[Sequence[ObjectTypeRef]]) -> Tuple[ObjectTypeRef, ...]:
    sets = [tuple(item) for item in sets]
    if not sets:
        return ()
    if len(sets) == 1:
        return sets[0]
    return reduce(intersect_object_types, sets)


def _is_skip_subtree(children: Sequence[ProcessTreeNode]) -> bool:
    # Objects of the target types never touch any leaf below.
    return all(
        is_true_silent_activity(child.value)
        or (is_extended_operator(child.value) and child.value.operator == OperatorType.SKIP)
        for child in children
    )


def _child_allows_arbitrary(child: ProcessTreeNode, target_types: Sequence[str]) -> bool:
    value = child.value
    if is_extended_operator(value) and value.operator in (OperatorType.SKIP, OperatorType.ARBITRARY):
        return True
    if is_true_silent_activity(value):
        return True
    if is_activity(value):
        for ref in value.object_types:
            if ref.ot in target_types and not ref.has_exhibit("div"):
                return False
        return True
    return False


def _is_arbitrary_subtree(children: Sequence[ProcessTreeNode], target_types: Sequence[str]) -> bool:
    # Objects of the target types may or may not take part, any number of times.
    return all(_child_allows_arbitrary(child, target_types) for child in children)


def _project_node(node: ProcessTreeNode, target_types: Sequence[str]) -> ProcessTreeNode:
    if categorize(node) == "leaf":
        activity: Activity = node.value
        if any(ref.ot in target_types for ref in activity.object_types):
            return node
        silent = SilentActivity(activity=activity.activity, object_types=activity.object_types, is_silent=True)
        return replace(node, value=silent)

    children = tuple(_project_node(child, target_types) for child in node.children or ())
    children_object_types = [object_types_of(child.value) for child in children]

    if _is_skip_subtree(children):
        value = ExtendedOperator(OperatorType.SKIP, intersect_multiple_object_types(children_object_types))
    elif _is_arbitrary_subtree(children, target_types):
        value = ExtendedOperator(OperatorType.ARBITRARY, intersect_multiple_object_types(children_object_types))
    else:
        value = node.value
    return replace(node, value=value, children=children)


def project_tree(tree: ProcessTreeNode, target_types: Sequence[str]) -> ProcessTreeNode:
    """
    Return a copy of `tree` restricted to the behaviour of `target_types`.

    Leaves without any target type become silent; internal nodes whose
    children are all silent or skipped become `skip`, and those whose
    children only involve the target types divergently become `arbitrary`.
    The input tree is never modified. An empty target list returns the
    tree unchanged.
    """
    if not target_types:
        return tree
    target_types = list(target_types)
    try:
        projected = _project_node(tree, target_types)
    except ModelingError:
        LOGGER.error("Projection onto %s aborted for tree rooted at node %s", target_types, tree.id)
        raise
    LOGGER.debug("Projected tree %s onto %s", tree.id, target_types)
    return projected


def annotate_with_extended_operators(tree: ProcessTreeNode) -> ProcessTreeNode:
    """
    Replace every plain operator by an extended operator carrying the
    intersection of its children's object types. Leaves are kept as-is.
    """
    if not tree.children:
        return tree
    children = tuple(annotate_with_extended_operators(child) for child in tree.children)
    value = tree.value
    if is_process_tree_operator(value):
        value = ExtendedOperator(value, intersect_multiple_object_types(object_types_of(child.value) for child in children))
    return replace(tree, value=value, children=children)

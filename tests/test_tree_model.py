import json

import pytest

from conftest import act, op
from ocpt_flow.tree_model import (
    Activity,
    ExtendedOperator,
    ModelingError,
    ObjectTypeRef,
    OperatorType,
    ProcessTreeNode,
    IdGenerator,
    SilentActivity,
    assign_ids,
    categorize,
    collect_activities,
    is_activity,
    is_extended_operator,
    is_process_tree_operator,
    is_silent_activity,
    is_true_silent_activity,
    load_ocpt_document,
    node_from_json,
    node_to_json,
    parse_operator,
)


def test_ids_are_assigned_in_preorder():
    tree = node_from_json(op("sequence", op("xor", act("A", "Order"), act("B", "Order")), act("C", "Order")))
    xor_node, c_node = tree.children
    assert tree.id == 0
    assert xor_node.id == 1
    assert [child.id for child in xor_node.children] == [2, 3]
    assert c_node.id == 4


def test_each_parse_starts_counting_at_zero():
    first = node_from_json(op("sequence", act("A", "Order")))
    second = node_from_json(op("sequence", act("A", "Order")))
    assert first.id == second.id == 0
    assert first.children[0].id == second.children[0].id == 1


def test_assign_ids_renumbers_with_an_injected_generator():
    tree = node_from_json(op("sequence", act("A", "Order"), act("B", "Order")))
    renumbered = assign_ids(tree, IdGenerator(start=10))
    assert [renumbered.id] + [child.id for child in renumbered.children] == [10, 11, 12]
    assert tree.id == 0
    assert renumbered.children[1].value == tree.children[1].value


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("seq", OperatorType.SEQUENCE),
        ("exclusiveChoice", OperatorType.XOR),
        ("and", OperatorType.PARALLEL),
        ("loop:3", OperatorType.LOOP),
    ],
)
def test_operator_aliases(raw, expected):
    assert parse_operator(raw) is expected


def test_unknown_operator_is_rejected():
    with pytest.raises(ModelingError):
        node_from_json(op("shuffle", act("A", "Order")))


def test_activity_with_children_is_rejected():
    broken = {"value": {"activity": "A", "ots": []}, "children": [act("B", "Order")]}
    with pytest.raises(ModelingError):
        node_from_json(broken)


def test_categorize_rejects_unexpected_values():
    with pytest.raises(ModelingError):
        categorize(ProcessTreeNode(id=0, value="not-a-value"))


def test_value_predicates():
    silent = SilentActivity("A", (), True)
    not_silent = SilentActivity("A", (), False)
    extended = ExtendedOperator(OperatorType.SKIP)

    assert is_activity(silent) and is_silent_activity(silent)
    assert is_true_silent_activity(silent)
    assert not is_true_silent_activity(not_silent)
    assert not is_silent_activity(Activity("A"))
    assert is_process_tree_operator(OperatorType.XOR)
    assert not is_process_tree_operator(OperatorType.SKIP)
    assert is_extended_operator(extended) and not is_process_tree_operator(extended)


def test_exhibits_are_normalised():
    tree = node_from_json(act("A", "Order", exhibits={"Order": ["DIV", "con", "weird"]}))
    assert tree.value.object_types == (ObjectTypeRef("Order", ("div", "con")),)


def test_silent_flag_is_read():
    tree = node_from_json({"value": {"activity": "A", "ots": [{"ot": "Order"}], "isSilent": True}})
    assert is_true_silent_activity(tree.value)


def test_json_shape_is_written_back():
    raw = op("parallel", act("A", "Order", exhibits={"Order": ["div"]}), act("B", "Item"))
    tree = node_from_json(raw)
    written = node_to_json(tree)
    assert written["value"] == "parallel"
    assert written["children"][0] == {"id": 1, "value": {"activity": "A", "ots": [{"ot": "Order", "exhibits": ["div"]}]}}
    assert node_from_json(written) == tree


def test_collect_activities_skips_tau_and_duplicates():
    tree = node_from_json(op("sequence", act("A", "Order"), act("tau", "Order"), act("B", "Item"), act("A", "Item")))
    assert collect_activities(tree) == ["A", "B"]


def test_load_document_with_object_types(tmp_path):
    path = tmp_path / "ocpt.json"
    path.write_text(json.dumps({"ots": ["Order", "Item"], "hierarchy": op("sequence", act("A", "Order"))}))
    document = load_ocpt_document(path)
    assert document.object_types == ["Order", "Item"]
    assert document.root.value is OperatorType.SEQUENCE


def test_load_bare_hierarchy_collects_object_types():
    document = load_ocpt_document(op("sequence", act("A", "Order"), act("B", "Item", "Order")))
    assert document.object_types == ["Item", "Order"]


def test_load_invalid_json_raises_modeling_error(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ModelingError):
        load_ocpt_document(path)

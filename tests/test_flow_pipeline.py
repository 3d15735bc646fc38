import importlib.util
import json
import pathlib

import pytest

from conftest import act, op
from ocpt_flow.flow_pipeline import (
    _format_lifetime,
    build_flow_payload,
    build_flows,
    compute_activity_summary,
    compute_overview,
    replay_log,
)
from ocpt_flow.flow_layout import build_flow_graph
from ocpt_flow.log_loader import load_ocel_csv
from ocpt_flow.tree_model import load_ocpt_document, node_from_json

ORDERS_CSV = b"""ocel:eid;ocel:timestamp;ocel:activity;ocel:type:orders
e1;2024-01-01 10:00:00;Create;o1
e2;2024-01-01 10:00:10;Ship;o1
e3;2024-01-01 10:01:00;Create;o2
e4;2024-01-01 10:02:00;Ship;o2
e5;2024-01-01 10:03:00;Refund;o3
"""

DOCUMENT = {
    "ots": ["Orders"],
    "hierarchy": op("sequence", act("Create", "Orders"), act("Ship", "Orders")),
}

HEADER_ONLY_CSV = b"ocel:eid;ocel:timestamp;ocel:activity;ocel:type:orders\n"


def test_lanes_with_loops_are_skipped():
    tree = node_from_json(op("sequence", act("Create", "Order"), op("loop", act("Pick", "Item"), act("Pack", "Item"))))
    build = build_flows(tree, ["Order", "Item"])
    assert build.object_types == ["Order"]
    assert list(build.skipped_object_types) == ["Item"]


def test_filter_selects_lanes():
    tree = node_from_json(op("sequence", act("Create", "Order"), act("Pick", "Item")))
    assert build_flows(tree, ["Order", "Item"], ["Item"]).object_types == ["Item"]
    assert build_flows(tree, ["Order", "Item"]).object_types == ["Order", "Item"]


def test_payload_without_log():
    payload = build_flow_payload(load_ocpt_document(DOCUMENT))
    assert payload["metadata"]["objectTypes"] == ["Orders"]
    assert payload["metadata"]["tokenCount"] == 0
    assert all(edge["data"]["tokens"] == [] for edge in payload["edges"])


def test_payload_with_replayed_log():
    payload = build_flow_payload(load_ocpt_document(DOCUMENT), load_ocel_csv(ORDERS_CSV))
    metadata = payload["metadata"]

    assert metadata["errorCount"] == 1
    assert metadata["failedObjects"] == ["Orders-o3"]
    assert metadata["tokenCount"] == 10
    assert metadata["startTime"] == "2024-01-01T09:55:00.000Z"
    assert metadata["endTime"] == "2024-01-01T10:08:00.000Z"
    assert metadata["overview"]["objects"] == 3

    execute = next(edge for edge in payload["edges"] if edge["id"].endswith("execute-Orders-activity-Create-connector-out"))
    assert [token["id"] for token in execute["data"]["tokens"]] == ["o1", "o2"]
    assert all(token["activity"] == "Create" for token in execute["data"]["tokens"])
    json.dumps(payload)


def test_activity_summary():
    document = load_ocpt_document(DOCUMENT)
    graph = build_flow_graph(build_flows(document.root, document.object_types).flows)
    summary = compute_activity_summary(replay_log(graph, load_ocel_csv(ORDERS_CSV)))
    assert sorted(summary["activity"]) == ["Create", "Ship"]
    assert list(summary["executions"]) == [2, 2]
    assert list(summary["objects"]) == [2, 2]
    # The time until Ship is split over the execute edge and the link after it.
    create = summary.set_index("activity").loc["Create"]
    assert create["mean_duration_ms"] == pytest.approx((10_000 + 60_000) / 2 / 2)


def test_log_without_events_replays_nothing():
    payload = build_flow_payload(load_ocpt_document(DOCUMENT), load_ocel_csv(HEADER_ONLY_CSV))
    metadata = payload["metadata"]
    assert metadata["errorCount"] == 0
    assert metadata["tokenCount"] == 0
    assert metadata["startTime"] is None and metadata["endTime"] is None
    assert metadata["activitySummary"] == []
    assert metadata["overview"]["events"] == 0
    json.dumps(payload)


def test_overview_reports_median_object_lifetime():
    overview = compute_overview(load_ocel_csv(ORDERS_CSV))
    assert overview["objectsPerType"] == {"Orders": 3}
    # Lifetimes are 10s, 60s and 0s.
    assert overview["medianObjectLifetime"] == "10s"


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (59.9, "59s"), (3600, "1h"), (93_784, "1d 2h 3m 4s")],
)
def test_lifetime_formatting(seconds, expected):
    assert _format_lifetime(seconds) == expected


def load_export_script():
    path = pathlib.Path(__file__).resolve().parents[1] / "scripts" / "export_flow_replay.py"
    spec = importlib.util.spec_from_file_location("export_flow_replay", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_export_script_writes_payload(tmp_path):
    script = load_export_script()
    tree_path = tmp_path / "ocpt.json"
    tree_path.write_text(json.dumps(DOCUMENT))
    log_path = tmp_path / "orders.csv"
    log_path.write_bytes(ORDERS_CSV)
    output = tmp_path / "out" / "payload.json"

    script.export_flow(tree_path, output, log_path=log_path)

    written = json.loads(output.read_text())
    assert written["metadata"]["tokenCount"] == 10


def test_export_script_reports_bad_logs(tmp_path):
    script = load_export_script()
    tree_path = tmp_path / "ocpt.json"
    tree_path.write_text(json.dumps(DOCUMENT))
    log_path = tmp_path / "orders.csv"
    log_path.write_bytes(b"ocel:eid;ocel:activity\ne1;Create\n")

    with pytest.raises(SystemExit, match="Failed to load event log"):
        script.export_flow(tree_path, tmp_path / "payload.json", log_path=log_path)


def test_export_script_accepts_an_empty_log(tmp_path):
    script = load_export_script()
    tree_path = tmp_path / "ocpt.json"
    tree_path.write_text(json.dumps(DOCUMENT))
    log_path = tmp_path / "orders.csv"
    log_path.write_bytes(HEADER_ONLY_CSV)

    payload = script.export_flow(tree_path, tmp_path / "payload.json", log_path=log_path)

    assert payload["metadata"]["tokenCount"] == 0

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .app_logging import get_logger
from .flow_graph import FlowGraph
from .flow_layout import build_flow_graph
from .flow_synthesis import AltFlow, UnsupportedOperatorError, synthesize_flow
from .log_loader import TIMESTAMP_COL, OcelContainer
from .projection import annotate_with_extended_operators, project_tree
from .token_replay import (
    DEFAULT_PLAYBACK_SPEED,
    DEFAULT_SPEED_MULTIPLIER,
    ReplayResult,
    TokenReplayEngine,
    iso_timestamp,
    playback_divisor,
    to_epoch_ms,
)
from .tree_model import OcptDocument, ProcessTreeNode, collect_activities

LOGGER = get_logger("pipeline")


@dataclass
class FlowBuild:
    flows: List[AltFlow] = field(default_factory=list)
    skipped_object_types: Dict[str, str] = field(default_factory=dict)

    @property
    def object_types(self) -> List[str]:
        return [flow.ot for flow in self.flows]


def _format_lifetime(seconds: float) -> str:
    """Whole-second lifetime as `1d 2h 5m`, dropping zero units."""
    components = pd.Timedelta(seconds=int(seconds)).components
    units = ((components.days, "d"), (components.hours, "h"), (components.minutes, "m"))
    parts = [f"{value}{unit}" for value, unit in units if value]
    if components.seconds or not parts:
        parts.append(f"{components.seconds}s")
    return " ".join(parts)


def build_flows(
    tree: ProcessTreeNode, object_types: Sequence[str], filtered_object_types: Sequence[str] = ()
) -> FlowBuild:
    """
    One flow per object type lane.

    Every lane is projected from the same annotated original tree, so
    projections never build on each other. An empty filter keeps all lanes.
    """
    annotated = annotate_with_extended_operators(tree)
    activities = collect_activities(tree)
    selected = [ot for ot in object_types if not filtered_object_types or ot in filtered_object_types]

    build = FlowBuild()
    for object_type in selected:
        projected = project_tree(annotated, [object_type])
        try:
            build.flows.append(synthesize_flow(projected, object_type, activities))
        except UnsupportedOperatorError as exc:
            LOGGER.warning("Skipping lane %s: %s", object_type, exc)
            build.skipped_object_types[object_type] = str(exc)
    return build


def compute_overview(log_container: OcelContainer) -> Dict[str, Any]:
    df = log_container.df
    flows = log_container.object_flows
    lifetimes = [
        (pd.Timestamp(record.timestamps[-1]) - pd.Timestamp(record.timestamps[0])).total_seconds()
        for record in flows.values()
        if record.timestamps
    ]
    objects_per_type: Dict[str, int] = {}
    for record in flows.values():
        objects_per_type[record.type] = objects_per_type.get(record.type, 0) + 1

    return {
        "events": len(df),
        "objects": len(flows),
        "objectsPerType": objects_per_type,
        "activities": int(df["ocel:activity"].nunique()),
        "start": df[TIMESTAMP_COL].min().isoformat() if not df.empty else None,
        "end": df[TIMESTAMP_COL].max().isoformat() if not df.empty else None,
        "medianObjectLifetime": _format_lifetime(statistics.median(lifetimes)) if lifetimes else "n/a",
    }


def compute_activity_summary(result: ReplayResult) -> pd.DataFrame:
    """Executions and mean real execution duration per activity."""
    tokens = result.to_dataframe()
    columns = ["activity", "executions", "objects", "mean_duration_ms"]
    executed = tokens[tokens["activity"].notna()]
    if executed.empty:
        return pd.DataFrame(columns=columns)
    summary = (
        executed.groupby("activity")
        .agg(
            executions=("id", "size"),
            objects=("id", "nunique"),
            mean_duration_ms=("realTimeExecutionDuration", "mean"),
        )
        .sort_values("executions", ascending=False)
        .reset_index()
    )
    return summary[columns]


def replay_log(
    graph: FlowGraph,
    log_container: OcelContainer,
    playback_speed: float = DEFAULT_PLAYBACK_SPEED,
    speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER,
) -> ReplayResult:
    if not log_container.object_flows:
        LOGGER.info("Event log references no objects; nothing to replay")
        return ReplayResult()
    start_time, end_time = log_container.observation_window()
    engine = TokenReplayEngine(graph, playback_divisor(playback_speed, speed_multiplier))
    return engine.replay(log_container.object_flows, start_time, end_time)


def build_flow_payload(
    document: OcptDocument,
    log_container: Optional[OcelContainer] = None,
    filtered_object_types: Sequence[str] = (),
    playback_speed: float = DEFAULT_PLAYBACK_SPEED,
    speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER,
) -> Dict[str, Any]:
    """
    Nodes, edges (with tokens when a log is given) and metadata for the renderer.
    """
    build = build_flows(document.root, document.object_types, filtered_object_types)
    graph = build_flow_graph(build.flows)

    metadata: Dict[str, Any] = {
        "objectTypes": build.object_types,
        "skippedObjectTypes": sorted(build.skipped_object_types),
        "errorCount": 0,
        "tokenCount": 0,
        "startTime": None,
        "endTime": None,
        "playbackSpeed": playback_speed,
        "speedMultiplier": speed_multiplier,
    }
    if log_container is None:
        return {**graph.to_payload(), "metadata": metadata}

    result = replay_log(graph, log_container, playback_speed, speed_multiplier)
    if not log_container.df.empty:
        start_time, end_time = log_container.observation_window()
        metadata["startTime"] = iso_timestamp(to_epoch_ms(start_time))
        metadata["endTime"] = iso_timestamp(to_epoch_ms(end_time))
    metadata.update(
        {
            "errorCount": result.error_count,
            "failedObjects": sorted(result.failures),
            "tokenCount": result.token_count,
            "overview": compute_overview(log_container),
            "activitySummary": [
                {
                    "activity": row["activity"],
                    "executions": int(row["executions"]),
                    "objects": int(row["objects"]),
                    "meanDurationMs": float(row["mean_duration_ms"]),
                }
                for row in compute_activity_summary(result).to_dict(orient="records")
            ],
        }
    )
    LOGGER.info(
        "Built flow payload: %d lanes, %d tokens, %d replay errors",
        len(build.flows),
        result.token_count,
        result.error_count,
    )
    return {**graph.to_payload(result.tokens_by_edge), "metadata": metadata}

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .app_logging import get_logger
from .flow_graph import FlowGraph, GraphEdge
from .flow_synthesis import InterOperator
from .log_loader import ObjectFlowRecord

LOGGER = get_logger("replay")

START_ACTIVITY = "startEvent"
END_ACTIVITY = "endEvent"
DEFAULT_PLAYBACK_SPEED = 3600
DEFAULT_SPEED_MULTIPLIER = 1.0

TimestampLike = Union[str, int, float, pd.Timestamp]


class ReplayError(Exception):
    """Base class for failures that abort the replay of a single object."""


class NoStartEdgeError(ReplayError):
    pass


class NoPathError(ReplayError):
    pass


class MissingEdgeError(ReplayError):
    pass


class ParallelJoinError(ReplayError):
    """A parallel join got more tokens than branches, or could never be completed."""


def playback_divisor(
    playback_speed: float = DEFAULT_PLAYBACK_SPEED, speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER
) -> float:
    """Animation milliseconds are real milliseconds divided by this."""
    return playback_speed * 1000 * speed_multiplier


def to_epoch_ms(value: TimestampLike) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.value / 1_000_000


def iso_timestamp(epoch_ms: float) -> str:
    ts = pd.Timestamp(int(round(epoch_ms)), unit="ms")
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


@dataclass
class Token:
    """One object's passage over one edge."""

    id: str
    type: str
    timestamp: str
    timestamp_ms: float
    execution_duration_ms: float
    real_time_execution_duration: float
    from_activity: str
    to_activity: str
    path_length: int
    current_position_in_path: int
    activity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "timestampMs": self.timestamp_ms,
            "executionDurationMs": self.execution_duration_ms,
            "realTimeExecutionDuration": self.real_time_execution_duration,
            "fromActivity": self.from_activity,
            "toActivity": self.to_activity,
            "pathLength": self.path_length,
            "currentPositionInPath": self.current_position_in_path,
        }
        if self.activity is not None:
            data["activity"] = self.activity
        return data


@dataclass(frozen=True)
class BranchContext:
    """Where and when an open edge was entered: the timing origin for its next segment."""

    from_activity: str
    timestamp_ms: float
    path_position: int = 0
    path_length: int = 0


@dataclass(frozen=True)
class Cursor:
    edge_id: str
    context: BranchContext


@dataclass
class PathResult:
    path: List[str]
    last: str

    @property
    def count(self) -> int:
        return len(self.path)


@dataclass
class ReplayState:
    """Working state of one object's replay. Never shared between objects."""

    object_id: str
    object_type: str
    frontier: List[Cursor] = field(default_factory=list)
    join_buffers: Dict[str, List[Token]] = field(default_factory=dict)
    tokens_by_edge: Dict[str, List[Token]] = field(default_factory=dict)

    def add_token(self, edge_id: str, token: Token) -> None:
        self.tokens_by_edge.setdefault(edge_id, []).append(token)


@dataclass
class ReplayResult:
    tokens_by_edge: Dict[str, List[Token]] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    error_count: int = 0
    replayed_objects: int = 0

    def tokens(self) -> Iterable[Tuple[str, Token]]:
        for edge_id, tokens in self.tokens_by_edge.items():
            for token in tokens:
                yield edge_id, token

    @property
    def token_count(self) -> int:
        return sum(len(tokens) for tokens in self.tokens_by_edge.values())

    def merge(self, tokens_by_edge: Mapping[str, List[Token]]) -> None:
        for edge_id, tokens in tokens_by_edge.items():
            self.tokens_by_edge.setdefault(edge_id, []).extend(tokens)

    def to_dataframe(self) -> pd.DataFrame:
        rows = [{"edgeId": edge_id, **token.to_dict()} for edge_id, token in self.tokens()]
        columns = [
            "edgeId",
            "id",
            "type",
            "timestamp",
            "timestampMs",
            "executionDurationMs",
            "realTimeExecutionDuration",
            "fromActivity",
            "toActivity",
            "pathLength",
            "currentPositionInPath",
            "activity",
        ]
        return pd.DataFrame(rows, columns=columns)


def apply_playback_speed(
    result: ReplayResult,
    playback_speed: float = DEFAULT_PLAYBACK_SPEED,
    speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER,
) -> ReplayResult:
    """Recompute every token's animation duration for a new playback setting."""
    divisor = playback_divisor(playback_speed, speed_multiplier)
    for _, token in result.tokens():
        token.execution_duration_ms = token.real_time_execution_duration / divisor
    return result


class TokenReplayEngine:
    """
    Replays per-object activity histories over a flow graph.

    Each object walks from its lane's start event to every logged activity in
    turn and finally to the end event, leaving a timed token on every edge on
    the way. Open edges left behind at parallel splits are resumed later with
    the timing context of the split. The graph is only read.
    """

    def __init__(self, graph: FlowGraph, divisor: Optional[float] = None):
        self.graph = graph
        self.divisor = divisor if divisor is not None else playback_divisor()

    # --- path search ---------------------------------------------------------

    def _edge(self, edge_id: str) -> GraphEdge:
        edge = self.graph.get_edge(edge_id)
        if edge is None:
            raise MissingEdgeError(f"Edge {edge_id} is not part of the flow graph")
        return edge

    def _is_join_out(self, edge: GraphEdge) -> bool:
        return self.graph.node_operator(edge.source) == InterOperator.PARALLEL_JOIN

    def find_shortest_path(
        self,
        start_edge_id: str,
        to_activity: str,
        end_node_id: Optional[str] = None,
        to_edge_id: Optional[str] = None,
    ) -> Optional[PathResult]:
        """
        Breadth-first search from an open edge to the execute edge of `to_activity`.

        With `end_node_id` the search stops at the first edge entering that
        node, with `to_edge_id` at that edge. Execute edges of other
        activities are never crossed. The returned path excludes the edge
        that was found, which is returned as `last`. Of several shortest
        paths the first one discovered wins.
        """
        start = self._edge(start_edge_id)
        seeking_activity = end_node_id is None and to_edge_id is None

        if start.is_execute and end_node_id is not None and start.target == end_node_id:
            return PathResult(path=[], last=start.id)

        queue: deque = deque()
        if start.is_execute:
            for out_edge in self.graph.out_edges(start.target):
                queue.append([start.id, out_edge.id])
        else:
            queue.append([start.id])

        visited = set()
        while queue:
            path = queue.popleft()
            edge_id = path[-1]
            if edge_id in visited:
                continue
            visited.add(edge_id)
            edge = self._edge(edge_id)

            if edge.is_execute:
                if seeking_activity and edge.data.activity == to_activity:
                    return PathResult(path=path[:-1], last=edge.id)
                continue
            if end_node_id is not None and edge.target == end_node_id:
                return PathResult(path=path[:-1], last=edge.id)
            if to_edge_id is not None and edge.id == to_edge_id:
                return PathResult(path=path[:-1], last=edge.id)

            for out_edge in self.graph.out_edges(edge.target):
                if out_edge.id not in visited:
                    queue.append(path + [out_edge.id])
        return None

    # --- walking -------------------------------------------------------------

    def _walk(
        self,
        state: ReplayState,
        edge_ids: List[str],
        context: BranchContext,
        to_activity: str,
        end_ms: float,
        stop_edge: Optional[str] = None,
    ) -> None:
        count = max(len(edge_ids), 1)
        duration = max(end_ms, context.timestamp_ms) - context.timestamp_ms
        step = duration / count
        starts = np.linspace(context.timestamp_ms, context.timestamp_ms + duration, count + 1)[:-1]
        path_length = len(edge_ids) + context.path_length

        for index, edge_id in enumerate(edge_ids):
            edge = self._edge(edge_id)
            total_index = context.path_position + index
            token = Token(
                id=state.object_id,
                type=state.object_type,
                timestamp=iso_timestamp(float(starts[index])),
                timestamp_ms=float(starts[index]),
                execution_duration_ms=step / self.divisor,
                real_time_execution_duration=step,
                from_activity=context.from_activity,
                to_activity=to_activity,
                path_length=path_length,
                current_position_in_path=total_index,
            )

            if self.graph.node_operator(edge.target) == InterOperator.PARALLEL_SPLIT:
                state.add_token(edge.id, token)
                following = edge_ids[index + 1] if index + 1 < len(edge_ids) else None
                branch_context = BranchContext(
                    from_activity=context.from_activity,
                    timestamp_ms=token.timestamp_ms + step,
                    path_position=total_index + 1,
                    path_length=total_index + 1,
                )
                for branch in self.graph.out_edges(edge.target):
                    if branch.id != following:
                        state.frontier.append(Cursor(branch.id, branch_context))
            elif self._is_join_out(edge):
                if not self._synchronise_join(state, edge, token, to_activity, end_ms, stop_edge):
                    return
                # The rest of the path starts once the merged token has left the join.
                resumed = BranchContext(
                    from_activity=context.from_activity,
                    timestamp_ms=token.timestamp_ms + token.real_time_execution_duration,
                    path_position=total_index + 1,
                    path_length=total_index + 1,
                )
                self._walk(state, edge_ids[index + 1:], resumed, to_activity, end_ms, stop_edge)
                return
            elif edge.is_execute:
                token.activity = edge.data.activity
                state.add_token(edge.id, token)
            else:
                state.add_token(edge.id, token)

    def _synchronise_join(
        self,
        state: ReplayState,
        edge: GraphEdge,
        token: Token,
        to_activity: str,
        end_ms: float,
        stop_edge: Optional[str],
    ) -> bool:
        """
        Buffer `token` at a parallel join; return True once the merged token
        has been placed and the walk may go on.
        """
        branches = self.graph.node(edge.source).branches or 1
        waiting = state.join_buffers.setdefault(edge.id, [])
        waiting.append(token)
        if len(waiting) > branches:
            raise ParallelJoinError(
                f"Join {edge.source} received {len(waiting)} tokens for {branches} branches (object {state.object_id})"
            )
        if edge.id == stop_edge:
            return False

        if len(waiting) < branches:
            self._drain_into_join(state, edge.id, to_activity, end_ms)
        if len(waiting) != branches:
            raise ParallelJoinError(
                f"Join {edge.source} got {len(waiting)} of {branches} branches for object {state.object_id}"
            )

        highest = max(waiting, key=lambda item: item.timestamp_ms, default=None)
        if highest is None:
            raise ParallelJoinError(f"No token to merge at join {edge.source}")
        token.timestamp = highest.timestamp
        token.timestamp_ms = highest.timestamp_ms
        token.execution_duration_ms = highest.execution_duration_ms
        token.real_time_execution_duration = highest.real_time_execution_duration
        state.join_buffers[edge.id] = []
        state.add_token(edge.id, token)
        return True

    def _drain_into_join(self, state: ReplayState, join_out_id: str, to_activity: str, end_ms: float) -> None:
        # Open sibling branches that reach the join without executing anything move into it now.
        branches = self.graph.node(self._edge(join_out_id).source).branches or 1
        for cursor in list(state.frontier):
            if len(state.join_buffers.get(join_out_id, [])) >= branches:
                break
            if cursor not in state.frontier:
                continue
            found = self.find_shortest_path(cursor.edge_id, to_activity, to_edge_id=join_out_id)
            if found is None:
                continue
            state.frontier.remove(cursor)
            self._walk(state, found.path + [found.last], cursor.context, to_activity, end_ms, stop_edge=join_out_id)

    # --- objects -------------------------------------------------------------

    def replay_object(
        self, key: str, record: ObjectFlowRecord, start_ms: float, end_ms: float
    ) -> Dict[str, List[Token]]:
        state = ReplayState(object_id=record.id, object_type=record.type)
        start_edges = self.graph.start_edges(record.type)
        if not start_edges:
            raise NoStartEdgeError(f"No start event edge for object {key} of type {record.type}")
        state.frontier = [Cursor(edge.id, BranchContext(START_ACTIVITY, start_ms)) for edge in start_edges]

        for to_activity, raw_timestamp in zip(record.activities, record.timestamps):
            to_ms = to_epoch_ms(raw_timestamp)
            best: Optional[Tuple[Cursor, PathResult]] = None
            for cursor in state.frontier:
                found = self.find_shortest_path(cursor.edge_id, to_activity)
                if found is not None and (best is None or found.count < best[1].count):
                    best = (cursor, found)
            if best is None:
                raise NoPathError(
                    f"No path from {[c.edge_id for c in state.frontier]} to activity {to_activity!r} for object {key}"
                )

            cursor, found = best
            state.frontier.remove(cursor)
            self._walk(state, found.path, cursor.context, to_activity, to_ms)
            state.frontier.append(Cursor(found.last, BranchContext(to_activity, to_ms)))

        end_node_id = self.graph.end_node_id(record.type)
        while state.frontier:
            cursor = state.frontier.pop(0)
            found = self.find_shortest_path(cursor.edge_id, END_ACTIVITY, end_node_id=end_node_id)
            if found is None:
                raise NoPathError(f"No path from {cursor.edge_id} to the end event for object {key}")
            self._walk(state, found.path + [found.last], cursor.context, END_ACTIVITY, end_ms)

        return state.tokens_by_edge

    def replay(
        self,
        objects: Mapping[str, ObjectFlowRecord],
        start_time: TimestampLike,
        end_time: TimestampLike,
    ) -> ReplayResult:
        """Replay every object; failing objects are counted and left out."""
        start_ms = to_epoch_ms(start_time)
        end_ms = to_epoch_ms(end_time)
        result = ReplayResult()
        for key, record in objects.items():
            try:
                tokens_by_edge = self.replay_object(key, record, start_ms, end_ms)
            except ReplayError as exc:
                result.error_count += 1
                result.failures[key] = str(exc)
                LOGGER.warning("Replay of object %s failed: %s", key, exc)
                continue
            result.merge(tokens_by_edge)
            result.replayed_objects += 1
        LOGGER.info(
            "Replayed %d objects (%d failed), %d tokens", result.replayed_objects, result.error_count, result.token_count
        )
        return result


def replay_objects(
    graph: FlowGraph,
    objects: Mapping[str, ObjectFlowRecord],
    start_time: TimestampLike,
    end_time: TimestampLike,
    playback_speed: float = DEFAULT_PLAYBACK_SPEED,
    speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER,
) -> ReplayResult:
    engine = TokenReplayEngine(graph, playback_divisor(playback_speed, speed_multiplier))
    return engine.replay(objects, start_time, end_time)

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .app_logging import get_logger
from .flow_graph import GraphNode

LOGGER = get_logger("sweep_line")

OVERLAP_PADDING = 100
MAX_ITERATIONS = 100


@dataclass
class HorizontalOverlap:
    node1: GraphNode
    node2: GraphNode
    overlap_amount: float


@dataclass
class _SweepEvent:
    y: float
    kind: str
    node: GraphNode


class HorizontalOverlapResolver:
    """
    Detects and pushes apart nodes that share a y-range and overlap on x.

    Resolution is bounded by `max_iterations`; when the bound is hit some
    overlaps may remain and a warning is logged. The result is an
    approximation, not a guaranteed overlap-free layout.
    """

    def __init__(self, padding: float = OVERLAP_PADDING, max_iterations: int = MAX_ITERATIONS):
        self.padding = padding
        self.max_iterations = max_iterations
        self.iterations_used = 0

    def detect_horizontal_overlaps(self, nodes: Sequence[GraphNode]) -> List[HorizontalOverlap]:
        events: List[_SweepEvent] = []
        for node in nodes:
            if not node.height:
                LOGGER.error("Node %s has no height, left out of the sweep", node.id)
                continue
            events.append(_SweepEvent(node.position.y, "start", node))
            events.append(_SweepEvent(node.position.y + node.height, "end", node))

        # Starts before ends at equal y, so touching rectangles count as co-resident.
        events.sort(key=lambda event: (event.y, 0 if event.kind == "start" else 1))

        overlaps: List[HorizontalOverlap] = []
        active: List[GraphNode] = []
        for event in events:
            if event.kind == "start":
                for other in active:
                    overlap = self._check_horizontal_overlap(event.node, other)
                    if overlap is not None:
                        overlaps.append(overlap)
                active.append(event.node)
            else:
                for index, other in enumerate(active):
                    if other.id == event.node.id:
                        del active[index]
                        break
        return overlaps

    def _check_horizontal_overlap(self, node1: GraphNode, node2: GraphNode) -> Optional[HorizontalOverlap]:
        if not node1.width or not node2.width:
            LOGGER.error("Node %s or %s has no width", node1.id, node2.id)
            return None

        overlap_start = max(node1.position.x, node2.position.x)
        overlap_end = min(node1.position.x + node1.width, node2.position.x + node2.width)
        if overlap_start < overlap_end:
            return HorizontalOverlap(node1=node1, node2=node2, overlap_amount=overlap_end - overlap_start)
        return None

    def resolve_horizontal_overlaps(self, nodes: Sequence[GraphNode]) -> List[GraphNode]:
        """Return moved copies of `nodes`; the inputs are left untouched."""
        resolved = [copy.deepcopy(node) for node in nodes]
        by_id: Dict[str, GraphNode] = {node.id: node for node in resolved}

        self.iterations_used = 0
        while self.iterations_used < self.max_iterations:
            overlaps = self.detect_horizontal_overlaps(resolved)
            if not overlaps:
                break
            overlaps.sort(key=lambda overlap: overlap.overlap_amount, reverse=True)
            for overlap in overlaps:
                self._resolve_horizontal_overlap(by_id, overlap)
            self.iterations_used += 1
        else:
            remaining = len(self.detect_horizontal_overlaps(resolved))
            if remaining:
                LOGGER.warning(
                    "Overlap resolution stopped after %d iterations with %d overlaps left",
                    self.max_iterations,
                    remaining,
                )
        return resolved

    def _resolve_horizontal_overlap(self, by_id: Dict[str, GraphNode], overlap: HorizontalOverlap) -> None:
        n1 = by_id.get(overlap.node1.id)
        n2 = by_id.get(overlap.node2.id)
        if n1 is None or n2 is None:
            return
        adjustment = overlap.overlap_amount / 2 + self.padding
        # The node further right moves.
        if n1.position.x > n2.position.x:
            n1.position.x += adjustment
        else:
            n2.position.x += adjustment

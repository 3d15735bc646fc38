#!/usr/bin/env python
"""
Export the flow graph of an object-centric process tree, optionally with the
replayed tokens of an object-centric event log, as JSON for a renderer.

Usage:
    python scripts/export_flow_replay.py --tree data/ocpt.json --log data/orders.csv --output runtime/flow_replay.json

The resulting JSON contains nodes, edges (with their tokens) and metadata.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ocpt_flow.app_logging import LOG_FILE_PATH, configure_logging  # noqa: E402  pylint: disable=wrong-import-position
from ocpt_flow.flow_pipeline import build_flow_payload  # noqa: E402  pylint: disable=wrong-import-position
from ocpt_flow.log_loader import LogFormatError, load_ocel_file  # noqa: E402  pylint: disable=wrong-import-position
from ocpt_flow.token_replay import (  # noqa: E402  pylint: disable=wrong-import-position
    DEFAULT_PLAYBACK_SPEED,
    DEFAULT_SPEED_MULTIPLIER,
)
from ocpt_flow.tree_model import ModelingError, load_ocpt_document  # noqa: E402  pylint: disable=wrong-import-position


def export_flow(
    tree_path: pathlib.Path,
    output_path: pathlib.Path,
    log_path: pathlib.Path | None = None,
    object_types: list[str] | None = None,
    playback_speed: float = DEFAULT_PLAYBACK_SPEED,
    speed_multiplier: float = DEFAULT_SPEED_MULTIPLIER,
) -> dict:
    try:
        document = load_ocpt_document(tree_path)
    except ModelingError as exc:
        raise SystemExit(f"Failed to load process tree: {exc}") from exc

    container = None
    if log_path is not None:
        try:
            container = load_ocel_file(log_path)
        except LogFormatError as exc:
            raise SystemExit(f"Failed to load event log: {exc}") from exc

    try:
        payload = build_flow_payload(
            document,
            container,
            filtered_object_types=object_types or (),
            playback_speed=playback_speed,
            speed_multiplier=speed_multiplier,
        )
    except ModelingError as exc:
        raise SystemExit(f"Process tree is not valid: {exc}") from exc
    except LogFormatError as exc:
        raise SystemExit(f"Event log cannot be replayed: {exc}") from exc

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    metadata = payload["metadata"]
    print(
        f"Wrote flow payload to {output_path} "
        f"({len(payload['nodes'])} nodes, {len(payload['edges'])} edges, "
        f"{metadata['tokenCount']} tokens, {metadata['errorCount']} replay errors)"
    )
    return payload


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export an OCPT flow graph with replayed OCEL tokens.")
    parser.add_argument("--tree", required=True, type=pathlib.Path, help="Path to the OCPT JSON document.")
    parser.add_argument(
        "--log",
        type=pathlib.Path,
        default=None,
        help="Optional event log (.csv, .jsonocel, .xmlocel, .json, .xml or .sqlite) to replay.",
    )
    parser.add_argument("--output", required=True, type=pathlib.Path, help="Destination JSON file.")
    parser.add_argument(
        "--object-types",
        nargs="*",
        default=None,
        help="Only build lanes for these object types (default: all object types of the tree).",
    )
    parser.add_argument(
        "--playback-speed",
        type=float,
        default=DEFAULT_PLAYBACK_SPEED,
        help="Simulated seconds per animation second (default: %(default)s).",
    )
    parser.add_argument("--speed-multiplier", type=float, default=DEFAULT_SPEED_MULTIPLIER)
    parser.add_argument("--log-file", type=pathlib.Path, default=LOG_FILE_PATH, help="Where to write the run log.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging, also echoed to stderr.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_file, verbose=args.verbose)
    export_flow(
        args.tree,
        args.output,
        log_path=args.log,
        object_types=args.object_types,
        playback_speed=args.playback_speed,
        speed_multiplier=args.speed_multiplier,
    )


if __name__ == "__main__":
    main()

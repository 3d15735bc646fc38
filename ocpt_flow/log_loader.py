from __future__ import annotations

import csv
import io
import pathlib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple, Union

import pandas as pd
import pm4py
from pandas.errors import EmptyDataError, ParserError
from pm4py.objects.ocel.obj import OCEL

from .app_logging import get_logger

LOGGER = get_logger("log_loader")

EVENT_ID_COL = "ocel:eid"
ACTIVITY_COL = "ocel:activity"
TIMESTAMP_COL = "ocel:timestamp"
OBJECT_ID_COL = "ocel:oid"
OBJECT_TYPE_COL = "ocel:type"
OBJECT_TYPE_PREFIX = "ocel:type:"
REQUIRED_COLUMNS = (EVENT_ID_COL, ACTIVITY_COL, TIMESTAMP_COL)

OBSERVATION_PADDING = pd.Timedelta(minutes=5)

OCEL1_SUFFIXES = (".jsonocel", ".xmlocel")
OCEL2_SUFFIXES = (".json", ".xml", ".sqlite")


class LogFormatError(Exception):
    """Raised when an object-centric event log cannot be parsed or converted."""


@dataclass
class ObjectFlowRecord:
    """Chronological activity history of one object."""

    id: str
    type: str
    timestamps: List[str] = field(default_factory=list)
    activities: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type, "timestamps": list(self.timestamps), "activities": list(self.activities)}


def object_type_name(column: str) -> str:
    """`ocel:type:orders` -> `Orders`."""
    name = column[len(OBJECT_TYPE_PREFIX):] if column.startswith(OBJECT_TYPE_PREFIX) else column
    return name[:1].upper() + name[1:]


def object_type_columns(df: pd.DataFrame) -> List[str]:
    return [col for col in df.columns if str(col).startswith(OBJECT_TYPE_PREFIX)]


@dataclass
class OcelContainer:
    """
    Wide OCEL table plus the per-object histories derived from it.

    The dataframe has one row per event with `ocel:eid`, `ocel:activity`,
    `ocel:timestamp` and one comma-joined `ocel:type:<X>` column per object type.
    """

    df: pd.DataFrame
    object_flows: Dict[str, ObjectFlowRecord]

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "OcelContainer":
        df = _normalise_dataframe(df)
        return cls(df=df, object_flows=build_object_flow_map(df))

    @property
    def object_types(self) -> List[str]:
        return [object_type_name(col) for col in object_type_columns(self.df)]

    @property
    def activities(self) -> Iterable[str]:
        return self.df[ACTIVITY_COL].unique()

    def observation_window(self, padding: pd.Timedelta = OBSERVATION_PADDING) -> Tuple[pd.Timestamp, pd.Timestamp]:
        if self.df.empty:
            raise LogFormatError("The event log has no events, so it has no observation window.")
        timestamps = self.df[TIMESTAMP_COL]
        return timestamps.min() - padding, timestamps.max() + padding


def _normalise_dataframe(df: pd.DataFrame) -> pd.DataFrame:
    """
    Check the OCEL columns and bring them into canonical types, sorted by time.
    """
    missing = set(REQUIRED_COLUMNS) - set(df.columns)
    if missing:
        raise LogFormatError(f"Missing required columns: {', '.join(sorted(missing))}")
    type_columns = object_type_columns(df)
    if not type_columns:
        raise LogFormatError(f"No object type columns found (expected columns named '{OBJECT_TYPE_PREFIX}<type>').")

    normalised = df.copy()
    normalised[EVENT_ID_COL] = normalised[EVENT_ID_COL].astype(str)
    normalised[ACTIVITY_COL] = normalised[ACTIVITY_COL].astype(str)
    try:
        normalised[TIMESTAMP_COL] = pd.to_datetime(normalised[TIMESTAMP_COL], utc=True)
    except (ValueError, TypeError) as exc:
        raise LogFormatError(f"Unable to parse '{TIMESTAMP_COL}' values: {exc}") from exc
    for col in type_columns:
        normalised[col] = normalised[col].fillna("").astype(str)

    # Stable sort keeps the file order of simultaneous events.
    return normalised.sort_values(TIMESTAMP_COL, kind="mergesort").reset_index(drop=True)


def build_object_flow_map(df: pd.DataFrame) -> Dict[str, ObjectFlowRecord]:
    """
    Group events by the objects they reference.

    Keys are `<Type>-<objectId>`. Multi-valued references are split on commas
    and empty references dropped. `df` must already be sorted by timestamp.
    """
    type_columns = object_type_columns(df)
    flows: Dict[str, ObjectFlowRecord] = {}
    columns = [df[ACTIVITY_COL], df[TIMESTAMP_COL]] + [df[col] for col in type_columns]
    for activity, timestamp, *references in zip(*columns):
        iso = pd.Timestamp(timestamp).isoformat()
        for col, raw in zip(type_columns, references):
            if pd.isna(raw):
                continue
            object_type = object_type_name(col)
            for object_id in str(raw).split(","):
                object_id = object_id.strip()
                if not object_id:
                    continue
                key = f"{object_type}-{object_id}"
                record = flows.setdefault(key, ObjectFlowRecord(id=object_id, type=object_type))
                record.timestamps.append(iso)
                record.activities.append(str(activity))
    LOGGER.debug("Built object flow map with %d objects", len(flows))
    return flows


def ocel_to_dataframe(ocel: OCEL) -> pd.DataFrame:
    """
    Flatten a pm4py OCEL object into the wide table with one comma-joined
    reference column per object type.
    """
    events = ocel.events[[EVENT_ID_COL, ACTIVITY_COL, TIMESTAMP_COL]]
    relations = ocel.relations
    if relations.empty:
        raise LogFormatError("The OCEL has no event-to-object relations.")
    references = (
        relations.groupby([EVENT_ID_COL, OBJECT_TYPE_COL])[OBJECT_ID_COL]
        .agg(lambda oids: ",".join(str(oid) for oid in oids))
        .unstack(OBJECT_TYPE_COL)
    )
    references.columns = [f"{OBJECT_TYPE_PREFIX}{col}" for col in references.columns]
    wide = events.merge(references, left_on=EVENT_ID_COL, right_index=True, how="left")
    for col in references.columns:
        wide[col] = wide[col].fillna("")
    return wide


def load_ocel_csv(file_bytes: bytes, sep: str = ";") -> OcelContainer:
    """
    Load a flat OCEL CSV (one row per event, `ocel:type:<X>` reference columns).
    """
    buffer = io.BytesIO(file_bytes)
    try:
        df = pd.read_csv(buffer, sep=sep, dtype=str, keep_default_na=False)
    except EmptyDataError as exc:
        raise LogFormatError("The CSV file is empty.") from exc
    except ParserError:
        buffer.seek(0)
        try:
            df = pd.read_csv(buffer, sep=None, engine="python", dtype=str, keep_default_na=False)
        except ParserError as exc_second:
            raise LogFormatError(
                "Unable to parse CSV content. Ensure the file uses a consistent delimiter (e.g., semicolon) "
                "and that embedded delimiters are quoted."
            ) from exc_second
    if len(df.columns) == 1 and sep != ",":
        # Probably the wrong delimiter; let pandas sniff it.
        buffer.seek(0)
        try:
            df = pd.read_csv(buffer, sep=None, engine="python", dtype=str, keep_default_na=False)
        except (ParserError, csv.Error) as exc:
            raise LogFormatError(f"Unable to detect the CSV delimiter: {exc}") from exc
    return OcelContainer.from_dataframe(df)


def load_ocel_file(path: Union[str, pathlib.Path]) -> OcelContainer:
    """
    Load an OCEL from disk: flat CSV, OCEL 1.0 (`.jsonocel`, `.xmlocel`) or
    OCEL 2.0 (`.json`, `.xml`, `.sqlite`) through pm4py.
    """
    path = pathlib.Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return load_ocel_csv(path.read_bytes())
    if suffix not in OCEL1_SUFFIXES + OCEL2_SUFFIXES:
        raise LogFormatError(f"Unsupported event log format: {suffix}")

    reader = pm4py.read_ocel if suffix in OCEL1_SUFFIXES else pm4py.read_ocel2
    try:
        ocel = reader(str(path))
    except (OSError, ValueError, KeyError) as exc:
        raise LogFormatError(f"Unable to read OCEL file {path.name}: {exc}") from exc
    LOGGER.info("Read %s with %d events", path.name, len(ocel.events))
    return OcelContainer.from_dataframe(ocel_to_dataframe(ocel))

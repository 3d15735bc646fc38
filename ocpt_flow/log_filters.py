from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

import pandas as pd

from .log_loader import ACTIVITY_COL, TIMESTAMP_COL, OcelContainer, object_type_columns, object_type_name


def filter_by_object_types(log_container: OcelContainer, object_types: Sequence[str]) -> OcelContainer:
    """Keep the reference columns of `object_types` and the events that still reference an object."""
    wanted = {ot.lower() for ot in object_types}
    all_columns = object_type_columns(log_container.df)
    kept = [col for col in all_columns if object_type_name(col).lower() in wanted]
    subset = log_container.df.drop(columns=[col for col in all_columns if col not in kept])
    if kept:
        has_reference = subset[kept].apply(lambda column: column.str.strip() != "").any(axis=1)
        subset = subset[has_reference]
    return OcelContainer.from_dataframe(subset.copy())


def filter_by_activity(log_container: OcelContainer, activities: Sequence[str]) -> OcelContainer:
    subset = log_container.df[log_container.df[ACTIVITY_COL].isin(activities)].copy()
    return OcelContainer.from_dataframe(subset)


def filter_by_time_range(
    log_container: OcelContainer, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> OcelContainer:
    subset = log_container.df
    if start:
        subset = subset[subset[TIMESTAMP_COL] >= _utc(start)]
    if end:
        subset = subset[subset[TIMESTAMP_COL] <= _utc(end)]
    subset = subset.copy()
    return OcelContainer.from_dataframe(subset)


def _utc(value: datetime) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")

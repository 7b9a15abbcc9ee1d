"""
Dimension builds: dim_region, dim_date and the LAD → region bridge.

The frame builders are pure functions over pandas frames so they can be
tested without a database; ``DimensionBuilder`` writes them to DuckDB as
full replacements with the declared constraints.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

import pandas as pd

from .base import WarehouseBuilder
from .errors import IntegrityViolation
from .normalize import ABSENT, normalize_text
from .reconcile import REGION, NameReconciler, OverrideTable, match_key
from .report import RECONCILIATION, QualityReport

logger = logging.getLogger(__name__)

REGION_COLUMNS = ["region_key", "region_code", "region_name", "country"]
DATE_COLUMNS = ["date_value", "year", "month", "month_name", "year_month_key"]
BRIDGE_COLUMNS = ["lad_code", "lad_name", "region_key", "region_code", "region_name"]

REGION_DDL = """
    region_key INTEGER PRIMARY KEY,
    region_code VARCHAR NOT NULL UNIQUE,
    region_name VARCHAR NOT NULL UNIQUE,
    country VARCHAR NOT NULL
"""

DATE_DDL = """
    date_value DATE PRIMARY KEY,
    year INTEGER NOT NULL,
    month INTEGER NOT NULL,
    month_name VARCHAR NOT NULL,
    year_month_key INTEGER NOT NULL
"""

BRIDGE_DDL = """
    lad_code VARCHAR PRIMARY KEY,
    lad_name VARCHAR NOT NULL UNIQUE,
    region_key INTEGER NOT NULL,
    region_code VARCHAR,
    region_name VARCHAR
"""


def _clean_text(series: pd.Series) -> pd.Series:
    return series.map(lambda v: None if normalize_text(v) is ABSENT else normalize_text(v))


def _fail_on_duplicates(df: pd.DataFrame, table: str, column: str, key=None) -> None:
    keys = df[column].map(key) if key else df[column]
    dupes = df[keys.duplicated(keep=False)]
    if not dupes.empty:
        raise IntegrityViolation(
            table,
            f"{dupes[column].nunique()} duplicate {column} value(s) in source",
            dupes.to_dict("records"),
        )


def _fail_on_blanks(df: pd.DataFrame, table: str, columns) -> None:
    blanks = df[df[list(columns)].isna().any(axis=1)]
    if not blanks.empty:
        raise IntegrityViolation(table, f"{len(blanks)} row(s) with blank {', '.join(columns)}", blanks.to_dict("records"))


# ---------------------------
# DIM: REGION
# ---------------------------
def build_region_frame(raw: pd.DataFrame, country: str = "England") -> pd.DataFrame:
    """
    Filter source regions to ``country`` and assign dense surrogate keys
    ordered by region code. Duplicate or blank codes and names are a source
    defect and fail the build; nothing is deduplicated.
    """
    df = pd.DataFrame(
        {
            "region_code": _clean_text(raw["region_code"]),
            "region_name": _clean_text(raw["region_name"]),
            "country": _clean_text(raw["country"]),
        }
    )
    scope = match_key(country)
    df = df[df["country"].map(match_key) == scope]

    _fail_on_blanks(df, "dim_region", ["region_code", "region_name"])
    _fail_on_duplicates(df, "dim_region", "region_code")
    _fail_on_duplicates(df, "dim_region", "region_name", key=match_key)

    df = df.sort_values("region_code", kind="mergesort").reset_index(drop=True)
    df.insert(0, "region_key", range(1, len(df) + 1))
    return df[REGION_COLUMNS]


# ---------------------------
# DIM: DATE
# ---------------------------
def generate_date_frame(start="1995-01-01", end="2025-12-31") -> pd.DataFrame:
    """One row per calendar day in ``[start, end]``; depends on nothing else."""
    start_ts, end_ts = pd.Timestamp(start), pd.Timestamp(end)
    if start_ts > end_ts:
        raise ValueError(f"date range start {start_ts.date()} is after end {end_ts.date()}")
    days = pd.date_range(start_ts, end_ts, freq="D")
    return pd.DataFrame(
        {
            "date_value": days.strftime("%Y-%m-%d"),
            "year": days.year.astype("int32"),
            "month": days.month.astype("int32"),
            "month_name": days.month_name(),
            "year_month_key": (days.year * 100 + days.month).astype("int32"),
        }
    )


# ---------------------------
# BRIDGE: LAD → REGION
# ---------------------------
def build_bridge_frame(
    raw_lookup: pd.DataFrame,
    dim_region: pd.DataFrame,
    overrides: Optional[OverrideTable] = None,
    report: Optional[QualityReport] = None,
    source: str = "lad_lookup",
) -> pd.DataFrame:
    """
    Map every local authority to a region key through the region name.

    Region names are corrected by the override table, then resolved against
    dim_region; LADs whose region does not resolve are reported and left out.
    Duplicate LAD codes or names fail the build.
    """
    overrides = overrides or OverrideTable()
    report = report if report is not None else QualityReport()

    df = pd.DataFrame(
        {
            "lad_code": _clean_text(raw_lookup["lad_code"]),
            "lad_name": _clean_text(raw_lookup["lad_name"]),
            "source_region": _clean_text(raw_lookup["region_name"]),
        }
    )
    df["row_number"] = range(1, len(df) + 1)
    blank = df[["lad_code", "lad_name", "source_region"]].isna().all(axis=1)
    report.record_deletion(source, "blank row", int(blank.sum()))
    df = df[~blank]

    _fail_on_blanks(df, "bridge_lad_region", ["lad_code", "lad_name"])
    _fail_on_duplicates(df, "bridge_lad_region", "lad_code")
    _fail_on_duplicates(df, "bridge_lad_region", "lad_name", key=match_key)

    corrected, n_rewritten = overrides.apply_series(df["source_region"], REGION)
    if n_rewritten:
        logger.info(f"   🔁 {source}: {n_rewritten} region name(s) rewritten by overrides")
    reconciler = NameReconciler.from_frame(dim_region, "region_name", "region_key", REGION)
    df["region_key"] = reconciler.resolve_series(corrected)

    unmatched = df[df["region_key"].isna()]
    for row in unmatched.itertuples():
        report.add(RECONCILIATION, source, row.row_number, "region_name", row.source_region, "no matching region")
    report.add_unmatched(source, REGION, ["" if n is None else n for n in unmatched["source_region"]])
    report.record_deletion(source, "unmatched region", len(unmatched))
    if len(unmatched):
        logger.warning(f"⚠️  {source}: {len(unmatched)} LAD(s) with an unmatched region name")

    matched = df[df["region_key"].notna()].astype({"region_key": "int64"}).merge(
        dim_region[["region_key", "region_code", "region_name"]], on="region_key", how="left"
    )
    matched = matched.sort_values("lad_code", kind="mergesort").reset_index(drop=True)
    return matched[BRIDGE_COLUMNS]


class DimensionBuilder(WarehouseBuilder):
    """Writes dim_region, dim_date and bridge_lad_region to DuckDB."""

    def create_dim_region(self, raw: pd.DataFrame) -> pd.DataFrame:
        country = self.config["etl"]["country"]
        logger.info(f"🗺️  Building dim_region (scope: {country}) ...")
        frame = build_region_frame(raw, country)
        self._write(
            "dim_region",
            REGION_DDL,
            frame,
            "SELECT CAST(region_key AS INTEGER), region_code, region_name, country FROM temp_df",
        )
        self._profile("dim_region", ["region_code", "region_name"])
        return frame

    def create_dim_date(self) -> pd.DataFrame:
        start, end = self.config["etl"]["date_start"], self.config["etl"]["date_end"]
        logger.info(f"📅 Building dim_date ({start} → {end}) ...")
        frame = generate_date_frame(start, end)
        self._write(
            "dim_date",
            DATE_DDL,
            frame,
            "SELECT CAST(date_value AS DATE), CAST(year AS INTEGER), CAST(month AS INTEGER), "
            "month_name, CAST(year_month_key AS INTEGER) FROM temp_df ORDER BY 1",
        )
        self._profile("dim_date", ["date_value"])
        return frame

    def create_bridge(self, raw_lookup: pd.DataFrame, dim_region: pd.DataFrame, overrides, report) -> pd.DataFrame:
        logger.info("🌉 Building bridge_lad_region ...")
        report.reset_source("lad_lookup")
        frame = build_bridge_frame(raw_lookup, dim_region, overrides, report)
        self._write(
            "bridge_lad_region",
            BRIDGE_DDL,
            frame,
            "SELECT lad_code, lad_name, CAST(region_key AS INTEGER), region_code, region_name FROM temp_df",
        )
        report.persist_unmatched(self.con)
        self._profile("bridge_lad_region", ["lad_code", "region_key"])
        return frame


def date_bounds(config: dict):
    """The inclusive date range covered by dim_date, as ``date`` objects."""
    return (
        pd.Timestamp(config["etl"]["date_start"]).date(),
        pd.Timestamp(config["etl"]["date_end"]).date(),
    )


def in_range(d: date, bounds) -> bool:
    return bounds[0] <= d <= bounds[1]

"""
Fact builds: fact_earnings, fact_rent and fact_house_price.

Every fact goes through the same steps. The measure is cleaned with the
field normalizer. The entity name is corrected by the override table and
resolved to a region key. The period is parsed, and every source row lands
in a ``stg_*`` table carrying its defects. Only defect-free rows reach the
fact, which is written as a full replacement with its grain as primary key.
House prices arrive per local authority and are averaged up to regions
through the bridge.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Optional

import pandas as pd

from .base import WarehouseBuilder
from .dimensions import date_bounds, in_range
from .errors import DataQualityError, IntegrityViolation
from .normalize import (
    ABSENT,
    DEFAULT_STRIP_CHARS,
    MEASURE_SCALE,
    STATUS_ABSENT,
    STATUS_OK,
    normalize_column,
    normalize_numeric,
    normalize_text,
)
from .reconcile import LOCAL_AUTHORITY, REGION, NameReconciler, OverrideTable, match_key, unmatched_report
from .report import CONVERSION, INTEGRITY, PERIOD, RECONCILIATION, QualityReport

logger = logging.getLogger(__name__)

STAGE_MEASURE_TYPE = f"DECIMAL(38,{MEASURE_SCALE})"

_YEAR_RE = re.compile(r"\d{4}", re.ASCII)
MONTH_FORMATS = ("%Y-%m-%d", "%Y-%m-%d %H:%M:%S", "%d/%m/%Y", "%Y-%m")


# ---------------------------
# Period parsing
# ---------------------------
def parse_year(raw) -> Optional[int]:
    """An explicit year column: ``"2024"`` → 2024."""
    value = normalize_numeric(raw, int, strip_chars=())
    return value if isinstance(value, int) else None


def parse_period_end_year(label) -> Optional[int]:
    """Last four characters of a period label: ``"Jan-Dec 2023"`` → 2023."""
    text = normalize_text(label)
    if text is ABSENT:
        return None
    tail = text[-4:]
    return int(tail) if _YEAR_RE.fullmatch(tail) else None


def parse_month(raw) -> Optional[date]:
    """Truncate a date to the first day of its month."""
    if isinstance(raw, (datetime, pd.Timestamp)):
        return date(raw.year, raw.month, 1)
    if isinstance(raw, date):
        return raw.replace(day=1)
    text = normalize_text(raw)
    if text is ABSENT:
        return None
    for fmt in MONTH_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return date(parsed.year, parsed.month, 1)
    return None


def _year_in_range(year: int, bounds) -> bool:
    return bounds[0].year <= year <= bounds[1].year


@dataclass(frozen=True)
class FactSpec:
    source: str
    raw_table: str
    table: str
    staging: str
    name_col: str
    period_col: str
    measure_col: str
    period_name: str
    period_type: str
    measure_name: str
    target: type
    parse_period: Callable
    key_space: str
    aggregate: bool = False

    @property
    def grain(self):
        return (self.period_name, "region_key")


FACTS: Dict[str, FactSpec] = {
    "earnings": FactSpec(
        source="earnings",
        raw_table="raw.earnings",
        table="fact_earnings",
        staging="stg_earnings",
        name_col="region_name",
        period_col="year",
        measure_col="median_annual_earnings",
        period_name="year",
        period_type="INTEGER",
        measure_name="median_annual_earnings",
        target=int,
        parse_period=parse_year,
        key_space=REGION,
    ),
    "rent": FactSpec(
        source="rent",
        raw_table="raw.rent",
        table="fact_rent",
        staging="stg_rent",
        name_col="region",
        period_col="period_label",
        measure_col="median",
        period_name="period_end_year",
        period_type="INTEGER",
        measure_name="median_monthly_rent",
        target=int,
        parse_period=parse_period_end_year,
        key_space=REGION,
    ),
    "house_prices": FactSpec(
        source="house_prices",
        raw_table="raw.house_prices",
        table="fact_house_price",
        staging="stg_house_price",
        name_col="region_name",
        period_col="date",
        measure_col="average_price",
        period_name="year_month",
        period_type="DATE",
        measure_name="average_price",
        target=Decimal,
        parse_period=parse_month,
        key_space=LOCAL_AUTHORITY,
        aggregate=True,
    ),
}


# ---------------------------
# Staging
# ---------------------------
def stage_fact_rows(
    spec: FactSpec,
    raw: pd.DataFrame,
    reconciler: NameReconciler,
    overrides: OverrideTable,
    report: QualityReport,
    bounds,
    strip_chars=DEFAULT_STRIP_CHARS,
) -> pd.DataFrame:
    """
    Clean, reconcile and date every source row of one fact.

    Returns one staged row per non-blank source row with the
    override-corrected ``resolved_name``, ``region_key``, period and
    measure (None where they could not be derived) and a ``defect`` column
    listing what excluded the row. Defects, unmatched names and deletion
    counts are recorded in ``report``.
    """
    source = spec.source
    names = raw[spec.name_col].map(lambda v: None if normalize_text(v) is ABSENT else normalize_text(v))
    staged = pd.DataFrame({"row_number": range(1, len(raw) + 1), "source_name": names.values})

    # Fully blank rows are dropped up front
    blank = (
        names.isna().values
        & raw[spec.period_col].map(lambda v: normalize_text(v) is ABSENT).values
        & raw[spec.measure_col].map(lambda v: normalize_text(v) is ABSENT).values
    )
    report.record_deletion(source, "blank row", int(blank.sum()))
    keep = ~blank
    staged = staged[keep].reset_index(drop=True)
    raw = raw[keep].reset_index(drop=True)
    defects = [[] for _ in range(len(staged))]

    # 1. measure
    values, status = normalize_column(raw[spec.measure_col], spec.target, strip_chars)
    for i in range(len(staged)):
        if status[i] != STATUS_OK:
            detail = "absent value" if status[i] == STATUS_ABSENT else "unconvertible value"
            report.add(CONVERSION, source, int(staged.at[i, "row_number"]), spec.measure_col, raw.at[i, spec.measure_col], detail)
            defects[i].append(CONVERSION)
    staged[spec.measure_name] = [None if v is None else format(Decimal(v), "f") for v in values]

    # 2. entity name
    corrected, n_rewritten = overrides.apply_series(staged["source_name"], spec.key_space)
    if n_rewritten:
        logger.info(f"   🔁 {source}: {n_rewritten} name(s) rewritten by overrides")
    staged["resolved_name"] = corrected
    staged["region_key"] = reconciler.resolve_series(corrected)
    missing = staged["region_key"].isna()
    for i in staged.index[missing.values]:
        report.add(RECONCILIATION, source, int(staged.at[i, "row_number"]), spec.name_col, staged.at[i, "source_name"], f"no match in {spec.key_space}")
        defects[i].append(RECONCILIATION)
    for row in unmatched_report(source, staged.loc[missing, "source_name"], spec.key_space).itertuples():
        report.add_unmatched(source, spec.key_space, {row.source_name: int(row.row_count)})

    # 3. period
    periods = []
    for i in range(len(staged)):
        raw_period = raw.at[i, spec.period_col]
        parsed = spec.parse_period(raw_period)
        if parsed is None:
            detail = "unparseable period"
        elif isinstance(parsed, date) and not in_range(parsed, bounds):
            detail, parsed = "period outside date dimension", None
        elif isinstance(parsed, int) and not _year_in_range(parsed, bounds):
            detail, parsed = "period outside date dimension", None
        else:
            detail = None
        if detail:
            report.add(PERIOD, source, int(staged.at[i, "row_number"]), spec.period_col, raw_period, detail)
            defects[i].append(PERIOD)
        periods.append(None if parsed is None else str(parsed))
    staged[spec.period_name] = periods

    staged["defect"] = [";".join(d) if d else None for d in defects]
    for reason, n in pd.Series([d[0] for d in defects if d], dtype=object).value_counts().items():
        report.record_deletion(source, f"{reason} defect", int(n))
    return staged[
        ["row_number", "source_name", "resolved_name", "region_key", spec.period_name, spec.measure_name, "defect"]
    ]


def grain_duplicates(clean: pd.DataFrame, columns) -> pd.DataFrame:
    return clean[clean.duplicated(subset=list(columns), keep=False)]


class FactBuilder(WarehouseBuilder):
    """Rebuilds each fact table from its raw snapshot and the built dimensions."""

    def __init__(self, con, config: dict, overrides: OverrideTable, report: QualityReport):
        super().__init__(con, config)
        self.overrides = overrides
        self.report = report
        self.bounds = date_bounds(config)
        self.strip_chars = tuple(config.get("normalize", {}).get("strip_chars", DEFAULT_STRIP_CHARS))
        self.policy = config["policy"]

    def _reconciler(self, spec: FactSpec) -> NameReconciler:
        if spec.key_space == LOCAL_AUTHORITY:
            sql = "SELECT lad_name AS name, region_key FROM bridge_lad_region"
        else:
            sql = "SELECT region_name AS name, region_key FROM dim_region"
        df = self._exec(sql, f"Load {spec.key_space} names", fetch=True)
        return NameReconciler.from_frame(df, "name", "region_key", spec.key_space)

    def _write_staging(self, spec: FactSpec, staged: pd.DataFrame) -> None:
        self._write(
            spec.staging,
            f"""
            row_number BIGINT NOT NULL,
            source_name VARCHAR,
            resolved_name VARCHAR,
            region_key INTEGER,
            {spec.period_name} {spec.period_type},
            {spec.measure_name} {STAGE_MEASURE_TYPE},
            defect VARCHAR
            """,
            staged,
            f"""
            SELECT CAST(row_number AS BIGINT), CAST(source_name AS VARCHAR), CAST(resolved_name AS VARCHAR),
                   CAST(region_key AS INTEGER),
                   CAST({spec.period_name} AS {spec.period_type}),
                   CAST({spec.measure_name} AS {STAGE_MEASURE_TYPE}), CAST(defect AS VARCHAR)
            FROM temp_df
            """,
        )

    def _enforce_policy(self, spec: FactSpec) -> None:
        n_conv = self.report.count(CONVERSION, spec.source)
        if n_conv and self.policy["on_conversion_defect"] == "fail":
            raise DataQualityError(spec.source, f"{n_conv} conversion defect(s) with policy 'fail'")
        n_unmatched = self.report.count(RECONCILIATION, spec.source)
        if n_unmatched and self.policy["on_unmatched_name"] == "fail":
            raise DataQualityError(spec.source, f"{n_unmatched} unmatched name(s) with policy 'fail'")

    def build(self, name: str, raw: pd.DataFrame) -> int:
        spec = FACTS[name]
        logger.info(f"⭐ Building {spec.table} ...")
        self.report.reset_source(spec.source)

        staged = stage_fact_rows(
            spec, raw, self._reconciler(spec), self.overrides, self.report, self.bounds, self.strip_chars
        )
        self._write_staging(spec, staged)
        self.report.persist_unmatched(self.con)
        self._enforce_policy(spec)

        clean = staged[staged["defect"].isna()]
        if spec.aggregate:
            lad_keys = clean.assign(lad_key=clean["resolved_name"].map(match_key))
            dupes = grain_duplicates(lad_keys, (spec.period_name, "lad_key"))
            if not dupes.empty:
                for row in dupes.itertuples():
                    self.report.add(INTEGRITY, spec.source, row.row_number, spec.name_col, row.source_name, "duplicate month for local authority")
                raise IntegrityViolation(spec.staging, f"{len(dupes)} rows repeat a (month, local authority) pair", dupes.to_dict("records"))
            select_sql = f"""
                SELECT CAST({spec.period_name} AS {spec.period_type}) AS {spec.period_name},
                       CAST(region_key AS INTEGER) AS region_key,
                       CAST(AVG(CAST({spec.measure_name} AS {STAGE_MEASURE_TYPE})) AS DECIMAL(18,2)) AS {spec.measure_name}
                FROM temp_df
                GROUP BY 1, 2
                ORDER BY 1, 2
            """
        else:
            dupes = grain_duplicates(clean, spec.grain)
            if not dupes.empty:
                for row in dupes.itertuples():
                    self.report.add(INTEGRITY, spec.source, row.row_number, spec.name_col, row.source_name, "duplicate grain")
                raise IntegrityViolation(spec.table, f"{len(dupes)} source rows share a {spec.grain} identity", dupes.to_dict("records"))
            select_sql = f"""
                SELECT CAST({spec.period_name} AS {spec.period_type}),
                       CAST(region_key AS INTEGER),
                       CAST(CAST({spec.measure_name} AS {STAGE_MEASURE_TYPE}) AS DECIMAL(18,2))
                FROM temp_df
                ORDER BY 1, 2
            """

        n = self._write(
            spec.table,
            f"""
            {spec.period_name} {spec.period_type} NOT NULL,
            region_key INTEGER NOT NULL,
            {spec.measure_name} DECIMAL(18,2) NOT NULL,
            PRIMARY KEY ({spec.period_name}, region_key)
            """,
            clean,
            select_sql,
        )
        self._profile(spec.table, [spec.period_name, "region_key", spec.measure_name])
        return n

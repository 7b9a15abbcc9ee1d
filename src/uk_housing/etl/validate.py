# src/uk_housing/etl/validate.py
"""
Integrity checks over the built tables.

Each check is a pure read over DuckDB and returns a ``CheckResult`` whose
``violations`` frame is empty when the check passes. ``IntegrityValidator``
groups the checks per stage, keeps every result for the diagnostics table
and raises on blocking failures.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from ..db.duckdb_utils import replace_table, table_exists
from .errors import IntegrityViolation

logger = logging.getLogger(__name__)

SAMPLE_ROWS = 5


@dataclass
class CheckResult:
    name: str
    table: str
    violations: pd.DataFrame = field(repr=False)
    blocking: bool = True
    stage: str = ""

    @property
    def count(self) -> int:
        return len(self.violations)

    @property
    def passed(self) -> bool:
        return self.violations.empty

    def sample(self, n: int = SAMPLE_ROWS) -> List[dict]:
        return json.loads(self.violations.head(n).to_json(orient="records", date_format="iso"))


# ---------------------------
# Checks
# ---------------------------
def check_primary_key(con, table: str, columns: Sequence[str]) -> CheckResult:
    """Rows whose identity is null or shared with another row."""
    cols = ", ".join(columns)
    null_pred = " OR ".join(f"{c} IS NULL" for c in columns)
    df = con.execute(
        f"""
        SELECT {cols}, COUNT(*) AS occurrences
        FROM {table}
        GROUP BY {cols}
        HAVING COUNT(*) > 1 OR {null_pred}
        ORDER BY {cols}
        """
    ).fetchdf()
    return CheckResult(f"primary_key({cols})", table, df)


def check_unique(con, table: str, column: str) -> CheckResult:
    df = con.execute(
        f"""
        SELECT {column}, COUNT(*) AS occurrences
        FROM {table}
        WHERE {column} IS NOT NULL
        GROUP BY {column}
        HAVING COUNT(*) > 1
        ORDER BY {column}
        """
    ).fetchdf()
    return CheckResult(f"unique({column})", table, df)


def check_foreign_key(con, table: str, column: str, ref_table: str, ref_column: str) -> CheckResult:
    """Orphans: values of ``table.column`` with no row in ``ref_table``."""
    df = con.execute(
        f"""
        SELECT t.*
        FROM {table} t
        WHERE t.{column} IS NULL
           OR NOT EXISTS (SELECT 1 FROM {ref_table} r WHERE r.{ref_column} = t.{column})
        """
    ).fetchdf()
    return CheckResult(f"foreign_key({column} -> {ref_table}.{ref_column})", table, df)


def check_not_null(con, table: str, columns: Sequence[str]) -> CheckResult:
    pred = " OR ".join(f"{c} IS NULL" for c in columns)
    df = con.execute(f"SELECT * FROM {table} WHERE {pred}").fetchdf()
    return CheckResult(f"not_null({', '.join(columns)})", table, df)


def check_names_accounted(con, staging_table: str, source: str) -> CheckResult:
    """Every staged name either resolved or is listed in etl_unmatched_names."""
    df = con.execute(
        f"""
        SELECT s.row_number, s.source_name
        FROM {staging_table} s
        WHERE s.region_key IS NULL
          AND NOT EXISTS (
              SELECT 1 FROM etl_unmatched_names u
              WHERE u.source = ? AND u.source_name = COALESCE(s.source_name, '')
          )
        ORDER BY s.row_number
        """,
        [source],
    ).fetchdf()
    return CheckResult("names_accounted", staging_table, df)


def check_lookup_names_accounted(con, raw_table: str = "raw.lad_lookup", source: str = "lad_lookup") -> Optional[CheckResult]:
    """LAD rows left out of the bridge must be blank or carry a reported region name."""
    if not table_exists(con, raw_table):
        return None
    df = con.execute(
        f"""
        SELECT l.lad_code, l.lad_name, l.region_name
        FROM {raw_table} l
        WHERE NOT EXISTS (SELECT 1 FROM bridge_lad_region b WHERE b.lad_code = TRIM(l.lad_code))
          AND NOT EXISTS (
              SELECT 1 FROM etl_unmatched_names u
              WHERE u.source = ? AND u.source_name = COALESCE(TRIM(l.region_name), '')
          )
          AND NOT (
              COALESCE(TRIM(l.lad_code), '') = ''
              AND COALESCE(TRIM(l.lad_name), '') = ''
              AND COALESCE(TRIM(l.region_name), '') = ''
          )
        """,
        [source],
    ).fetchdf()
    return CheckResult("names_accounted", "bridge_lad_region", df)


def check_contiguous_dates(con, table: str = "dim_date") -> CheckResult:
    df = con.execute(
        f"""
        SELECT prev_date, date_value
        FROM (
            SELECT date_value, LAG(date_value) OVER (ORDER BY date_value) AS prev_date
            FROM {table}
        )
        WHERE prev_date IS NOT NULL AND date_diff('day', prev_date, date_value) <> 1
        """
    ).fetchdf()
    return CheckResult("contiguous_dates", table, df)


def regions_missing_from_fact(con, fact_table: str) -> CheckResult:
    """Regions with no rows in ``fact_table``. Reported, never fatal."""
    df = con.execute(
        f"""
        SELECT d.region_key, d.region_code, d.region_name
        FROM dim_region d
        WHERE NOT EXISTS (SELECT 1 FROM {fact_table} f WHERE f.region_key = d.region_key)
        ORDER BY d.region_key
        """
    ).fetchdf()
    return CheckResult("regions_missing_from_fact", fact_table, df, blocking=False)


# ---------------------------
# Stage batteries
# ---------------------------
def dimension_checks(con) -> List[CheckResult]:
    return [
        check_primary_key(con, "dim_region", ["region_key"]),
        check_unique(con, "dim_region", "region_code"),
        check_unique(con, "dim_region", "region_name"),
        check_not_null(con, "dim_region", ["region_code", "region_name", "country"]),
        check_primary_key(con, "dim_date", ["date_value"]),
        check_contiguous_dates(con),
    ]


def bridge_checks(con) -> List[CheckResult]:
    return [
        check_primary_key(con, "bridge_lad_region", ["lad_code"]),
        check_unique(con, "bridge_lad_region", "lad_name"),
        check_foreign_key(con, "bridge_lad_region", "region_key", "dim_region", "region_key"),
        check_lookup_names_accounted(con),
    ]


def fact_checks(con, spec) -> List[CheckResult]:
    checks = [
        check_primary_key(con, spec.table, list(spec.grain)),
        check_foreign_key(con, spec.table, "region_key", "dim_region", "region_key"),
        check_not_null(con, spec.table, [spec.measure_name]),
        check_names_accounted(con, spec.staging, spec.source),
        regions_missing_from_fact(con, spec.table),
    ]
    if spec.period_type == "DATE":
        checks.append(check_foreign_key(con, spec.table, spec.period_name, "dim_date", "date_value"))
    else:
        checks.append(check_foreign_key(con, spec.table, spec.period_name, "dim_date", "year"))
    return checks


class IntegrityValidator:
    """Runs check batteries per stage and keeps the results for reporting."""

    def __init__(self):
        self.results: List[CheckResult] = []

    def run(self, stage: str, checks) -> List[CheckResult]:
        logger.info(f"🔎 Validating stage '{stage}' ...")
        ran = []
        for result in checks:
            if result is None:
                continue
            result.stage = stage
            ran.append(result)
            if result.passed:
                logger.info(f"   ✅ {result.table}.{result.name}")
            elif result.blocking:
                logger.error(f"   ❌ {result.table}.{result.name}: {result.count} violation(s) | sample: {result.sample()}")
            else:
                logger.warning(f"   ⚠️  {result.table}.{result.name}: {result.count} row(s)")
        self.results = [r for r in self.results if r.stage != stage] + ran
        return ran

    @staticmethod
    def raise_for_failures(results: List[CheckResult]) -> None:
        failed = [r for r in results if r.blocking and not r.passed]
        if failed:
            first = failed[0]
            names = ", ".join(f"{r.table}.{r.name}" for r in failed)
            raise IntegrityViolation(first.table, f"{len(failed)} integrity check(s) failed: {names}", first.sample())

    def summary(self) -> Dict[str, dict]:
        return {
            f"{r.stage}:{r.table}.{r.name}": {"violations": r.count, "blocking": r.blocking}
            for r in self.results
        }

    def results_frame(self) -> pd.DataFrame:
        rows = [
            {
                "stage": r.stage,
                "check_name": r.name,
                "table_name": r.table,
                "violation_count": r.count,
                "blocking": r.blocking,
                "passed": r.passed,
                "sample": json.dumps(r.sample(), default=str),
            }
            for r in self.results
        ]
        return pd.DataFrame(
            rows, columns=["stage", "check_name", "table_name", "violation_count", "blocking", "passed", "sample"]
        )

    def persist(self, con) -> None:
        replace_table(
            con,
            "etl_check_results",
            "stage VARCHAR, check_name VARCHAR, table_name VARCHAR, violation_count BIGINT, "
            "blocking BOOLEAN, passed BOOLEAN, sample VARCHAR",
            self.results_frame(),
            "SELECT CAST(stage AS VARCHAR), CAST(check_name AS VARCHAR), CAST(table_name AS VARCHAR), "
            "CAST(violation_count AS BIGINT), CAST(blocking AS BOOLEAN), CAST(passed AS BOOLEAN), "
            "CAST(sample AS VARCHAR) FROM temp_df",
        )

# src/uk_housing/ingest/load_sources.py
"""
Load the raw CSV snapshots into the ``raw`` schema.

Files are read verbatim with every column as text; no cleaning happens
here. Each load replaces the previous snapshot of that source.
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
from tqdm import tqdm

from ..config import load_config, setup_logging
from ..db.duckdb_utils import DuckDBConn, replace_table
from ..etl.errors import SourceSchemaError

logger = logging.getLogger(__name__)

EXPECTED_COLUMNS = {
    "regions": ["region_code", "region_name", "country"],
    "earnings": ["year", "region_name", "median_annual_earnings"],
    "rent": ["region", "period_label", "median"],
    "house_prices": ["date", "region_name", "average_price"],
    "lad_lookup": ["lad_code", "lad_name", "region_code", "region_name"],
}

# ONS publishes the lookup with vintage-coded headers
COLUMN_ALIASES = {
    "lad_lookup": {
        "lad23cd": "lad_code",
        "lad23nm": "lad_name",
        "rgn23cd": "region_code",
        "rgn23nm": "region_name",
    },
}


def raw_table(source: str) -> str:
    return f"raw.{source}"


def _standardise_headers(df: pd.DataFrame, source: str) -> pd.DataFrame:
    aliases = COLUMN_ALIASES.get(source, {})
    cols = []
    for c in df.columns:
        key = str(c).strip().lower()
        cols.append(aliases.get(key, key))
    df.columns = cols
    return df


def validate_source_columns(df: pd.DataFrame, source: str) -> None:
    """Raise ``SourceSchemaError`` when an expected column is missing."""
    expected = EXPECTED_COLUMNS[source]
    missing = [c for c in expected if c not in df.columns]
    extra = [c for c in df.columns if c not in expected]
    if missing:
        raise SourceSchemaError(f"{source}: missing expected columns {missing}; found {list(df.columns)}")
    if extra:
        logger.info(f"ℹ️  {source}: extra columns kept in raw snapshot: {extra[:10]}{'...' if len(extra) > 10 else ''}")


def read_source(path, source: str) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SourceSchemaError(f"{source}: source file not found at {path}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    df = _standardise_headers(df, source)
    validate_source_columns(df, source)
    return df


def write_raw(con, source: str, df: pd.DataFrame) -> int:
    ddl = ", ".join(f'"{c}" VARCHAR' for c in df.columns)
    replace_table(con, raw_table(source), ddl, df)
    return len(df)


def load_sources(con, config: dict, errors: Optional[Dict[str, str]] = None) -> Dict[str, pd.DataFrame]:
    """
    Read every configured source and snapshot it into ``raw.<source>``.

    Without ``errors`` the first bad source raises ``SourceSchemaError``.
    With it, each failure is recorded as ``errors[source]`` and that source
    is left out of the returned frames.
    """
    src_cfg = config["sources"]
    base = Path(src_cfg.get("dir", "."))
    frames = {}
    for source in tqdm(list(EXPECTED_COLUMNS), desc="Sources"):
        path = base / src_cfg[source]
        try:
            df = read_source(path, source)
        except SourceSchemaError as e:
            if errors is None:
                raise
            logger.error(f"❌ {e}")
            errors[source] = str(e)
            continue
        n = write_raw(con, source, df)
        logger.info(f"   📥 {raw_table(source)}: {n:,} rows from {path}")
        frames[source] = df
    return frames


if __name__ == "__main__":
    cfg = load_config()
    setup_logging(cfg["logging"]["level"], cfg["logging"]["dir"])
    with DuckDBConn(cfg["db"]["path"]) as con:
        load_sources(con, cfg)

import logging
from datetime import datetime
from typing import Dict, List

from ..db.duckdb_utils import replace_table, row_count

logger = logging.getLogger(__name__)


class WarehouseBuilder:
    """Timing, profiling and full-replacement writes shared by the builders."""

    def __init__(self, con, config: dict):
        self.con = con
        self.config = config
        self.performance: Dict[str, float] = {}
        self.quality: Dict[str, dict] = {}

    def _exec(self, sql: str, label: str, params=None, fetch: bool = False):
        t0 = datetime.now()
        try:
            cur = self.con.execute(sql, params) if params is not None else self.con.execute(sql)
            out = cur.fetchdf() if fetch else None
            dt = (datetime.now() - t0).total_seconds()
            self.performance[label] = dt
            logger.debug(f"⏱️  {label}: {dt:.2f}s")
            return out
        except Exception as e:
            dt = (datetime.now() - t0).total_seconds()
            logger.error(f"❌ Failed: {label} after {dt:.2f}s | {e}")
            raise

    def _write(self, table: str, ddl: str, df, select_sql: str = "SELECT * FROM temp_df") -> int:
        t0 = datetime.now()
        try:
            replace_table(self.con, table, ddl, df, select_sql)
        except Exception as e:
            dt = (datetime.now() - t0).total_seconds()
            logger.error(f"❌ Failed: write {table} after {dt:.2f}s | {e}")
            raise
        self.performance[f"Write {table}"] = (datetime.now() - t0).total_seconds()
        n = row_count(self.con, table)
        logger.info(f"   ✅ {table} rows: {n:,}")
        return n

    # ---------------------------
    # DATA QUALITY PROFILE
    # ---------------------------
    def _profile(self, table: str, key_columns: List[str]) -> None:
        try:
            q = {}
            total = row_count(self.con, table)
            q["total_records"] = total
            for col in key_columns:
                nulls = self.con.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE {col} IS NULL OR TRIM(CAST({col} AS VARCHAR)) = ''"
                ).fetchone()[0]
                q[f"{col}_null_rate"] = (nulls / total) if total else 0.0
            self.quality[table] = q
            logger.info(f"   📋 {table} quality: {q}")
        except Exception as e:
            logger.warning(f"⚠️  Quality profiling failed for {table}: {e}")

# src/uk_housing/etl/pipeline.py
"""
End-to-end warehouse build.

    python -m uk_housing.etl.pipeline [--config conf/config.toml]

Stages run in order over fully materialized tables: raw snapshots,
dimensions, bridge, facts, diagnostics, views. A dimension failure stops
the run. A bridge failure only withholds the house-price fact, and each
fact fails on its own without stopping the others. A source file that
cannot be read fails only the stages that depend on it.
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import duckdb
from tqdm import tqdm

from ..config import DEFAULT_CONFIG_PATH, load_config, setup_logging
from ..db.duckdb_utils import DuckDBConn, row_count
from ..ingest.load_sources import load_sources
from ..views import DIMENSIONS, publish_views
from .dimensions import DimensionBuilder
from .errors import HousingETLError, SourceSchemaError
from .facts import FACTS, FactBuilder
from .reconcile import LOCAL_AUTHORITY, OverrideTable
from .report import QualityReport
from .validate import CheckResult, IntegrityValidator, bridge_checks, dimension_checks, fact_checks

logger = logging.getLogger(__name__)

BRIDGE = "bridge"
STAGE_ERRORS = (HousingETLError, duckdb.Error)


@dataclass
class PipelineResult:
    published: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    report: QualityReport = field(default_factory=QualityReport)
    checks: List[CheckResult] = field(default_factory=list)
    views: List[str] = field(default_factory=list)
    row_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class HousingPipeline:
    def __init__(self, config: dict):
        self.config = config
        self.db_path = config["db"]["path"]
        self.overrides = OverrideTable.from_toml(config["etl"]["overrides"])
        self.report = QualityReport()
        self.validator = IntegrityValidator()
        self.performance: Dict[str, float] = {}
        self.quality: Dict[str, dict] = {}

    def run(self, con=None) -> PipelineResult:
        """Build the warehouse; opens ``db.path`` unless a connection is given."""
        if con is not None:
            return self._run(con)
        with DuckDBConn(self.db_path) as own:
            return self._run(own)

    # ---------------------------
    # Stages
    # ---------------------------
    def _run(self, con) -> PipelineResult:
        t0 = datetime.now()
        logger.info("🚀 UK housing warehouse build starting")
        result = PipelineResult(report=self.report)

        load_errors: Dict[str, str] = {}
        frames = load_sources(con, self.config, load_errors)

        dims = DimensionBuilder(con, self.config)
        try:
            if "regions" in load_errors:
                raise SourceSchemaError(load_errors["regions"])
            dim_region = dims.create_dim_region(frames["regions"])
            dims.create_dim_date()
            self.validator.raise_for_failures(self.validator.run(DIMENSIONS, dimension_checks(con)))
        except STAGE_ERRORS as e:
            logger.error(f"❌ Dimension build failed, nothing downstream can be built: {e}")
            self._collect(dims)
            result.failed[DIMENSIONS] = str(e)
            publish_views(con, [])
            self._finish(con, result, t0)
            raise
        published = [DIMENSIONS]

        try:
            if "lad_lookup" in load_errors:
                raise SourceSchemaError(load_errors["lad_lookup"])
            dims.create_bridge(frames["lad_lookup"], dim_region, self.overrides, self.report)
            self.validator.raise_for_failures(self.validator.run(BRIDGE, bridge_checks(con)))
            published.append(BRIDGE)
        except STAGE_ERRORS as e:
            logger.error(f"❌ Bridge build failed: {e}")
            result.failed[BRIDGE] = str(e)
        self._collect(dims)

        facts = FactBuilder(con, self.config, self.overrides, self.report)
        for name in tqdm(list(FACTS), desc="Facts"):
            spec = FACTS[name]
            if name in load_errors:
                logger.error(f"❌ Skipping {spec.table}: source not loaded")
                result.failed[name] = load_errors[name]
                continue
            if spec.key_space == LOCAL_AUTHORITY and BRIDGE not in published:
                logger.error(f"❌ Skipping {spec.table}: bridge_lad_region is not available")
                result.failed[name] = "bridge_lad_region unavailable"
                continue
            try:
                facts.build(name, frames[name])
                self.validator.raise_for_failures(self.validator.run(name, fact_checks(con, spec)))
                published.append(name)
            except STAGE_ERRORS as e:
                logger.error(f"❌ {spec.table} not published: {e}")
                result.failed[name] = str(e)
        self._collect(facts)

        result.published = published
        result.views = publish_views(con, published)
        self._finish(con, result, t0)
        return result

    def _collect(self, builder) -> None:
        self.performance.update(builder.performance)
        self.quality.update(builder.quality)

    def _finish(self, con, result: PipelineResult, t0: datetime) -> None:
        self.report.persist(con)
        self.validator.persist(con)
        result.checks = list(self.validator.results)
        for table in ("dim_region", "dim_date", "bridge_lad_region") + tuple(s.table for s in FACTS.values()):
            try:
                result.row_counts[table] = row_count(con, table)
            except duckdb.Error:
                result.row_counts[table] = 0
        self.performance["Total run"] = (datetime.now() - t0).total_seconds()

        if result.failed:
            logger.warning(f"⚠️  Build finished with failures: {sorted(result.failed)}")
        else:
            logger.info(f"✅ Warehouse build complete in {self.performance['Total run']:.2f}s")
        logger.info(f"   📋 Quality: {self.report.summary()}")

    # ---------------------------
    # SUMMARY REPORT
    # ---------------------------
    def export_metrics(self, result: PipelineResult, out_path: Path) -> None:
        out_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "performance": self.performance,
            "quality": self.quality,
            "row_counts": result.row_counts,
            "published": result.published,
            "failed": result.failed,
            "defects": self.report.summary(),
            "checks": self.validator.summary(),
            "views": result.views,
        }
        with out_path.open("w") as f:
            json.dump(payload, f, indent=2, default=str)
        logger.info(f"📊 Metrics saved → {out_path}")


def metrics_path(config: dict) -> Path:
    return Path(config["logging"]["dir"]) / f"pipeline_metrics_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json"


# ---------------------------
# MAIN ORCHESTRATION
# ---------------------------
def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build the UK housing star schema in DuckDB.")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG_PATH), help="path to config.toml")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    setup_logging(cfg["logging"]["level"], cfg["logging"]["dir"])
    if cfg["etl"].get("debug"):
        logging.getLogger("uk_housing").setLevel(logging.DEBUG)

    pipeline = HousingPipeline(cfg)
    try:
        result = pipeline.run()
    except STAGE_ERRORS as e:
        logger.error(f"❌ Build aborted: {e}")
        return 1
    pipeline.export_metrics(result, metrics_path(cfg))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())

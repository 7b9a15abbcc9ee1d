"""Run-wide accumulation of data-quality defects."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from ..db.duckdb_utils import replace_table

logger = logging.getLogger(__name__)

CONVERSION = "conversion"
RECONCILIATION = "reconciliation"
PERIOD = "period"
INTEGRITY = "integrity"

DEFECT_COLUMNS = ["kind", "source", "row_number", "column", "raw_value", "detail"]
UNMATCHED_COLUMNS = ["source", "key_space", "source_name", "row_count"]
DELETION_COLUMNS = ["source", "reason", "deleted_rows"]


@dataclass(frozen=True)
class Defect:
    kind: str
    source: str
    row_number: Optional[int]
    column: str
    raw_value: Optional[str]
    detail: str


@dataclass
class QualityReport:
    """
    Collects every cleaning, reconciliation and period defect of a run so
    that one pass surfaces all problems instead of stopping at the first.
    """

    defects: List[Defect] = field(default_factory=list)
    unmatched: Dict[tuple, Counter] = field(default_factory=dict)
    deletions: Dict[tuple, int] = field(default_factory=dict)

    def add(self, kind, source, row_number, column, raw_value, detail) -> None:
        raw = None if raw_value is None else str(raw_value)
        self.defects.append(Defect(kind, source, row_number, column, raw, detail))

    def add_unmatched(self, source: str, key_space: str, names) -> None:
        counts = self.unmatched.setdefault((source, key_space), Counter())
        counts.update(names)

    def record_deletion(self, source: str, reason: str, n: int) -> None:
        if n:
            key = (source, reason)
            self.deletions[key] = self.deletions.get(key, 0) + int(n)
            logger.info(f"   🗑️  {source}: deleted {n:,} rows ({reason})")

    def reset_source(self, source: str) -> None:
        """Forget everything recorded for ``source`` before it is rebuilt."""
        self.defects = [d for d in self.defects if d.source != source]
        self.unmatched = {k: v for k, v in self.unmatched.items() if k[0] != source}
        self.deletions = {k: v for k, v in self.deletions.items() if k[0] != source}

    def count(self, kind: Optional[str] = None, source: Optional[str] = None) -> int:
        return sum(
            1
            for d in self.defects
            if (kind is None or d.kind == kind) and (source is None or d.source == source)
        )

    def unmatched_names(self, source: str) -> List[str]:
        names = set()
        for (src, _), counts in self.unmatched.items():
            if src == source:
                names.update(counts)
        return sorted(names)

    # ---------------------------
    # Frames
    # ---------------------------
    def defects_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame([asdict(d) for d in self.defects], columns=DEFECT_COLUMNS)
        frame["row_number"] = frame["row_number"].astype("Int64")
        return frame

    def unmatched_frame(self) -> pd.DataFrame:
        rows = [
            {"source": src, "key_space": space, "source_name": name, "row_count": n}
            for (src, space), counts in sorted(self.unmatched.items())
            for name, n in sorted(counts.items())
        ]
        return pd.DataFrame(rows, columns=UNMATCHED_COLUMNS)

    def deletions_frame(self) -> pd.DataFrame:
        rows = [
            {"source": src, "reason": reason, "deleted_rows": n}
            for (src, reason), n in sorted(self.deletions.items())
        ]
        return pd.DataFrame(rows, columns=DELETION_COLUMNS)

    def summary(self) -> dict:
        by_kind = Counter(d.kind for d in self.defects)
        return {
            "defects": dict(by_kind),
            "unmatched_names": sum(len(c) for c in self.unmatched.values()),
            "deleted_rows": sum(self.deletions.values()),
        }

    # ---------------------------
    # Persistence
    # ---------------------------
    def persist_unmatched(self, con) -> None:
        replace_table(
            con,
            "etl_unmatched_names",
            "source VARCHAR NOT NULL, key_space VARCHAR NOT NULL, source_name VARCHAR NOT NULL, row_count BIGINT NOT NULL",
            self.unmatched_frame(),
            "SELECT CAST(source AS VARCHAR), CAST(key_space AS VARCHAR), CAST(source_name AS VARCHAR), "
            "CAST(row_count AS BIGINT) FROM temp_df",
        )

    def persist(self, con) -> None:
        """Write defects, unmatched names and deletion counts as queryable tables."""
        replace_table(
            con,
            "etl_defects",
            "kind VARCHAR, source VARCHAR, row_number BIGINT, \"column\" VARCHAR, raw_value VARCHAR, detail VARCHAR",
            self.defects_frame(),
            "SELECT CAST(kind AS VARCHAR), CAST(source AS VARCHAR), CAST(row_number AS BIGINT), "
            "CAST(\"column\" AS VARCHAR), CAST(raw_value AS VARCHAR), CAST(detail AS VARCHAR) FROM temp_df",
        )
        self.persist_unmatched(con)
        replace_table(
            con,
            "etl_deletions",
            "source VARCHAR, reason VARCHAR, deleted_rows BIGINT",
            self.deletions_frame(),
            "SELECT CAST(source AS VARCHAR), CAST(reason AS VARCHAR), CAST(deleted_rows AS BIGINT) FROM temp_df",
        )
        logger.info(f"   📋 Quality report persisted: {self.summary()}")

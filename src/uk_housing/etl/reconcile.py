"""
Name reconciliation across independently sourced datasets.

Earnings, rents, house prices and the ONS lookup all spell region and
local-authority names their own way ("NORTH EAST", "North East", "EAST").
Names are matched on a case-folded, trimmed key against a canonical key
space, with no fuzzy matching. Known synonyms are rewritten beforehand
from a versioned override table kept in configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

import pandas as pd
import toml

from .errors import IntegrityViolation
from .normalize import ABSENT, normalize_text

logger = logging.getLogger(__name__)

REGION = "region"
LOCAL_AUTHORITY = "local_authority"
KEY_SPACES = (REGION, LOCAL_AUTHORITY)


def match_key(name) -> Optional[str]:
    """Case-fold and trim; blank or missing names have no key."""
    text = normalize_text(name)
    if text is ABSENT:
        return None
    return text.casefold()


class OverrideTable:
    """
    Source string → canonical string corrections per key space.

    Loaded from TOML::

        version = 3

        [region]
        "EAST" = "East of England"
    """

    def __init__(self, mappings: Optional[Mapping[str, Mapping[str, str]]] = None, version: int = 0):
        self.version = int(version)
        self._map: Dict[str, Dict[str, str]] = {space: {} for space in KEY_SPACES}
        for space, entries in (mappings or {}).items():
            if space not in KEY_SPACES:
                raise ValueError(f"Unknown override key space {space!r}; expected one of {KEY_SPACES}")
            for source, target in entries.items():
                src_key = match_key(source)
                if src_key is None or match_key(target) is None:
                    raise ValueError(f"Blank override entry in [{space}]: {source!r} -> {target!r}")
                self._map[space][src_key] = str(target).strip()
        self._reject_chains()

    def _reject_chains(self) -> None:
        for space, entries in self._map.items():
            for src_key, target in entries.items():
                tgt_key = match_key(target)
                if tgt_key in entries and tgt_key != src_key:
                    raise ValueError(
                        f"Chained override in [{space}]: {src_key!r} -> {target!r} -> {entries[tgt_key]!r}"
                    )

    @classmethod
    def from_toml(cls, path) -> "OverrideTable":
        path = Path(path)
        if not path.exists():
            logger.warning(f"⚠️  Override file {path} not found; no name overrides applied")
            return cls()
        data = toml.load(str(path))
        version = data.pop("version", 0)
        table = cls(data, version=version)
        logger.info(f"✅ Loaded override table v{table.version} from {path}: {len(table)} entries")
        return table

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._map.values())

    def entries(self, key_space: str) -> Dict[str, str]:
        return dict(self._map[key_space])

    def apply(self, name, key_space: str = REGION):
        """Rewrite ``name`` to its canonical spelling; anything else is returned unchanged."""
        key = match_key(name)
        if key is None:
            return name
        return self._map[key_space].get(key, name)

    def apply_series(self, series: pd.Series, key_space: str = REGION) -> Tuple[pd.Series, int]:
        rewritten = series.map(lambda v: self.apply(v, key_space))
        changed = int((rewritten.fillna("") != series.fillna("")).sum())
        return rewritten, changed


class NameReconciler:
    """Resolves free-text names onto the keys of one canonical key space."""

    def __init__(self, canonical: Union[Mapping[str, int], Iterable[Tuple[str, int]]], key_space: str = REGION):
        self.key_space = key_space
        self._index: Dict[str, int] = {}
        seen: Dict[str, str] = {}
        pairs = canonical.items() if isinstance(canonical, Mapping) else canonical
        for name, key in pairs:
            k = match_key(name)
            if k is None:
                raise IntegrityViolation(key_space, "canonical name is blank", [{"name": name, "key": key}])
            if k in seen:
                raise IntegrityViolation(
                    key_space,
                    f"canonical name {name!r} repeats {seen[k]!r} after case-folding",
                    [{"name": seen[k]}, {"name": name}],
                )
            seen[k] = name
            self._index[k] = int(key)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, name_col: str, key_col: str, key_space: str = REGION):
        return cls(list(zip(df[name_col], df[key_col])), key_space)

    def __len__(self) -> int:
        return len(self._index)

    def resolve(self, name) -> Optional[int]:
        k = match_key(name)
        if k is None:
            return None
        return self._index.get(k)

    def resolve_series(self, series: pd.Series) -> pd.Series:
        """Resolve a column; unresolved rows hold <NA>."""
        return pd.Series([self.resolve(v) for v in series.tolist()], index=series.index, dtype="Int64")


def unmatched_report(source: str, names: pd.Series, key_space: str = REGION) -> pd.DataFrame:
    """Source name → row count for names that did not resolve."""
    cleaned = names.map(lambda v: "" if normalize_text(v) is ABSENT else normalize_text(v))
    counts = cleaned.value_counts().sort_index()
    return pd.DataFrame(
        {
            "source": source,
            "key_space": key_space,
            "source_name": counts.index.astype(str),
            "row_count": counts.values.astype("int64"),
        }
    )

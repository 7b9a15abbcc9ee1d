"""
Shared fixtures: an in-memory DuckDB connection, a config pointing at
temporary paths, and a small but complete set of raw source frames.

Region keys in the sample scope (ordered by code):
    1 = North East (E12000001)
    2 = East of England (E12000006)
    3 = London (E12000007)
"""

import copy

import duckdb
import pandas as pd
import pytest

from uk_housing.config import DEFAULTS
from uk_housing.etl.dimensions import DimensionBuilder
from uk_housing.etl.reconcile import OverrideTable
from uk_housing.etl.report import QualityReport

NORTH_EAST, EAST_OF_ENGLAND, LONDON = 1, 2, 3

OVERRIDES_TOML = """
version = 1

[region]
"EAST" = "East of England"
"""


def frame(columns, rows) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=columns, dtype=str)


REGIONS = frame(
    ["region_code", "region_name", "country"],
    [
        ["E12000007", "London", "England"],
        ["E12000001", "North East", "England"],
        ["E12000006", "East of England", "England"],
        ["W92000004", "Wales", "Wales"],
    ],
)

LAD_LOOKUP = frame(
    ["lad_code", "lad_name", "region_code", "region_name"],
    [
        ["E09000001", "City of London", "E12000007", "London"],
        ["E09000033", "Westminster", "E12000007", "London"],
        ["E06000001", "Hartlepool", "E12000001", "North East"],
        ["E07000008", "Cambridge", "E12000006", "EAST"],
        ["E08000037", "Gateshead", "E12000001", "North-East Region"],
    ],
)

EARNINGS = frame(
    ["year", "region_name", "median_annual_earnings"],
    [
        ["2023", "LONDON", "£44,370"],
        ["2023", "North East", "£29,500 "],
        ["2023", "EAST", "£33,000"],
        ["2023", "Wales", "30000"],
        ["2022", "London", "N/A"],
    ],
)

RENT = frame(
    ["region", "period_label", "median"],
    [
        ["London", "Jan-Dec 2023", "2,100"],
        ["North East", "Jan-Dec 2023", "650"],
        ["EAST", "Jan-Dec 2023", "1,234"],
        ["East of England", "Jan-Dec 20X3", "1000"],
    ],
)

HOUSE_PRICES = frame(
    ["date", "region_name", "average_price"],
    [
        ["2023-01-01", "City of London", "£300,000"],
        ["2023-01-01", "Westminster", "340000"],
        ["2023-01-01", "Hartlepool", "150000.50"],
        ["2023-01-01", "Cambridge", "500000"],
        ["2023-02-01", "City of London", "310000"],
        ["2023-02-01", "Westminster", "330000"],
        ["2023-01-01", "Gateshead", "160000"],
        ["2023-02-01", "Hartlepool", "N/A"],
    ],
)

SOURCES = {
    "regions": REGIONS,
    "earnings": EARNINGS,
    "rent": RENT,
    "house_prices": HOUSE_PRICES,
    "lad_lookup": LAD_LOOKUP,
}


@pytest.fixture
def con():
    connection = duckdb.connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def overrides_path(tmp_path):
    path = tmp_path / "overrides.toml"
    path.write_text(OVERRIDES_TOML, encoding="utf-8")
    return path


@pytest.fixture
def overrides(overrides_path):
    return OverrideTable.from_toml(overrides_path)


@pytest.fixture
def config(tmp_path, overrides_path):
    cfg = copy.deepcopy(DEFAULTS)
    cfg["db"]["path"] = str(tmp_path / "warehouse.duckdb")
    cfg["sources"]["dir"] = str(tmp_path / "raw")
    cfg["etl"]["date_start"] = "2022-01-01"
    cfg["etl"]["date_end"] = "2023-12-31"
    cfg["etl"]["overrides"] = str(overrides_path)
    cfg["logging"]["dir"] = str(tmp_path / "logs")
    return cfg


@pytest.fixture
def source_files(config, tmp_path):
    """Write the sample sources as CSV files where ``config`` expects them."""
    raw_dir = tmp_path / "raw"
    raw_dir.mkdir()
    for source, df in SOURCES.items():
        out = df
        if source == "lad_lookup":
            out = df.rename(
                columns={
                    "lad_code": "LAD23CD",
                    "lad_name": "LAD23NM",
                    "region_code": "RGN23CD",
                    "region_name": "RGN23NM",
                }
            )
        out.to_csv(raw_dir / config["sources"][source], index=False)
    return raw_dir


@pytest.fixture
def report():
    return QualityReport()


@pytest.fixture
def dims(con, config, overrides, report):
    """dim_region, dim_date and the bridge built from the sample sources."""
    builder = DimensionBuilder(con, config)
    dim_region = builder.create_dim_region(REGIONS)
    builder.create_dim_date()
    builder.create_bridge(LAD_LOOKUP, dim_region, overrides, report)
    return dim_region


def scalar(con, sql, params=None):
    row = con.execute(sql, params).fetchone() if params is not None else con.execute(sql).fetchone()
    return row[0] if row else None

from datetime import date
from decimal import Decimal

import pandas as pd
import pytest

from conftest import EARNINGS, EAST_OF_ENGLAND, HOUSE_PRICES, LONDON, NORTH_EAST, RENT, frame, scalar
from uk_housing.etl.errors import DataQualityError, IntegrityViolation
from uk_housing.etl.facts import (
    FACTS,
    FactBuilder,
    parse_month,
    parse_period_end_year,
    parse_year,
    stage_fact_rows,
)
from uk_housing.etl.reconcile import NameReconciler, OverrideTable
from uk_housing.etl.report import CONVERSION, INTEGRITY, PERIOD, RECONCILIATION

BOUNDS = (date(2022, 1, 1), date(2023, 12, 31))
REGION_KEYS = {"North East": NORTH_EAST, "East of England": EAST_OF_ENGLAND, "London": LONDON}


class TestPeriodParsing:
    def test_year(self):
        assert parse_year("2024") == 2024
        assert parse_year(" 2024 ") == 2024
        assert parse_year("FY24") is None
        assert parse_year("") is None

    @pytest.mark.parametrize(
        "label, expected",
        [("Jan-Dec 2023", 2023), ("Oct 2022 to Sep 2023", 2023), ("2019", 2019), ("Jan-Dec 20X3", None), ("", None)],
    )
    def test_period_end_year_is_last_four_chars(self, label, expected):
        assert parse_period_end_year(label) == expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2023-01-17", date(2023, 1, 1)),
            ("2023-01-17 00:00:00", date(2023, 1, 1)),
            ("17/01/2023", date(2023, 1, 1)),
            ("2023-01", date(2023, 1, 1)),
            (pd.Timestamp("2023-05-31"), date(2023, 5, 1)),
            (date(2023, 5, 31), date(2023, 5, 1)),
            ("January 2023", None),
            ("", None),
        ],
    )
    def test_month_truncates_to_first_day(self, raw, expected):
        assert parse_month(raw) == expected


class TestStageFactRows:
    def test_rent_scenario_with_override(self, report):
        raw = frame(["region", "period_label", "median"], [["EAST", "Jan-Dec 2023", "1,234"]])
        overrides = OverrideTable({"region": {"EAST": "East of England"}})
        staged = stage_fact_rows(FACTS["rent"], raw, NameReconciler(REGION_KEYS), overrides, report, BOUNDS)
        row = staged.iloc[0]
        assert row["region_key"] == EAST_OF_ENGLAND
        assert row["period_end_year"] == "2023"
        assert row["median_monthly_rent"] == "1234"
        assert row["defect"] is None
        assert report.count() == 0

    def test_earnings_noise_and_unconvertible(self, report):
        raw = frame(
            ["year", "region_name", "median_annual_earnings"],
            [["2023", "London", "£32,500 "], ["2023", "North East", "N/A"]],
        )
        staged = stage_fact_rows(FACTS["earnings"], raw, NameReconciler(REGION_KEYS), OverrideTable(), report, BOUNDS)
        assert staged["median_annual_earnings"].tolist() == ["32500", None]
        assert staged["defect"].tolist() == [None, CONVERSION]
        defect = report.defects[0]
        assert (defect.kind, defect.row_number, defect.raw_value, defect.detail) == (
            CONVERSION,
            2,
            "N/A",
            "unconvertible value",
        )

    def test_unmatched_name_is_reported_not_dropped_silently(self, report):
        staged = stage_fact_rows(
            FACTS["earnings"], EARNINGS, NameReconciler(REGION_KEYS), OverrideTable(), report, BOUNDS
        )
        assert set(report.unmatched_names("earnings")) == {"EAST", "Wales"}
        assert report.count(RECONCILIATION, "earnings") == 2
        assert staged.loc[staged["source_name"] == "Wales", "defect"].iloc[0] == RECONCILIATION

    def test_period_outside_date_dimension(self, report):
        raw = frame(["year", "region_name", "median_annual_earnings"], [["1990", "London", "100"]])
        staged = stage_fact_rows(FACTS["earnings"], raw, NameReconciler(REGION_KEYS), OverrideTable(), report, BOUNDS)
        assert staged["defect"].tolist() == [PERIOD]
        assert report.defects[0].detail == "period outside date dimension"

    def test_every_defect_of_a_row_is_listed(self, report):
        raw = frame(["region", "period_label", "median"], [["Mars", "someday", "lots"]])
        staged = stage_fact_rows(FACTS["rent"], raw, NameReconciler(REGION_KEYS), OverrideTable(), report, BOUNDS)
        assert staged["defect"].iloc[0] == f"{CONVERSION};{RECONCILIATION};{PERIOD}"
        assert report.count() == 3
        assert report.deletions == {("rent", f"{CONVERSION} defect"): 1}

    def test_blank_rows_dropped_and_counted(self, report):
        raw = frame(["region", "period_label", "median"], [["London", "Jan-Dec 2023", "900"], ["", " ", ""]])
        staged = stage_fact_rows(FACTS["rent"], raw, NameReconciler(REGION_KEYS), OverrideTable(), report, BOUNDS)
        assert len(staged) == 1
        assert report.deletions[("rent", "blank row")] == 1
        assert report.count() == 0


class TestFactBuilder:
    def build(self, con, config, overrides, report, name, raw=None):
        builder = FactBuilder(con, config, overrides, report)
        raw = raw if raw is not None else {"earnings": EARNINGS, "rent": RENT, "house_prices": HOUSE_PRICES}[name]
        return builder.build(name, raw)

    def test_earnings_fact(self, con, config, dims, overrides, report):
        n = self.build(con, config, overrides, report, "earnings")
        assert n == 3
        rows = con.execute("SELECT year, region_key, median_annual_earnings FROM fact_earnings ORDER BY 2").fetchall()
        assert rows == [
            (2023, NORTH_EAST, Decimal("29500.00")),
            (2023, EAST_OF_ENGLAND, Decimal("33000.00")),
            (2023, LONDON, Decimal("44370.00")),
        ]

    def test_rent_fact_scenario(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "rent")
        value = scalar(
            con,
            "SELECT median_monthly_rent FROM fact_rent WHERE period_end_year = 2023 AND region_key = ?",
            [EAST_OF_ENGLAND],
        )
        assert value == Decimal("1234.00")
        assert scalar(con, "SELECT COUNT(*) FROM fact_rent") == 3
        assert report.count(PERIOD, "rent") == 1

    def test_house_price_is_mean_of_lads_in_region(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "house_prices")
        rows = con.execute(
            "SELECT year_month, region_key, average_price FROM fact_house_price ORDER BY 1, 2"
        ).fetchall()
        assert rows == [
            (date(2023, 1, 1), NORTH_EAST, Decimal("150000.50")),
            (date(2023, 1, 1), EAST_OF_ENGLAND, Decimal("500000.00")),
            (date(2023, 1, 1), LONDON, Decimal("320000.00")),
            (date(2023, 2, 1), LONDON, Decimal("320000.00")),
        ]

    def test_two_london_lads_average_to_320000(self, con, config, dims, overrides, report):
        raw = frame(
            ["date", "region_name", "average_price"],
            [["2023-03-01", "City of London", "300000"], ["2023-03-01", "Westminster", "340000"]],
        )
        assert self.build(con, config, overrides, report, "house_prices", raw) == 1
        assert scalar(con, "SELECT average_price FROM fact_house_price") == Decimal("320000.00")

    def test_lad_outside_bridge_is_unmatched(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "house_prices")
        assert report.unmatched_names("house_prices") == ["Gateshead"]
        rows = con.execute(
            "SELECT source_name, row_count FROM etl_unmatched_names WHERE source = 'house_prices'"
        ).fetchall()
        assert rows == [("Gateshead", 1)]

    def test_staging_keeps_every_row(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "house_prices")
        assert scalar(con, "SELECT COUNT(*) FROM stg_house_price") == len(HOUSE_PRICES)
        assert scalar(con, "SELECT COUNT(*) FROM stg_house_price WHERE defect IS NOT NULL") == 2

    def test_duplicate_grain_fails_loudly(self, con, config, dims, overrides, report):
        raw = frame(
            ["year", "region_name", "median_annual_earnings"],
            [["2023", "London", "40000"], ["2023", "LONDON", "41000"]],
        )
        with pytest.raises(IntegrityViolation):
            self.build(con, config, overrides, report, "earnings", raw)
        assert report.count(INTEGRITY, "earnings") == 2

    def test_duplicate_lad_month_fails(self, con, config, dims, overrides, report):
        raw = frame(
            ["date", "region_name", "average_price"],
            [["2023-03-01", "Westminster", "300000"], ["2023-03-15", "westminster", "340000"]],
        )
        with pytest.raises(IntegrityViolation):
            self.build(con, config, overrides, report, "house_prices", raw)

    def test_overridden_spelling_counts_as_same_lad(self, con, config, dims, report):
        overrides = OverrideTable({"local_authority": {"City of Westminster": "Westminster"}})
        raw = frame(
            ["date", "region_name", "average_price"],
            [
                ["2023-03-01", "City of London", "300000"],
                ["2023-03-01", "Westminster", "340000"],
                ["2023-03-01", "City of Westminster", "400000"],
            ],
        )
        with pytest.raises(IntegrityViolation):
            self.build(con, config, overrides, report, "house_prices", raw)
        assert report.count(INTEGRITY, "house_prices") == 2
        assert scalar(con, "SELECT COUNT(*) FROM stg_house_price WHERE resolved_name = 'Westminster'") == 2

    def test_staging_keeps_source_precision(self, con, config, dims, overrides, report):
        raw = frame(
            ["date", "region_name", "average_price"],
            [["2023-03-01", "City of London", "100000.125"], ["2023-03-01", "Westminster", "100000.375"]],
        )
        self.build(con, config, overrides, report, "house_prices", raw)
        staged = con.execute("SELECT average_price FROM stg_house_price ORDER BY 1").fetchall()
        assert staged == [(Decimal("100000.125000"),), (Decimal("100000.375000"),)]
        assert scalar(con, "SELECT average_price FROM fact_house_price") == Decimal("100000.25")

    def test_oversized_measure_is_a_conversion_defect(self, con, config, dims, overrides, report):
        raw = frame(
            ["year", "region_name", "median_annual_earnings"],
            [["2023", "London", "40000"], ["2023", "North East", "1e20"]],
        )
        assert self.build(con, config, overrides, report, "earnings", raw) == 1
        defect = report.defects[0]
        assert (defect.kind, defect.row_number, defect.raw_value) == (CONVERSION, 2, "1e20")
        assert scalar(con, "SELECT median_annual_earnings FROM fact_earnings") == Decimal("40000.00")

    def test_failed_build_leaves_previous_fact(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "earnings")
        raw = frame(
            ["year", "region_name", "median_annual_earnings"],
            [["2023", "London", "40000"], ["2023", "London", "41000"]],
        )
        with pytest.raises(IntegrityViolation):
            self.build(con, config, overrides, report, "earnings", raw)
        assert scalar(con, "SELECT COUNT(*) FROM fact_earnings") == 3

    def test_fail_policy_raises(self, con, config, dims, overrides, report):
        config["policy"]["on_conversion_defect"] = "fail"
        with pytest.raises(DataQualityError) as exc:
            self.build(con, config, overrides, report, "earnings")
        assert exc.value.source == "earnings"

    def test_unmatched_fail_policy(self, con, config, dims, report):
        config["policy"]["on_unmatched_name"] = "fail"
        raw = frame(["region", "period_label", "median"], [["EAST", "Jan-Dec 2023", "1,234"]])
        with pytest.raises(DataQualityError):
            self.build(con, config, OverrideTable(), report, "rent", raw)

    def test_override_applied_twice_gives_same_counts(self, con, config, dims, overrides, report):
        first = self.build(con, config, overrides, report, "rent")
        pre_corrected = RENT.assign(region=RENT["region"].map(lambda v: overrides.apply(v)))
        second = self.build(con, config, overrides, report, "rent", pre_corrected)
        assert first == second == 3

    def test_rebuild_replaces_defects_for_source(self, con, config, dims, overrides, report):
        self.build(con, config, overrides, report, "earnings")
        n = report.count(source="earnings")
        self.build(con, config, overrides, report, "earnings")
        assert report.count(source="earnings") == n

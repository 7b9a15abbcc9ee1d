import json

import pytest

from conftest import EARNINGS, HOUSE_PRICES, RENT
from uk_housing.etl.errors import IntegrityViolation
from uk_housing.etl.facts import FACTS, FactBuilder
from uk_housing.etl.validate import (
    IntegrityValidator,
    bridge_checks,
    check_contiguous_dates,
    check_foreign_key,
    check_names_accounted,
    check_not_null,
    check_primary_key,
    check_unique,
    dimension_checks,
    fact_checks,
    regions_missing_from_fact,
)


@pytest.fixture
def sample_table(con):
    con.execute("CREATE TABLE t (k INTEGER, name VARCHAR, ref INTEGER, v DECIMAL(18,2))")
    con.execute(
        "INSERT INTO t VALUES (1, 'a', 1, 1.00), (2, 'b', 2, NULL), (2, 'c', 9, 3.00), (NULL, 'a', 1, 4.00)"
    )
    con.execute("CREATE TABLE r (id INTEGER)")
    con.execute("INSERT INTO r VALUES (1), (2)")
    return "t"


class TestChecks:
    def test_primary_key_flags_duplicates_and_nulls(self, con, sample_table):
        result = check_primary_key(con, "t", ["k"])
        assert result.count == 2
        assert not result.passed

    def test_unique(self, con, sample_table):
        result = check_unique(con, "t", "name")
        assert result.violations["name"].tolist() == ["a"]

    def test_foreign_key_orphans(self, con, sample_table):
        result = check_foreign_key(con, "t", "ref", "r", "id")
        assert result.violations["ref"].tolist() == [9]

    def test_not_null(self, con, sample_table):
        assert check_not_null(con, "t", ["v"]).count == 1

    def test_sample_is_json_ready(self, con, sample_table):
        sample = check_primary_key(con, "t", ["k"]).sample()
        assert json.loads(json.dumps(sample)) == sample
        assert len(sample) == 2

    def test_contiguous_dates(self, con):
        con.execute("CREATE TABLE d (date_value DATE)")
        con.execute("INSERT INTO d VALUES (DATE '2024-01-01'), (DATE '2024-01-02'), (DATE '2024-01-04')")
        result = check_contiguous_dates(con, "d")
        assert result.count == 1

    def test_passing_check(self, con, sample_table):
        assert check_primary_key(con, "r", ["id"]).passed


class TestStageBatteries:
    def test_dimensions_pass(self, con, dims):
        results = dimension_checks(con)
        assert all(r.passed for r in results), [r.name for r in results if not r.passed]

    def test_bridge_passes_with_unmatched_reported(self, con, dims):
        con.execute("CREATE SCHEMA raw")
        con.execute("CREATE TABLE raw.lad_lookup AS SELECT * FROM (VALUES ('E08000037', 'Gateshead', 'E12000001', 'North-East Region')) t(lad_code, lad_name, region_code, region_name)")
        results = bridge_checks(con)
        assert len(results) == 4
        assert all(r.passed for r in results)

    def test_bridge_flags_unreported_lad(self, con, dims):
        con.execute("CREATE SCHEMA raw")
        con.execute("CREATE TABLE raw.lad_lookup AS SELECT * FROM (VALUES ('E99999999', 'Nowhere', 'E1', 'Atlantis')) t(lad_code, lad_name, region_code, region_name)")
        names = [r for r in bridge_checks(con) if r.name == "names_accounted"]
        assert names[0].count == 1

    def test_bridge_name_check_skipped_without_raw_snapshot(self, con, dims):
        assert [r for r in bridge_checks(con) if r is not None and r.name == "names_accounted"] == []

    @pytest.mark.parametrize("name, raw", [("earnings", EARNINGS), ("rent", RENT), ("house_prices", HOUSE_PRICES)])
    def test_facts_pass(self, con, config, dims, overrides, report, name, raw):
        FactBuilder(con, config, overrides, report).build(name, raw)
        results = fact_checks(con, FACTS[name])
        blocking = [r for r in results if r.blocking and not r.passed]
        assert blocking == []

    def test_names_accounted_catches_unreported_name(self, con, config, dims, overrides, report):
        FactBuilder(con, config, overrides, report).build("earnings", EARNINGS)
        con.execute("DELETE FROM etl_unmatched_names WHERE source = 'earnings'")
        result = check_names_accounted(con, "stg_earnings", "earnings")
        assert sorted(result.violations["source_name"]) == ["Wales"]

    def test_missing_regions_reported_not_blocking(self, con, config, dims, overrides, report):
        FactBuilder(con, config, overrides, report).build("earnings", EARNINGS.iloc[[0]])
        result = regions_missing_from_fact(con, "fact_earnings")
        assert result.count == 2
        assert not result.blocking


class TestIntegrityValidator:
    def test_raise_for_failures(self, con, sample_table):
        validator = IntegrityValidator()
        results = validator.run("demo", [check_primary_key(con, "t", ["k"]), check_not_null(con, "r", ["id"])])
        with pytest.raises(IntegrityViolation) as exc:
            validator.raise_for_failures(results)
        assert exc.value.table == "t"
        assert exc.value.sample

    def test_non_blocking_failures_do_not_raise(self, con, dims):
        validator = IntegrityValidator()
        con.execute("CREATE TABLE fact_empty (region_key INTEGER)")
        results = validator.run("demo", [regions_missing_from_fact(con, "fact_empty")])
        validator.raise_for_failures(results)
        assert results[0].count == 3

    def test_rerun_replaces_stage_results(self, con, dims):
        validator = IntegrityValidator()
        validator.run("dimensions", dimension_checks(con))
        validator.run("dimensions", dimension_checks(con))
        assert len(validator.results) == len(dimension_checks(con))

    def test_persist(self, con, sample_table):
        validator = IntegrityValidator()
        validator.run("demo", [check_primary_key(con, "t", ["k"]), check_unique(con, "r", "id")])
        validator.persist(con)
        rows = con.execute(
            "SELECT check_name, violation_count, passed FROM etl_check_results ORDER BY check_name"
        ).fetchall()
        assert rows == [("primary_key(k)", 2, False), ("unique(id)", 0, True)]

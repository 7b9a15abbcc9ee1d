"""
Reporting views over the conformed schema.

Views are plain DuckDB views computed at query time. Each one names the
builds it reads from (``dimensions``, ``bridge``, ``earnings``, ``rent``,
``house_prices``). ``publish_views`` only creates a view when all of those
were published in the current run and drops it otherwise, so a failed fact
never leaves a stale view behind.

Facts keep their native years. Annual comparisons join the calendar year of
a house-price month, the end year of a rent period and the earnings year.
"""

import logging
from typing import Dict, FrozenSet, Iterable, List, NamedTuple

logger = logging.getLogger(__name__)

DIMENSIONS = "dimensions"


class View(NamedTuple):
    name: str
    depends_on: FrozenSet[str]
    sql: str


def _v(name: str, depends_on: Iterable[str], sql: str) -> View:
    return View(name, frozenset(depends_on), sql)


# Declaration order is creation order: a view only reads views declared above it.
VIEWS: List[View] = [
    # ---------------------------
    # Wrappers
    # ---------------------------
    _v("vw_dim_region", [DIMENSIONS], "SELECT region_key, region_code, region_name, country FROM dim_region"),
    _v("vw_dim_date", [DIMENSIONS], "SELECT date_value, year, month, month_name, year_month_key FROM dim_date"),
    _v(
        "vw_bridge_lad_region",
        ["bridge"],
        "SELECT lad_code, lad_name, region_key, region_code, region_name FROM bridge_lad_region",
    ),
    _v(
        "vw_fact_earnings",
        ["earnings"],
        "SELECT year, region_key, median_annual_earnings FROM fact_earnings",
    ),
    _v(
        "vw_fact_rent",
        ["rent"],
        "SELECT period_end_year, region_key, median_monthly_rent FROM fact_rent",
    ),
    _v(
        "vw_fact_house_prices",
        ["house_prices"],
        "SELECT year_month, region_key, average_price FROM fact_house_price",
    ),
    # ---------------------------
    # National averages
    # ---------------------------
    _v(
        "vw_national_avg_house_prices",
        ["house_prices"],
        """
        SELECT year_month, AVG(average_price) AS national_avg_price
        FROM vw_fact_house_prices
        GROUP BY year_month
        """,
    ),
    _v(
        "vw_national_avg_rent",
        ["rent"],
        """
        SELECT period_end_year, AVG(median_monthly_rent) AS national_avg_monthly_rent
        FROM vw_fact_rent
        GROUP BY period_end_year
        """,
    ),
    _v(
        "vw_national_avg_earnings",
        ["earnings"],
        """
        SELECT year, AVG(median_annual_earnings) AS national_avg_annual_earnings
        FROM vw_fact_earnings
        GROUP BY year
        """,
    ),
    # ---------------------------
    # Regional averages
    # ---------------------------
    _v(
        "vw_region_avg_house_prices",
        ["house_prices"],
        """
        SELECT f.year_month, r.region_key, r.region_name, AVG(f.average_price) AS region_avg_price
        FROM vw_fact_house_prices f
        JOIN vw_dim_region r ON f.region_key = r.region_key
        GROUP BY f.year_month, r.region_key, r.region_name
        """,
    ),
    _v(
        "vw_region_avg_rent",
        ["rent"],
        """
        SELECT f.period_end_year, r.region_key, r.region_name, AVG(f.median_monthly_rent) AS region_avg_monthly_rent
        FROM vw_fact_rent f
        JOIN vw_dim_region r ON f.region_key = r.region_key
        GROUP BY f.period_end_year, r.region_key, r.region_name
        """,
    ),
    _v(
        "vw_region_avg_earnings",
        ["earnings"],
        """
        SELECT f.year, r.region_key, r.region_name, AVG(f.median_annual_earnings) AS region_avg_annual_earnings
        FROM vw_fact_earnings f
        JOIN vw_dim_region r ON f.region_key = r.region_key
        GROUP BY f.year, r.region_key, r.region_name
        """,
    ),
    # ---------------------------
    # LAD averages (facts are regional: every LAD carries its region's value)
    # ---------------------------
    _v(
        "vw_lad_avg_house_prices",
        ["house_prices", "bridge"],
        """
        SELECT f.year_month, b.lad_code, b.lad_name, b.region_name, AVG(f.average_price) AS lad_avg_price
        FROM vw_fact_house_prices f
        JOIN vw_bridge_lad_region b ON f.region_key = b.region_key
        GROUP BY f.year_month, b.lad_code, b.lad_name, b.region_name
        """,
    ),
    _v(
        "vw_lad_avg_rent",
        ["rent", "bridge"],
        """
        SELECT f.period_end_year, b.lad_code, b.lad_name, b.region_name, AVG(f.median_monthly_rent) AS lad_avg_monthly_rent
        FROM vw_fact_rent f
        JOIN vw_bridge_lad_region b ON f.region_key = b.region_key
        GROUP BY f.period_end_year, b.lad_code, b.lad_name, b.region_name
        """,
    ),
    _v(
        "vw_lad_avg_earnings",
        ["earnings", "bridge"],
        """
        SELECT f.year, b.lad_code, b.lad_name, b.region_name, AVG(f.median_annual_earnings) AS lad_avg_annual_earnings
        FROM vw_fact_earnings f
        JOIN vw_bridge_lad_region b ON f.region_key = b.region_key
        GROUP BY f.year, b.lad_code, b.lad_name, b.region_name
        """,
    ),
    # ---------------------------
    # Price-to-income
    # ---------------------------
    _v(
        "vw_national_price_income_ratio",
        ["house_prices", "earnings"],
        """
        SELECT hp.year_month, hp.national_avg_price, e.national_avg_annual_earnings,
               hp.national_avg_price / NULLIF(e.national_avg_annual_earnings, 0) AS price_income_ratio
        FROM vw_national_avg_house_prices hp
        JOIN vw_national_avg_earnings e ON YEAR(hp.year_month) = e.year
        """,
    ),
    _v(
        "vw_region_price_income_ratio",
        ["house_prices", "earnings"],
        """
        SELECT hp.year_month, hp.region_name, hp.region_avg_price, e.region_avg_annual_earnings,
               hp.region_avg_price / NULLIF(e.region_avg_annual_earnings, 0) AS price_income_ratio
        FROM vw_region_avg_house_prices hp
        JOIN vw_region_avg_earnings e
          ON YEAR(hp.year_month) = e.year AND hp.region_key = e.region_key
        """,
    ),
    _v(
        "vw_lad_price_income_ratio",
        ["house_prices", "earnings", "bridge"],
        """
        SELECT hp.year_month, hp.lad_code, hp.lad_name, hp.lad_avg_price, e.lad_avg_annual_earnings,
               hp.lad_avg_price / NULLIF(e.lad_avg_annual_earnings, 0) AS price_income_ratio
        FROM vw_lad_avg_house_prices hp
        JOIN vw_lad_avg_earnings e
          ON YEAR(hp.year_month) = e.year AND hp.lad_code = e.lad_code
        """,
    ),
    # ---------------------------
    # Rent-to-income (annualised rent)
    # ---------------------------
    _v(
        "vw_national_rent_income_ratio",
        ["rent", "earnings"],
        """
        SELECT r.period_end_year, r.national_avg_monthly_rent, e.national_avg_annual_earnings,
               (r.national_avg_monthly_rent * 12.0) / NULLIF(e.national_avg_annual_earnings, 0) AS rent_income_ratio
        FROM vw_national_avg_rent r
        JOIN vw_national_avg_earnings e ON r.period_end_year = e.year
        """,
    ),
    _v(
        "vw_region_rent_income_ratio",
        ["rent", "earnings"],
        """
        SELECT r.period_end_year, r.region_name, r.region_avg_monthly_rent, e.region_avg_annual_earnings,
               (r.region_avg_monthly_rent * 12.0) / NULLIF(e.region_avg_annual_earnings, 0) AS rent_income_ratio
        FROM vw_region_avg_rent r
        JOIN vw_region_avg_earnings e
          ON r.period_end_year = e.year AND r.region_key = e.region_key
        """,
    ),
    _v(
        "vw_lad_rent_income_ratio",
        ["rent", "earnings", "bridge"],
        """
        SELECT r.period_end_year, r.lad_code, r.lad_name, r.lad_avg_monthly_rent, e.lad_avg_annual_earnings,
               (r.lad_avg_monthly_rent * 12.0) / NULLIF(e.lad_avg_annual_earnings, 0) AS rent_income_ratio
        FROM vw_lad_avg_rent r
        JOIN vw_lad_avg_earnings e
          ON r.period_end_year = e.year AND r.lad_code = e.lad_code
        """,
    ),
    _v(
        "vw_housing_affordability_index",
        ["house_prices", "rent", "earnings"],
        """
        SELECT hp.year_month, hp.national_avg_price, e.national_avg_annual_earnings,
               hp.national_avg_price / NULLIF(e.national_avg_annual_earnings, 0) AS price_income_ratio,
               r.national_avg_monthly_rent,
               (r.national_avg_monthly_rent * 12.0) / NULLIF(e.national_avg_annual_earnings, 0) AS rent_income_ratio
        FROM vw_national_avg_house_prices hp
        JOIN vw_national_avg_earnings e ON YEAR(hp.year_month) = e.year
        JOIN vw_national_avg_rent r ON r.period_end_year = e.year
        """,
    ),
    # ---------------------------
    # Insights
    # ---------------------------
    _v(
        "vw_region_price_growth",
        ["house_prices"],
        """
        WITH yearly AS (
            SELECT r.region_name, YEAR(f.year_month) AS year, AVG(f.average_price) AS avg_price
            FROM vw_fact_house_prices f
            JOIN vw_dim_region r ON f.region_key = r.region_key
            GROUP BY r.region_name, YEAR(f.year_month)
        ),
        growth AS (
            SELECT region_name, year, avg_price,
                   LAG(avg_price) OVER (PARTITION BY region_name ORDER BY year) AS prev_year_price
            FROM yearly
        )
        SELECT region_name, year, avg_price, prev_year_price,
               (avg_price - prev_year_price) * 100.0 / NULLIF(prev_year_price, 0) AS yoy_growth_pct,
               RANK() OVER (
                   PARTITION BY year
                   ORDER BY (avg_price - prev_year_price) / NULLIF(prev_year_price, 0) DESC
               ) AS growth_rank
        FROM growth
        WHERE prev_year_price IS NOT NULL
        """,
    ),
    _v(
        "vw_region_rent_rank",
        ["rent"],
        """
        SELECT region_name, period_end_year, region_avg_monthly_rent,
               RANK() OVER (PARTITION BY period_end_year ORDER BY region_avg_monthly_rent DESC) AS rent_rank_highest,
               RANK() OVER (PARTITION BY period_end_year ORDER BY region_avg_monthly_rent ASC) AS rent_rank_lowest
        FROM vw_region_avg_rent
        """,
    ),
    _v(
        "vw_region_price_rent_correlation",
        ["house_prices", "rent"],
        """
        WITH yearly AS (
            SELECT r.region_name, YEAR(f.year_month) AS year,
                   AVG(f.average_price) AS avg_price, AVG(fr.median_monthly_rent) AS avg_rent
            FROM vw_fact_house_prices f
            JOIN vw_dim_region r ON f.region_key = r.region_key
            JOIN vw_fact_rent fr ON fr.region_key = f.region_key AND fr.period_end_year = YEAR(f.year_month)
            GROUP BY r.region_name, YEAR(f.year_month)
        )
        SELECT region_name,
               COUNT(*) AS overlapping_years,
               CASE
                   WHEN COUNT(*) < 2 OR var_samp(avg_price) = 0 OR var_samp(avg_rent) = 0 THEN NULL
                   ELSE corr(avg_price, avg_rent)
               END AS price_rent_correlation
        FROM yearly
        GROUP BY region_name
        """,
    ),
]

VIEWS_BY_NAME: Dict[str, View] = {v.name: v for v in VIEWS}


def publishable(published: Iterable[str]) -> List[View]:
    """Views whose every dependency is in ``published``. Nothing is publishable without the dimensions."""
    done = set(published)
    if DIMENSIONS not in done:
        return []
    return [v for v in VIEWS if v.depends_on <= done]


def publish_views(con, published_facts: Iterable[str]) -> List[str]:
    """
    Create the views backed by ``published_facts`` and drop all others.

    Returns the names of the views that exist afterwards.
    """
    ready = publishable(published_facts)
    ready_names = {v.name for v in ready}

    for view in reversed(VIEWS):
        if view.name not in ready_names:
            con.execute(f"DROP VIEW IF EXISTS {view.name}")

    created = []
    for view in ready:
        try:
            con.execute(f"CREATE OR REPLACE VIEW {view.name} AS {view.sql}")
        except Exception as e:
            logger.error(f"❌ Failed to create view {view.name}: {e}")
            raise
        created.append(view.name)

    skipped = len(VIEWS) - len(created)
    logger.info(f"📊 Published {len(created)} view(s); {skipped} withheld for unpublished facts")
    return created

import os

import duckdb


class DuckDBConn:
    """
    Context manager for DuckDB connection.
    Ensures connection opens and closes cleanly.
    """

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self.con = None

    def __enter__(self):
        # Create parent directory if missing
        parent = os.path.dirname(self.db_path)
        if self.db_path != ":memory:" and parent:
            os.makedirs(parent, exist_ok=True)
        self.con = duckdb.connect(self.db_path)
        return self.con

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.con:
            self.con.close()


def _ensure_schema(con, table_name: str) -> None:
    if "." in table_name:
        schema, _ = table_name.split(".", 1)
        con.execute(f"CREATE SCHEMA IF NOT EXISTS {schema}")


def table_exists(con, table_name: str) -> bool:
    if "." in table_name:
        schema, table = table_name.split(".", 1)
    else:
        schema, table = "main", table_name
    n = con.execute(
        "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = ? AND table_name = ?",
        [schema, table],
    ).fetchone()[0]
    return n > 0


def row_count(con, table_name: str) -> int:
    return con.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]


def replace_table(con, table_name: str, ddl: str, df, select_sql: str = "SELECT * FROM temp_df"):
    """
    Full replacement of a table inside one transaction.

    ``ddl`` is the column list of the CREATE TABLE statement (constraints
    included); ``select_sql`` reads from the registered frame ``temp_df``.
    On any failure the previous table is left untouched.
    """
    _ensure_schema(con, table_name)
    con.register("temp_df", df)
    con.execute("BEGIN TRANSACTION")
    try:
        con.execute(f"DROP TABLE IF EXISTS {table_name}")
        con.execute(f"CREATE TABLE {table_name} ({ddl})")
        con.execute(f"INSERT INTO {table_name} {select_sql}")
        con.execute("COMMIT")
    except Exception:
        con.execute("ROLLBACK")
        raise
    finally:
        con.unregister("temp_df")

"""UK housing star-schema warehouse on DuckDB."""

__version__ = "0.1.0"

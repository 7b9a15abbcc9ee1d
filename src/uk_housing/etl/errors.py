"""Exceptions raised by the warehouse build."""


class HousingETLError(Exception):
    """Base class for pipeline failures."""


class SourceSchemaError(HousingETLError):
    """A raw source file or one of its expected columns is missing."""


class DataQualityError(HousingETLError):
    """Raised when a cleaning or reconciliation policy is set to ``fail``."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class IntegrityViolation(HousingETLError):
    """A duplicate key, orphan foreign key or unexpected null in a built table."""

    def __init__(self, table: str, message: str, sample=None):
        super().__init__(f"{table}: {message}")
        self.table = table
        self.sample = sample if sample is not None else []

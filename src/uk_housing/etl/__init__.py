"""Cleaning, reconciliation, dimension and fact builds, and integrity checks."""

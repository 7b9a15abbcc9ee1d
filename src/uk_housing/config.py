# src/uk_housing/config.py
import copy
import logging
import sys
from datetime import datetime
from pathlib import Path

import toml

DEFAULT_CONFIG_PATH = Path("conf/config.toml")

DEFAULTS = {
    "db": {"path": "data/uk_housing.duckdb"},
    "sources": {
        "dir": "data/raw",
        "regions": "regions.csv",
        "earnings": "earnings_region.csv",
        "rent": "rental_median_monthly.csv",
        "house_prices": "ukhpi_average_price.csv",
        "lad_lookup": "ons_lad_to_region.csv",
    },
    "etl": {
        "debug": False,
        "country": "England",
        "date_start": "1995-01-01",
        "date_end": "2025-12-31",
        "overrides": "conf/overrides.toml",
    },
    "policy": {
        "on_conversion_defect": "drop",
        "on_unmatched_name": "drop",
    },
    "normalize": {"strip_chars": ["£", ",", " ", "\u00a0"]},
    "logging": {"level": "INFO", "dir": "logs"},
}

POLICY_CHOICES = ("drop", "fail")


# ---------------------------
# Logging
# ---------------------------
def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> logging.Logger:
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("uk_housing")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s | %(levelname)8s | %(funcName)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path / f"pipeline_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


# ---------------------------
# Config loader
# ---------------------------
def _merge(base: dict, extra: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path=DEFAULT_CONFIG_PATH) -> dict:
    """
    Load conf/config.toml on top of the built-in defaults.

    A missing file falls back to the defaults; a file that exists but does
    not parse is an error.
    """
    logger = logging.getLogger(__name__)
    cfg_path = Path(path)
    if cfg_path.exists():
        cfg = _merge(DEFAULTS, toml.load(str(cfg_path)))
        logger.info(f"✅ Config loaded from {cfg_path}")
    else:
        logger.warning(f"⚠️  Config not found at {cfg_path}; using defaults")
        cfg = copy.deepcopy(DEFAULTS)

    # sanity
    if "db" not in cfg or "path" not in cfg["db"]:
        raise KeyError("Missing required config key: db.path")
    for name, choice in cfg["policy"].items():
        if choice not in POLICY_CHOICES:
            raise ValueError(f"policy.{name} must be one of {POLICY_CHOICES}, got {choice!r}")
    return cfg

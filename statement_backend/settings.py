from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List

# NOTE:
# - Every value can be overridden with an environment variable.
# - Fees are in dollars; percentages are whole numbers (15 == 15%).
#
# Suggested env overrides:
#   STATEMENTS_DATA_DIR        (folder with reservations/expenses/listings files + statements.json)
#   STATEMENTS_STORE           (memory | json)
#   STATEMENTS_AUTO_ENABLED    (1/0)
#   STATEMENTS_AUTO_TIME       (HH:MM, wall clock in STATEMENTS_TIMEZONE)
#   STATEMENTS_TIMEZONE        (default US/Eastern)
#   STATEMENTS_TECH_FEE / STATEMENTS_INSURANCE_FEE

DEFAULT_CADENCE_TAGS = ["WEEKLY", "BI-WEEKLY A", "BI-WEEKLY B", "MONTHLY"]


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [t.strip() for t in raw.split(",") if t.strip()]


@dataclass(frozen=True)
class StatementSettings:
    # Folder holding source files for the file-backed data source and the JSON store.
    data_dir: str = os.environ.get("STATEMENTS_DATA_DIR", os.path.join(os.getcwd(), "data"))
    store_backend: str = os.environ.get("STATEMENTS_STORE", "memory")

    # Auto-run of tag schedules (daily, fixed wall-clock time in a fixed timezone)
    auto_enabled: bool = os.environ.get("STATEMENTS_AUTO_ENABLED", "1") == "1"
    auto_time: str = os.environ.get("STATEMENTS_AUTO_TIME", "08:00")
    timezone: str = os.environ.get("STATEMENTS_TIMEZONE", "US/Eastern")
    cadence_tags: List[str] = field(default_factory=lambda: _env_list("STATEMENTS_CADENCE_TAGS", DEFAULT_CADENCE_TAGS))

    # Fee configuration
    default_pm_fee_percentage: float = float(os.environ.get("STATEMENTS_DEFAULT_PM_FEE", "15"))
    tech_fee: float = float(os.environ.get("STATEMENTS_TECH_FEE", "50.00"))
    insurance_fee: float = float(os.environ.get("STATEMENTS_INSURANCE_FEE", "25.00"))
    default_calculation_type: str = os.environ.get("STATEMENTS_DEFAULT_CALC_TYPE", "checkout")

    # Bulk generation
    owner_role: str = os.environ.get("STATEMENTS_OWNER_ROLE", "owner")
    job_retention_seconds: int = int(os.environ.get("STATEMENTS_JOB_RETENTION", "3600"))

    log_level: str = os.environ.get("STATEMENTS_LOG_LEVEL", "INFO")

    @property
    def auto_hour_minute(self) -> tuple:
        hh, mm = self.auto_time.split(":")
        return int(hh), int(mm)


DEFAULT_SETTINGS = StatementSettings()


def configure_logging(settings: StatementSettings = DEFAULT_SETTINGS) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

import logging
from datetime import time

from pydantic_settings import BaseSettings, SettingsConfigDict

from models.rules import DEFAULT_RULES, ReconcileRules

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseSettings):
    """Runtime settings read from ``PUNCH_*`` environment variables or ``.env``."""
    model_config = SettingsConfigDict(env_prefix="PUNCH_", env_file=".env", extra="ignore")

    log_level: str = "INFO"
    max_workers: int = 4
    recalc_window_days: int = 7

    workday_start: time = DEFAULT_RULES.workday_start
    workday_end: time = DEFAULT_RULES.workday_end
    minimum_work_hours: int = DEFAULT_RULES.minimum_work_hours
    undertime_grace_minutes: int = DEFAULT_RULES.undertime_grace_minutes

    def to_rules(self) -> ReconcileRules:
        return DEFAULT_RULES.model_copy(update={
            "workday_start": self.workday_start,
            "workday_end": self.workday_end,
            "minimum_work_hours": self.minimum_work_hours,
            "undertime_grace_minutes": self.undertime_grace_minutes,
        })


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)

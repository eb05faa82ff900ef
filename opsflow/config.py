""" Runtime settings for the workflow engine. """
import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OPSFLOW_")

    app_env: str = "dev"
    database_url: str = "sqlite:///./opsflow.db"
    log_level: str = "INFO"

    # timeout for a single gateway call (create/update record, email, sms, action)
    action_timeout_seconds: float = 30.0
    parallel_max_workers: int = 8

    default_max_iterations: int = 1000
    max_loop_iterations_warning: int = 1000
    max_parallel_branches_warning: int = 10


settings = Settings()  # reads from env


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

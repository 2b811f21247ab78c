from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    # App
    app_name: str = "erpflow"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./erpflow.db"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "/var/log/erpflow"
    log_to_file: bool = False

    # Worklog edit window (days) when no setting row exists
    default_editable_days: int = 14

    # Default approval ladder thresholds
    approval_skip_under: float = 50000
    approval_exec_threshold: float = 100000
    mgmt_group_id: str = "mgmt"
    exec_group_id: str = "exec"

    # Roles allowed to override chat acknowledgement guards with a reason
    elevated_roles: str = "admin"

    # Targets a chat_ack_completed guard can resolve links for
    ack_target_tables: str = "approval_instances"

    # Optional YAML file with action policies
    policies_file: Optional[str] = None

    @property
    def elevated_roles_list(self) -> list[str]:
        return _split_csv(self.elevated_roles)

    @property
    def ack_target_tables_list(self) -> list[str]:
        return _split_csv(self.ack_target_tables)

    model_config = SettingsConfigDict(
        env_prefix="ERPFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

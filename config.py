import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        multi_tenant: bool,
        secret_key: str,
        token_max_age_hours: int,
        balance_check_hours: int,
    ) -> None:
        self.database_url = database_url
        self.multi_tenant = multi_tenant
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.balance_check_hours = balance_check_hours


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    multi_tenant = _env_flag("FINANCE_MULTI_TENANT")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "4c1f0e4b9d6a2f3e8b7c5a1d0e9f8a7b6c5d4e3f2a1b0c9d8e7f6a5b4c3d2e1f",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "720"))
    balance_check_hours = int(os.getenv("FINANCE_BALANCE_CHECK_HOURS", "1"))
    return Settings(
        database_url=database_url,
        multi_tenant=multi_tenant,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        balance_check_hours=balance_check_hours,
    )

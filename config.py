import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        lookahead_months: int,
        exclude_future_from_balance: bool,
        scheduler_interval_minutes: int,
        app_version: str,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.lookahead_months = lookahead_months
        self.exclude_future_from_balance = exclude_future_from_balance
        self.scheduler_interval_minutes = scheduler_interval_minutes
        self.app_version = app_version


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MONETIA_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open(Path(__file__).with_name("pyproject.toml"), "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "monetia.db"
    database_url = os.getenv("MONETIA_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MONETIA_TIMEZONE", "Europe/Berlin")
    lookahead_months = int(os.getenv("MONETIA_LOOKAHEAD_MONTHS", "3"))
    exclude_future = _env_flag("MONETIA_EXCLUDE_FUTURE_FROM_BALANCE", "1")
    interval_minutes = int(os.getenv("MONETIA_SCHEDULER_INTERVAL_MINUTES", "60"))
    app_version = os.getenv("MONETIA_APP_VERSION") or _load_app_version()
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        lookahead_months=lookahead_months,
        exclude_future_from_balance=exclude_future,
        scheduler_interval_minutes=interval_minutes,
        app_version=app_version,
    )

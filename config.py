import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        amount_codec: str,
        amount_factor: Decimal,
        encryption_key: str,
        legacy_numeric_amounts: str,
        recurring_retroactive: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.amount_codec = amount_codec
        self.amount_factor = amount_factor
        self.encryption_key = encryption_key
        self.legacy_numeric_amounts = legacy_numeric_amounts
        self.recurring_retroactive = recurring_retroactive


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOMEHUB_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "homehub.db"
    database_url = os.getenv("HOMEHUB_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOMEHUB_TIMEZONE", "Europe/Istanbul")
    amount_codec = os.getenv("HOMEHUB_AMOUNT_CODEC", "obfuscate").strip().lower()
    amount_factor = Decimal(os.getenv("HOMEHUB_AMOUNT_FACTOR", "7.31"))
    encryption_key = os.getenv(
        "HOMEHUB_ENCRYPTION_KEY",
        "3f9a1c5e7b2d4f6a8c0e1b3d5f7a9c2e4b6d8f0a1c3e5b7d9f2a4c6e8b0d1f3a",
    )
    legacy_numeric_amounts = (
        os.getenv("HOMEHUB_LEGACY_NUMERIC_AMOUNTS", "obfuscated").strip().lower()
    )
    recurring_retroactive = _env_flag("HOMEHUB_RECURRING_RETROACTIVE", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        amount_codec=amount_codec,
        amount_factor=amount_factor,
        encryption_key=encryption_key,
        legacy_numeric_amounts=legacy_numeric_amounts,
        recurring_retroactive=recurring_retroactive,
    )

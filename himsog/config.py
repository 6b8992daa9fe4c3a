from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from himsog.scheduling.timezone import parse_offset


class StoreAdapter(Enum):
    MEMORY = "memory"
    SQL = "sql"


class SchedulingConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HIMSOG_SCHEDULING_", env_file=".env", extra="ignore")

    utc_offset: str = "+08:00"
    default_slot_duration_minutes: int = Field(default=30, gt=0)
    no_show_grace_minutes: int = Field(default=15, ge=0)

    @field_validator("utc_offset")
    @classmethod
    def _check_offset(cls, value: str) -> str:
        parse_offset(value)
        return value


class StoreConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HIMSOG_STORE_", env_file=".env", extra="ignore")

    adapter: StoreAdapter = StoreAdapter.MEMORY
    database_url: str = "sqlite+aiosqlite:///./himsog.db"
    echo: bool = False
    create_schema: bool = True


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    scheduling: SchedulingConfig = Field(default_factory=lambda: SchedulingConfig())
    store: StoreConfig = Field(default_factory=lambda: StoreConfig())

from functools import lru_cache
from typing import Optional
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    mysql_user: str = "familyhub"
    mysql_password: str = "familyhub"
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_database: str = "familyhub"
    database_url: Optional[str] = None
    pin_rounds: int = 10
    pin_max_failed_attempts: int = 5
    pin_lockout_minutes: int = 5
    pin_update_retries: int = 5
    environment: str = "development"

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+pymysql://{quote_plus(self.mysql_user)}:{quote_plus(self.mysql_password)}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()

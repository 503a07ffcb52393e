"""
core/config.py -- Realm and application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Two layers:
  RealmConfig: options for one authentication realm (one users/roles schema).
      Plain pydantic model so hosts can build it from any source (YAML, JSON,
      a dict in code). Every option has a default matching the suggested
      schema in auth/schema.py.

  Settings (BaseSettings): application-wide switches plus the realm table.
      REALMS is read as JSON from the environment or .env file, e.g.
        REALMS='{"users": {"roles_key": "roles", "password_expiry_days": 90}}'

Deprecated realm options:
  users_table, roles_table and user_roles_table were renamed to the *_source
  options. The old names are still accepted and logged as deprecated. They
  only apply when the new option is absent.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("realmauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'realmauth.db'}"

# Old option name -> replacement
_DEPRECATED_OPTIONS: dict[str, str] = {
    "users_table": "users_source",
    "roles_table": "roles_source",
    "user_roles_table": "user_roles_source",
}

DEFAULT_REALM = "users"


class RealmConfig(BaseModel):
    """Options for a single authentication realm.

    The *_source options name the logical tables; the mapped class for each is
    the camel-cased source name (user_roles -> UserRoles) unless the matching
    *_resultset option overrides it.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    priority: int = 0
    schema_name: Optional[str] = None

    users_source: str = "user"
    roles_source: str = "role"
    user_roles_source: str = "user_roles"

    users_resultset: Optional[str] = None
    roles_resultset: Optional[str] = None
    user_roles_resultset: Optional[str] = None

    users_username_column: str = "username"
    users_password_column: str = "password"
    roles_role_column: str = "role"
    users_lastlogin_column: str = "lastlogin"
    users_pwchanged_column: Optional[str] = None  # no default: disables expiry
    users_pwresetcode_column: Optional[str] = "pw_reset_code"

    password_expiry_days: Optional[int] = None
    user_valid_conditions: dict[str, Any] = {}
    roles_key: Optional[str] = None
    encryption_algorithm: str = "SHA-512"

    @model_validator(mode="before")
    @classmethod
    def map_deprecated_options(cls, data: Any) -> Any:
        """Move users_table/roles_table/user_roles_table onto the *_source options."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for old, new in _DEPRECATED_OPTIONS.items():
            if not data.get(old):
                continue
            logger.warning('Realm config setting "%s" is deprecated. Use "%s" instead.', old, new)
            value = data.pop(old)
            if not data.get(new):
                data[new] = value
        return data

    @field_validator("password_expiry_days")
    @classmethod
    def validate_password_expiry_days(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("password_expiry_days must be at least 1 when set")
        return v

    @field_validator(
        "users_source",
        "roles_source",
        "user_roles_source",
        "users_username_column",
        "users_password_column",
        "roles_role_column",
    )
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be set and non-empty")
        return v.strip()


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL

    # Global switch: with roles disabled no relationship discovery happens and
    # role lookups return None instead of raising.
    disable_roles: bool = False
    record_lastlogin: bool = False

    realms: dict[str, RealmConfig] = {}

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("DATABASE_URL must be set and non-empty")
        return v.strip()

    @model_validator(mode="after")
    def ensure_default_realm(self) -> "Settings":
        """Fall back to a single realm named 'users' with every option defaulted."""
        if not self.realms:
            self.realms = {DEFAULT_REALM: RealmConfig()}
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()

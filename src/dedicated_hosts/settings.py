"""Runtime configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from dedicated_hosts import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with the
    DEDICATED_HOSTS_ prefix. Example: DEDICATED_HOSTS_REDIS_URL=redis://cache:6379/0

    Without a Redis URL the engine coordinates only within the current
    process (in-memory lock and hint store).
    """

    model_config = SettingsConfigDict(
        env_prefix="DEDICATED_HOSTS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Shared coordination backend
    redis_url: str | None = None
    lock_key_prefix: str = constants.LOCK_KEY_PREFIX
    state_key_prefix: str = constants.STATE_KEY_PREFIX

    # Lock behavior
    lock_lease_seconds: float = Field(default=constants.LOCK_LEASE_SECONDS, gt=0)
    lock_wait_seconds: float = Field(default=constants.LOCK_WAIT_SECONDS, ge=0)
    lock_poll_interval_seconds: float = Field(default=constants.LOCK_POLL_INTERVAL_SECONDS, gt=0)

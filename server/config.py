"""
Environment configuration for the SMServer backend.

Every setting is read lazily from the environment so tests can override
values with monkeypatch before the first access.
"""
import os
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[CONFIG] WARNING: {name}={raw!r} is not an integer, using {default}")
        return default


class Config:
    """Application configuration backed by environment variables"""

    DEFAULT_DATABASE_URL = "sqlite:///./smserver.db"

    def get_database_url(self) -> str:
        return os.getenv("DATABASE_URL", self.DEFAULT_DATABASE_URL)

    def get_admin_key(self) -> Optional[str]:
        return os.getenv("ADMIN_KEY")

    def get_log_level(self) -> str:
        return os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def poll_interval_seconds(self) -> int:
        """Interval between status sweeps over all devices (default 5 minutes)"""
        return max(_env_int("SM_POLL_INTERVAL_SECONDS", 300), 1)

    @property
    def poller_enabled(self) -> bool:
        return os.getenv("SM_POLLER_ENABLED", "true").lower() not in ("0", "false", "no")

    @property
    def phone_timeout_seconds(self) -> float:
        """Per-request timeout for calls to the phone agent"""
        return float(max(_env_int("SM_PHONE_TIMEOUT_SECONDS", 30), 1))

    @property
    def sync_page_size(self) -> int:
        return max(_env_int("SM_SYNC_PAGE_SIZE", 50), 1)

    @property
    def sync_max_pages(self) -> int:
        return max(_env_int("SM_SYNC_MAX_PAGES", 100), 1)

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate configuration.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        admin_key = self.get_admin_key()
        if not admin_key:
            warnings.append("ADMIN_KEY environment variable not set - using default (insecure)")
        elif len(admin_key) < 16:
            warnings.append("ADMIN_KEY should be at least 16 characters for security")

        db_url = self.get_database_url()
        if db_url == self.DEFAULT_DATABASE_URL:
            warnings.append("DATABASE_URL not set - using local SQLite file")

        if self.get_log_level() not in ("DEBUG", "INFO", "WARN", "ERROR"):
            errors.append(f"LOG_LEVEL must be DEBUG, INFO, WARN or ERROR (got {self.get_log_level()})")

        if self.sync_page_size > 500:
            warnings.append("SM_SYNC_PAGE_SIZE above 500 may time out on slow phones")

        return (len(errors) == 0, errors, warnings)

    def print_config_summary(self):
        print("\n" + "=" * 60)
        print("SMServer Configuration")
        print("=" * 60)
        print(f"Database: {self.get_database_url()[:50]}")
        print(f"Admin Key: {'✓ Set' if self.get_admin_key() else '✗ Missing'}")
        print(f"Status poller: {'every ' + str(self.poll_interval_seconds) + 's' if self.poller_enabled else 'disabled'}")
        print(f"Phone timeout: {self.phone_timeout_seconds}s")
        print(f"Sync paging: {self.sync_page_size} per page, max {self.sync_max_pages} pages")

        is_valid, errors, warnings = self.validate()
        if is_valid:
            print("Status: ✓ Configuration valid")
            for warning in warnings:
                print(f"  ! {warning}")
        else:
            print("Status: ✗ Configuration issues detected:")
            for error in errors:
                print(f"  - {error}")
        print("=" * 60 + "\n")


# Global config instance
config = Config()

import os


class Settings:
    def __init__(self):
        self.database_url = os.getenv("PAYMENTS_DATABASE_URL", "sqlite:///./payments.db")
        self.cache_ttl_seconds = int(os.getenv("PAYMENTS_CACHE_TTL", "300"))
        self.pool_size = int(os.getenv("PAYMENTS_POOL_SIZE", "10"))
        self.pool_timeout_seconds = float(os.getenv("PAYMENTS_POOL_TIMEOUT", "10"))
        self.log_level = os.getenv("PAYMENTS_LOG_LEVEL", "INFO")


_settings_instance = None


def get_settings():
    """Return a singleton Settings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings():
    """Drop the cached Settings so the next call re-reads the environment."""
    global _settings_instance
    _settings_instance = None

from .schemas import ENV_PREFIX, AppSettings, settings_from_env

__all__ = ["ENV_PREFIX", "AppSettings", "settings_from_env"]

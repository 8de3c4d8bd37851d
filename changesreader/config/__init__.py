from .settings import Settings, CouchSettings, ChangesSettings, LoggingSettings, get_settings, reload_settings

__all__ = [
    "Settings",
    "CouchSettings",
    "ChangesSettings",
    "LoggingSettings",
    "get_settings",
    "reload_settings",
]

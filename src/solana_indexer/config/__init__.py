from .settings import Settings, get_settings, reload_settings, configure_logging

__all__ = ["Settings", "get_settings", "reload_settings", "configure_logging"]

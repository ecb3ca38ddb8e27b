from .config import AppConfig, get_app_config

__all__ = ["AppConfig", "get_app_config"]

from agent_substrate.config.loader import YamlConfigLoader
from agent_substrate.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]

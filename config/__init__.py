from .config_loader import Config, config
from .settings import BotSettings, ConfigurationError

__all__ = ['Config', 'config', 'BotSettings', 'ConfigurationError']

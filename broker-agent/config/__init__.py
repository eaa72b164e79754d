from .manager import DEFAULTS, ConfigManager, tls_options

from .config import Config, load_config
from .logging import setup_logging

__all__ = ["Config", "load_config", "setup_logging"]

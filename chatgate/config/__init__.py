"""配置。"""

from chatgate.config.loader import load_config
from chatgate.config.schema import Config

__all__ = ["Config", "load_config"]

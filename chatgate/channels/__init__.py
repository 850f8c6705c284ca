"""渠道实现。"""

from chatgate.channels.base import BaseProvider, BaseTransport

__all__ = ["BaseProvider", "BaseTransport"]

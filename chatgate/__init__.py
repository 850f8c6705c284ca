"""chatgate：多渠道聊天网关。"""

__version__ = "0.1.0"

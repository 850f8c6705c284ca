"""协作方接口的文件实现。"""

from chatgate.stores.conversations import JsonConversationStore
from chatgate.stores.pairing import JsonPairingStore

__all__ = ["JsonConversationStore", "JsonPairingStore"]

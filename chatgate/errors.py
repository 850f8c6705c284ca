"""网关异常分类。

管道中的任何失败都不会终止宿主进程：每个异常都在产生它的单元边界被捕获，
转换为日志（以及必要时的一条用户可见兜底消息）。
策略拒绝不是异常，而是 ``AccessDecision`` 的 drop / pairing_challenge 结果。
"""


class ChatGateError(Exception):
    """所有网关异常的基类。"""


class NormalizationError(ChatGateError):
    """入站事件缺少发送者或会话标识，无法构造会话键。"""


class DeliveryError(ChatGateError):
    """单个分块投递失败；调度器记录后继续处理后续分块。"""

    def __init__(self, kind: str, target: str, cause: BaseException):
        super().__init__(f"{kind} delivery to {target} failed: {cause}")
        self.kind = kind
        self.target = target
        self.cause = cause


class DispatchFailure(ChatGateError):
    """Agent 调用在产出任何回复之前失败。"""

    def __init__(self, session_key: str, cause: BaseException):
        super().__init__(f"dispatch for {session_key} failed: {cause}")
        self.session_key = session_key
        self.cause = cause


class NotifierError(ChatGateError):
    """群主提醒发送失败，只记录，不上抛。"""

    def __init__(self, target: str, cause: BaseException):
        super().__init__(f"owner notification to {target} failed: {cause}")
        self.target = target
        self.cause = cause

"""
LLM 调用错误类型。调用方按类型区分可重试（限流）与不可重试（配置/鉴权），不做字符串匹配。
"""

from typing import Optional


class LLMError(Exception):
    """上游 LLM 调用失败的基类"""

    kind = "upstream"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class LLMRateLimitError(LLMError):
    """HTTP 429：限流，稍后可重试"""

    kind = "rate_limited"
    retryable = True


class LLMConfigurationError(LLMError):
    """缺少/无效 API key，HTTP 401/403"""

    kind = "configuration"
    retryable = False


class LLMResponseError(LLMError):
    """响应无法解析为期望的结构"""

    kind = "malformed_response"
    retryable = False


def error_for_status(status_code: int, message: str, provider: str = "") -> LLMError:
    if status_code == 429:
        return LLMRateLimitError(message, status_code=status_code, provider=provider)
    if status_code in (401, 403):
        return LLMConfigurationError(message, status_code=status_code, provider=provider)
    return LLMError(message, status_code=status_code, provider=provider)

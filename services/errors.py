"""错误分类

远程调用（记忆服务、LLM 提供方）失败的统一异常体系。每个异常带稳定的 code，
RetryManager 依据 classify_error 的结果查重试策略表，CircuitBreaker 依据它决定
是否计入依赖失败。
"""
import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorClass(str, Enum):
    """Failure buckets that drive retry policy and telemetry."""
    RATE_LIMITED = "rate_limited"        # 429
    SERVER_ERROR = "server_error"        # 5xx except 504
    GATEWAY_TIMEOUT = "gateway_timeout"  # 504
    NETWORK_ERROR = "network_error"      # connect refused / DNS / reset
    CLIENT_ERROR = "client_error"        # 4xx except 429
    TIMEOUT = "timeout"                  # client-side deadline exceeded
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class RelayError(Exception):
    """Base class for remote-call failures."""
    code = ErrorClass.UNKNOWN.value

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message or self.code)


class OperationTimeoutError(RelayError):
    """Operation exceeded its deadline. Never retried."""
    code = ErrorClass.TIMEOUT.value


class RateLimitedError(RelayError):
    code = ErrorClass.RATE_LIMITED.value


class ServerError(RelayError):
    code = ErrorClass.SERVER_ERROR.value


class GatewayTimeoutError(ServerError):
    code = ErrorClass.GATEWAY_TIMEOUT.value


class ClientError(RelayError):
    """4xx other than 429: a caller fault, not a dependency failure."""
    code = ErrorClass.CLIENT_ERROR.value


class NetworkError(RelayError):
    code = ErrorClass.NETWORK_ERROR.value


class CircuitOpenError(RelayError):
    """Raised when a circuit breaker rejects a call."""
    code = ErrorClass.CIRCUIT_OPEN.value

    def __init__(self, breaker_name: str, message: str = ""):
        self.breaker_name = breaker_name
        super().__init__(message or f"Circuit breaker '{breaker_name}' is open")


class ProviderError(RelayError):
    """Unrecoverable LLM provider failure, surfaced to the client as an error event."""
    code = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None, cause_code: Optional[str] = None):
        super().__init__(message, status_code)
        if cause_code:
            self.code = cause_code


def error_for_status(status_code: int, message: str = "") -> RelayError:
    """Map an HTTP status code to the taxonomy."""
    text = message or f"HTTP {status_code}"
    if status_code == 429:
        return RateLimitedError(text, status_code)
    if status_code == 504:
        return GatewayTimeoutError(text, status_code)
    if status_code >= 500:
        return ServerError(text, status_code)
    if status_code >= 400:
        return ClientError(text, status_code)
    return RelayError(text, status_code)


def from_httpx_error(exc: httpx.HTTPError) -> RelayError:
    """Translate a raw httpx exception into the taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc))
    if isinstance(exc, httpx.TimeoutException):
        return OperationTimeoutError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    return RelayError(str(exc))


def classify_error(exc: BaseException) -> ErrorClass:
    """Classify an exception into an ErrorClass.

    Checks run from most specific to least specific; the first match wins.
    """
    if isinstance(exc, RelayError):
        try:
            return ErrorClass(exc.code)
        except ValueError:
            return ErrorClass.UNKNOWN
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.TIMEOUT
    if isinstance(exc, httpx.HTTPError):
        return classify_error(from_httpx_error(exc))
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorClass.NETWORK_ERROR
    return ErrorClass.UNKNOWN

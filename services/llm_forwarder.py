"""LLM 转发核心服务

将组装好的 prompt 转发到配置的 OpenAI 兼容服务器，支持按模型轮询负载均衡与流式响应。
上游 SSE 流被解析为 StreamDelta（文本增量）序列，最后以 StreamFinish（结束原因 +
usage）收尾。建立连接阶段（首个 token 之前）的失败按重试策略重试。
"""
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

from config.settings import ChatConfig, ServerConfig, get_settings
from config.logging import get_logger
from services.errors import (
    ErrorClass,
    ProviderError,
    RelayError,
    classify_error,
    error_for_status,
    from_httpx_error,
)
from services.retry import RetryManager


logger = get_logger(__name__)

FRIENDLY_MESSAGES = {
    ErrorClass.RATE_LIMITED: "Overloaded, please try again soon.",
    ErrorClass.SERVER_ERROR: "Server error, please try again later.",
    ErrorClass.GATEWAY_TIMEOUT: "Server error, please try again later.",
    ErrorClass.TIMEOUT: "Request timed out. Please try again with a shorter message.",
    ErrorClass.NETWORK_ERROR: "Service temporarily unavailable. Please try again.",
}


@dataclass(frozen=True)
class ProviderUsage:
    tokens_in: int
    tokens_out: int
    cached_tokens_in: int = 0


@dataclass(frozen=True)
class StreamDelta:
    text: str


@dataclass(frozen=True)
class StreamFinish:
    finish_reason: str = "stop"
    usage: Optional[ProviderUsage] = None


StreamItem = Union[StreamDelta, StreamFinish]


def to_provider_error(exc: BaseException) -> ProviderError:
    """Wrap a transport/HTTP failure in a ProviderError carrying its class as code."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.HTTPError):
        exc = from_httpx_error(exc)
    error_class = classify_error(exc)
    message = FRIENDLY_MESSAGES.get(error_class, "Service temporarily unavailable. Please try again.")
    status = exc.status_code if isinstance(exc, RelayError) else None
    return ProviderError(message, status_code=status, cause_code=error_class.value)


def parse_usage(data: Dict[str, Any]) -> Optional[ProviderUsage]:
    usage = data.get("usage")
    if not usage:
        return None
    details = usage.get("prompt_tokens_details") or {}
    return ProviderUsage(
        tokens_in=int(usage.get("prompt_tokens") or 0),
        tokens_out=int(usage.get("completion_tokens") or 0),
        cached_tokens_in=int(details.get("cached_tokens") or 0),
    )


class LLMForwarder:
    """LLM请求转发服务"""

    def __init__(
        self,
        chat_config: Optional[ChatConfig] = None,
        retry: Optional[RetryManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.chat_config = chat_config or ChatConfig()
        self.retry = retry or RetryManager()
        self.http_client: Optional[httpx.AsyncClient] = http_client
        self._model_server_map: Dict[str, List[ServerConfig]] = {}
        self._counters: Dict[str, int] = {}

    async def initialize(self, servers: Optional[Dict[str, ServerConfig]] = None):
        """初始化HTTP客户端和服务器映射"""
        if servers is None:
            servers = get_settings().servers

        for server_name, server_config in servers.items():
            for model in server_config.models:
                self._model_server_map.setdefault(model, []).append(server_config)
                self._counters.setdefault(model, 0)

        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                limits=httpx.Limits(
                    max_connections=500,
                    max_keepalive_connections=50,
                    keepalive_expiry=180,
                ),
                timeout=httpx.Timeout(connect=5.0, read=300.0, write=5.0, pool=5.0),
                transport=httpx.AsyncHTTPTransport(retries=2, http2=True),
            )
        logger.info(f"[LLM] {len(self._model_server_map)} models across {len(servers)} servers")

    def resolve_model(self, requested: Optional[str]) -> str:
        """请求的模型不可用时回退到默认模型"""
        if requested and requested in self._model_server_map:
            return requested
        if requested:
            logger.warning(f"[LLM] Model '{requested}' not configured, using {self.chat_config.default_model}")
        return self.chat_config.default_model

    def get_server_for_model(self, model: str) -> ServerConfig:
        """根据模型名获取服务器配置（轮询）"""
        if model not in self._model_server_map:
            raise ProviderError(f"Unsupported model: {model}", cause_code="unsupported_model")

        servers = self._model_server_map[model]
        counter = self._counters[model] % len(servers)
        self._counters[model] += 1

        return servers[counter]

    def get_auth_headers(self, server_config: ServerConfig) -> Dict[str, str]:
        """生成认证头"""
        return {
            "Authorization": f"Bearer {server_config.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.chat_config.temperature,
        }
        if self.chat_config.max_tokens:
            payload["max_tokens"] = self.chat_config.max_tokens
        return payload

    async def _open_stream(self, model: str, payload: Dict[str, Any]) -> httpx.Response:
        server_config = self.get_server_for_model(model)
        request = self.http_client.build_request(
            "POST",
            f"{server_config.base_url}/chat/completions",
            json=payload,
            headers=self.get_auth_headers(server_config),
            timeout=httpx.Timeout(connect=10.0, read=None, write=10.0, pool=10.0),
        )
        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise from_httpx_error(e) from e

        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise error_for_status(
                response.status_code,
                f"LLM server returned {response.status_code}: {body[:200]!r}",
            )
        return response

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
    ) -> AsyncIterator[StreamItem]:
        """
        流式对话

        Args:
            model: 模型名称（已解析）
            messages: 组装好的消息列表

        Yields:
            StreamDelta 若干，最后一个 StreamFinish

        Raises:
            ProviderError: 上游不可恢复的错误（连接、状态码、流中断）
        """
        payload = self.build_payload(model, messages)
        try:
            response = await self.retry.execute(
                lambda: self._open_stream(model, payload),
                name=f"llm.{model}",
            )
        except ProviderError:
            raise
        except Exception as e:
            raise to_provider_error(e) from e

        finish_reason = "stop"
        usage: Optional[ProviderUsage] = None
        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"[LLM] Skipping malformed chunk: {data[:100]}")
                    continue

                if "error" in chunk:
                    message = chunk["error"].get("message", "upstream error") if isinstance(chunk["error"], dict) else str(chunk["error"])
                    raise ProviderError(message, cause_code="provider_error")

                usage = parse_usage(chunk) or usage
                for choice in chunk.get("choices") or []:
                    text = (choice.get("delta") or {}).get("content")
                    if text:
                        yield StreamDelta(text)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise to_provider_error(e) from e
        finally:
            await response.aclose()

        yield StreamFinish(finish_reason=finish_reason, usage=usage)

    def get_available_models(self) -> List[str]:
        """获取所有可用模型列表"""
        return list(self._model_server_map.keys())

    async def close(self):
        """关闭HTTP客户端"""
        if self.http_client:
            await self.http_client.aclose()

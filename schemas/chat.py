"""聊天相关的请求和响应模型

定义对话请求、SSE 事件（Token / Usage / Done / Error）等 Pydantic 模型。
SSE 事件是一个封闭的标签联合，序列化入口为 format_sse。
"""
import json
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    """对话请求（一次请求内不可变）"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str = Field(..., min_length=1, max_length=4000, description="用户消息")
    use_memory: bool = Field(False, alias="useMemory", description="是否检索长期记忆")
    session_id: Optional[str] = Field(None, alias="sessionId", description="会话ID")
    model: Optional[str] = Field(None, description="模型名称")


class ModelsResponse(BaseModel):
    """模型列表响应"""
    object: str = Field(default="list", description="对象类型")
    data: List[dict] = Field(..., description="模型列表")


# ============================================================================
# SSE Events
# ============================================================================

class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class TokenEvent(_EventBase):
    type: Literal["token"] = "token"
    text: str


class UsageEvent(_EventBase):
    type: Literal["usage"] = "usage"
    tokens_in: int = Field(..., alias="tokensIn")
    tokens_out: int = Field(..., alias="tokensOut")
    cost_usd: float = Field(..., alias="costUsd")
    model: str


class DoneEvent(_EventBase):
    type: Literal["done"] = "done"
    finish_reason: str = Field("stop", alias="finishReason")


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    message: str
    code: str


SSEEvent = Annotated[
    Union[TokenEvent, UsageEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]


def _payload(event: BaseModel) -> str:
    return json.dumps(
        event.model_dump(by_alias=True, exclude={"type"}),
        ensure_ascii=False,
        separators=(",", ":"),
    )


def format_sse(event: SSEEvent) -> str:
    """Serialize an event as an SSE frame: ``event: <type>\\ndata: <json>\\n\\n``."""
    match event:
        case TokenEvent():
            name = "token"
        case UsageEvent():
            name = "usage"
        case DoneEvent():
            name = "done"
        case ErrorEvent():
            name = "error"
        case _:
            raise TypeError(f"Unsupported SSE event: {type(event).__name__}")
    return f"event: {name}\ndata: {_payload(event)}\n\n"


def format_comment(text: str) -> str:
    """SSE comment line; ignored by conforming clients."""
    return f": {text}\n\n"

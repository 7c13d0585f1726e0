"""记忆检索相关模型

MemoryEntry 由远程记忆服务产生，经 RetrievalPolicyEngine 过滤、裁剪后组成
RetrievalPayload。所有条目均不可变，裁剪时生成新值。
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class Provenance(BaseModel):
    """Where a memory entry came from and how it was altered."""
    model_config = ConfigDict(frozen=True)

    collection: str = ""
    search_type: str = "similarity"
    original_length: int = 0
    was_redacted: bool = False


class MemoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    score: float = Field(0.0, ge=0.0, le=1.0)
    timestamp: Optional[datetime] = None
    session_id: Optional[str] = None
    type: Literal["message", "fact", "summary"] = "message"
    provenance: Provenance = Field(default_factory=Provenance)


class RetrievalMetadata(BaseModel):
    query_time_ms: float = 0.0
    total_results: int = 0
    included_results: int = 0
    total_tokens: int = 0
    applied_filters: List[str] = Field(default_factory=list)


class RetrievalPayload(BaseModel):
    """检索结果：有序记忆列表 + 元数据"""
    memories: List[MemoryEntry] = Field(default_factory=list)
    metadata: RetrievalMetadata = Field(default_factory=RetrievalMetadata)


# ============================================================================
# HTTP request/response models
# ============================================================================

class MemorySearchRequest(BaseModel):
    """Request model for memory search."""
    query: str = Field(..., min_length=1, description="Search query")
    session_id: Optional[str] = Field(None, description="Restrict to one session")


class MemorySearchResponse(BaseModel):
    """Response model for memory search."""
    query: str
    degraded: bool = Field(False, description="记忆服务不可用时为 True")
    payload: RetrievalPayload


SESSION_ID_PATTERN = r"^session-\d{8}-\d{6}-[a-z0-9]{4}$"


class Fact(BaseModel):
    """A subject/predicate/object statement about the user."""
    subject: str = Field(..., min_length=1, max_length=200)
    predicate: str = Field(..., min_length=1)
    object: str = Field(..., min_length=1, max_length=500)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class FactsRequest(BaseModel):
    facts: List[Fact] = Field(..., min_length=1, max_length=50, description="要写入的事实")
    session_id: Optional[str] = Field(None, pattern=SESSION_ID_PATTERN)


class FactsResponse(BaseModel):
    status: str
    stored: int = 0

"""记忆 API 路由

提供对调用者自己记忆 collection 的检索与事实写入接口。
检索走与对话相同的降级路径：记忆服务不可用时返回空结果而不是报错。
"""
from fastapi import APIRouter, Depends, HTTPException, status

from config.logging import get_logger
from database.models import User
from schemas.memory import (
    FactsRequest,
    FactsResponse,
    MemorySearchRequest,
    MemorySearchResponse,
    RetrievalPayload,
)
from services.errors import CircuitOpenError, ClientError, RelayError, classify_error
from services.memory_fallback import MemoryFallbackService
from api.routes.dependencies import get_current_user, get_memory_service


logger = get_logger(__name__)

router = APIRouter(prefix="/v1/memory", tags=["memory"])


@router.post("/search", response_model=MemorySearchResponse)
async def search_memory(
    body: MemorySearchRequest,
    user: User = Depends(get_current_user),
    memory: MemoryFallbackService = Depends(get_memory_service),
):
    """检索记忆（已去重、裁剪、按预算截断）"""
    if not memory.config.enabled:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Memory service is disabled")

    payload = await memory.get_context(
        str(user.id),
        body.query,
        session_id=body.session_id,
    )
    return MemorySearchResponse(
        query=body.query,
        degraded=payload is None,
        payload=payload or RetrievalPayload(),
    )


@router.post("/facts", response_model=FactsResponse)
async def add_facts(
    body: FactsRequest,
    user: User = Depends(get_current_user),
    memory: MemoryFallbackService = Depends(get_memory_service),
):
    """写入事实到调用者的 collection"""
    if not memory.config.enabled:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Memory service is disabled")

    try:
        stored = await memory.add_facts(str(user.id), body.facts, session_id=body.session_id)
    except ClientError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CircuitOpenError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Memory service temporarily unavailable",
        )
    except RelayError as e:
        logger.error(f"[MEMORY] Fact upsert failed for user {user.id} ({classify_error(e).value}): {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Memory service error")

    return FactsResponse(status="ok", stored=stored)

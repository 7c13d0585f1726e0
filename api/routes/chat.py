"""聊天 API 路由

POST /v1/chat 以 SSE 流返回模型输出（token* → usage → done，或单个 error）。
一旦开始流式输出，HTTP 状态码固定为 200，错误只能以 error 事件体现。
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from database.models import User
from config.logging import get_logger
from services.chat_orchestrator import ChatOrchestrator
from services.llm_forwarder import LLMForwarder
from schemas.chat import ChatRequest, ModelsResponse
from api.routes.dependencies import get_current_user, get_llm_forwarder, get_orchestrator


logger = get_logger(__name__)


router = APIRouter(prefix="/v1", tags=["chat"])


@router.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    user: User = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """流式对话"""
    request_id = request.state.request_id
    emitter = orchestrator.start(body, user_id=str(user.id), request_id=request_id)

    return StreamingResponse(
        emitter.stream(),
        media_type="text/event-stream",
        headers=emitter.headers,
    )


@router.get("/models", response_model=ModelsResponse)
async def list_models(
    llm_forwarder: LLMForwarder = Depends(get_llm_forwarder),
):
    """获取可用模型列表"""
    models = llm_forwarder.get_available_models()
    return ModelsResponse(
        data=[
            {"id": model, "object": "model", "owned_by": "memrelay"}
            for model in models
        ]
    )

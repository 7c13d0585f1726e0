"""共享的依赖注入函数

从 app.state 取出启动时装配好的服务，并提供 API Key 认证依赖。
"""
from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import User
from database.session import get_db_session
from services.auth import AuthService
from services.chat_orchestrator import ChatOrchestrator
from services.llm_forwarder import LLMForwarder
from services.memory_fallback import MemoryFallbackService
from services.pricing import PricingCatalog

security = HTTPBearer(auto_error=False)


async def get_llm_forwarder(request: Request) -> LLMForwarder:
    """Get LLM forwarder from app state (dependency injection)."""
    return request.app.state.llm_forwarder


async def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


async def get_memory_service(request: Request) -> MemoryFallbackService:
    return request.app.state.memory_service


async def get_pricing_catalog(request: Request) -> PricingCatalog:
    return request.app.state.pricing_catalog


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(security),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    """Require a valid Bearer API key.

    Args:
        credentials: Authorization header, if any.
        session: Database session.

    Returns:
        The key's owner.
    """
    api_key_str = credentials.credentials if credentials else None
    _, user = await AuthService.validate_api_key(session, api_key_str)
    return user

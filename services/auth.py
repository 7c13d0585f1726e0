"""认证服务

提供 API Key 生成、创建与验证。对话与记忆接口都需要有效的 Bearer API Key，
记忆服务的 collection 由验证得到的用户决定。
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import APIKey, User
from database.repository import APIKeyRepository, UserRepository
from config.logging import get_logger


logger = get_logger(__name__)


class AuthService:
    """认证服务"""

    @staticmethod
    def generate_api_key() -> str:
        """生成随机API密钥 (sk- 开头)"""
        return f"sk-{secrets.token_urlsafe(36)}"

    @staticmethod
    async def create_api_key(
        session: AsyncSession,
        user_id: int,
        name: str,
        daily_limit: Optional[int] = None,
        expires_days: Optional[int] = None
    ) -> APIKey:
        """创建API密钥"""
        expires_at = None
        if expires_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=expires_days)

        api_key = await APIKeyRepository.create(
            session,
            user_id=user_id,
            key=AuthService.generate_api_key(),
            name=name,
            daily_limit=daily_limit,
            expires_at=expires_at
        )

        logger.info(f"[AUTH] API key '{name}' created for user {user_id}")
        return api_key

    @staticmethod
    async def validate_api_key(
        session: AsyncSession,
        api_key_str: Optional[str]
    ) -> Tuple[APIKey, User]:
        """
        验证API密钥

        Returns:
            (APIKey, User)

        Raises:
            HTTPException: 401 缺失/无效，403 停用/过期，429 超出每日配额
        """
        if not api_key_str:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key is required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        api_key = await APIKeyRepository.get_by_key(session, api_key_str)
        if not api_key:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not APIKeyRepository.is_valid(api_key):
            detail = "API key is deactivated" if not api_key.is_active else "API key has expired"
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

        passed, error_msg = APIKeyRepository.check_rate_limit(api_key)
        if not passed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=error_msg,
            )

        user = await UserRepository.get_by_id(session, api_key.user_id)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found",
            )

        await APIKeyRepository.update_usage(session, api_key)
        await session.commit()

        return api_key, user

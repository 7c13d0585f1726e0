"""数据访问层

提供用户、API Key、模型计费、遥测事件、管理员设置的数据访问操作。
"""
from typing import Any, Dict, Optional, List
from datetime import date, datetime, timezone
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User, APIKey, ModelPricingRecord, TelemetryEventRecord, AdminSetting


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# 用户与 API Key
# ============================================================================

class UserRepository:
    """用户数据访问"""

    @staticmethod
    async def get_or_create(
        session: AsyncSession,
        name: str,
        email: Optional[str] = None
    ) -> User:
        """获取或创建用户"""
        result = await session.execute(
            select(User).where(User.name == name)
        )
        user = result.scalar_one_or_none()

        if not user:
            user = User(name=name, email=email)
            session.add(user)
            await session.flush()

        return user

    @staticmethod
    async def get_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
        """根据ID获取用户"""
        return await session.get(User, user_id)


class APIKeyRepository:
    """API密钥数据访问"""

    @staticmethod
    async def create(
        session: AsyncSession,
        user_id: int,
        name: str,
        key: str,
        daily_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None
    ) -> APIKey:
        """创建API密钥"""
        api_key = APIKey(
            user_id=user_id,
            name=name,
            key=key,
            daily_limit=daily_limit,
            expires_at=expires_at
        )
        session.add(api_key)
        await session.flush()
        return api_key

    @staticmethod
    async def get_by_key(session: AsyncSession, key: str) -> Optional[APIKey]:
        """根据key获取API密钥（仅激活的）"""
        result = await session.execute(
            select(APIKey)
            .where(APIKey.key == key)
            .where(APIKey.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    @staticmethod
    def is_valid(api_key: APIKey) -> bool:
        """检查API密钥是否有效（激活且未过期）"""
        if not api_key.is_active:
            return False
        if api_key.expires_at:
            expires_at = api_key.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at < _utcnow():
                return False
        return True

    @staticmethod
    def requests_on(api_key: APIKey, day: date) -> int:
        """指定 UTC 日期内的请求数"""
        return api_key.requests_today if api_key.usage_date == day else 0

    @staticmethod
    async def update_usage(session: AsyncSession, api_key: APIKey) -> None:
        """更新API密钥使用统计"""
        now = _utcnow()
        api_key.requests_today = APIKeyRepository.requests_on(api_key, now.date()) + 1
        api_key.usage_date = now.date()
        api_key.last_used_at = now
        api_key.total_requests += 1
        await session.flush()

    @staticmethod
    def check_rate_limit(api_key: APIKey, today: Optional[date] = None) -> tuple[bool, str]:
        """检查当日请求配额"""
        today = today or _utcnow().date()
        if api_key.daily_limit and APIKeyRepository.requests_on(api_key, today) >= api_key.daily_limit:
            return False, f"Daily limit of {api_key.daily_limit} requests exceeded"
        return True, ""


# ============================================================================
# 计费
# ============================================================================

class PricingRepository:
    """模型费率数据访问"""

    @staticmethod
    async def list_active(session: AsyncSession) -> List[ModelPricingRecord]:
        result = await session.execute(
            select(ModelPricingRecord).where(ModelPricingRecord.is_active.is_(True))
        )
        return list(result.scalars().all())

    @staticmethod
    async def upsert(
        session: AsyncSession,
        model: str,
        input_per_mtok: float,
        output_per_mtok: float,
        cached_input_per_mtok: Optional[float] = None,
    ) -> ModelPricingRecord:
        """按模型名插入或更新费率"""
        result = await session.execute(
            select(ModelPricingRecord).where(ModelPricingRecord.model == model)
        )
        record = result.scalar_one_or_none()
        if record is None:
            record = ModelPricingRecord(model=model)
            session.add(record)
        record.input_per_mtok = input_per_mtok
        record.output_per_mtok = output_per_mtok
        record.cached_input_per_mtok = cached_input_per_mtok
        record.is_active = True
        await session.flush()
        return record


# ============================================================================
# 遥测
# ============================================================================

class TelemetryRepository:
    """遥测事件数据访问"""

    @staticmethod
    async def create(
        session: AsyncSession,
        event_type: str,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> TelemetryEventRecord:
        record = TelemetryEventRecord(
            type=event_type,
            user_id=user_id,
            session_id=session_id,
            payload_json=payload,
        )
        session.add(record)
        await session.flush()
        return record

    @staticmethod
    async def get_recent(
        session: AsyncSession,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[TelemetryEventRecord]:
        """获取最近的遥测事件"""
        query = select(TelemetryEventRecord).order_by(desc(TelemetryEventRecord.id)).limit(limit)
        if event_type:
            query = query.where(TelemetryEventRecord.type == event_type)
        result = await session.execute(query)
        return list(result.scalars().all())


# ============================================================================
# 管理员设置
# ============================================================================

class AdminSettingRepository:
    """管理员设置数据访问"""

    @staticmethod
    async def get(session: AsyncSession, key: str) -> Optional[Dict[str, Any]]:
        setting = await session.get(AdminSetting, key)
        return setting.value_json if setting else None

    @staticmethod
    async def set(session: AsyncSession, key: str, value: Dict[str, Any]) -> AdminSetting:
        setting = await session.get(AdminSetting, key)
        if setting is None:
            setting = AdminSetting(key=key, value_json=value)
            session.add(setting)
        else:
            setting.value_json = value
        await session.flush()
        return setting

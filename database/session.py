"""数据库会话管理

提供数据库引擎、会话工厂、请求级会话依赖，以及后台任务使用的事务作用域。
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event, text
from config.settings import get_settings

from .models import Base


_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker] = None


def _sqlite_on_connect(dbapi_connection, connection_record):
    # 每个连接：外键约束 + 30 秒 busy_timeout
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """获取数据库引擎（首次调用时创建）"""
    global _engine
    if _engine is None:
        url = url or get_settings().database.url

        engine_kwargs = {}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        _engine = create_async_engine(url, echo=False, **engine_kwargs)

        if _engine.dialect.name == "sqlite":
            event.listen(_engine.sync_engine, "connect", _sqlite_on_connect)

    return _engine


def get_session_factory() -> async_sessionmaker:
    """获取会话工厂"""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（依赖注入用）"""
    async with get_session_factory()() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """事务作用域：成功提交，异常回滚（后台任务用）"""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(url: Optional[str] = None):
    """初始化数据库表"""
    engine = get_engine(url)

    # WAL 模式提高并发读写性能
    if engine.dialect.name == "sqlite":
        async with engine.connect() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.commit()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """关闭数据库连接"""
    global _engine, _async_session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None

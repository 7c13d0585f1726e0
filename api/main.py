"""FastAPI 应用入口

配置应用启动、关闭事件和路由注册。启动时装配所有服务并存入 app.state，
路由通过 api/routes/dependencies.py 取用。
"""
from pathlib import Path
from typing import List
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from api.routes.chat import router as chat_router
from api.routes.memory import router as memory_router
from api.routes.admin import router as admin_router
from api.middleware import RequestLoggingMiddleware
from database.repository import AdminSettingRepository, PricingRepository, TelemetryRepository
from database.session import init_db, close_db, session_scope
from schemas.pricing import ModelPricing
from services.chat_orchestrator import ChatOrchestrator
from services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from services.llm_forwarder import LLMForwarder
from services.memory_client import MemoryServiceClient
from services.memory_fallback import MemoryFallbackService
from services.pricing import PricingCatalog
from services.prompt_assembler import PromptAssembler
from services.retrieval_policy import RetrievalPolicyEngine
from services.retry import RetryManager
from services.telemetry import TelemetryRecord, TelemetryService
from services.usage_cost import UsageCostCalculator
from config.settings import Settings, get_settings
from config.logging import setup_logging, get_logger


APP_VERSION = "0.1.0"

# 创建FastAPI应用
app = FastAPI(
    title="MemRelay",
    description="带长期记忆的流式对话中继",
    version=APP_VERSION,
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 添加日志中间件
app.add_middleware(RequestLoggingMiddleware)

logger = get_logger(__name__)

# 管理端可覆盖的配置段
OVERRIDABLE_SECTIONS = ("retrieval",)


# ============================================================================
# 全局异常处理器
# ============================================================================

@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
    """处理数据库相关异常"""
    logger.error(f"[DB] Database error on {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database error",
            "message": "数据库操作失败。请确保已运行 `python init_db.py` 初始化数据库。",
            "detail": str(exc) if logger.getEffectiveLevel() <= 10 else None  # DEBUG 模式才显示详情
        }
    )


# 注册路由
app.include_router(chat_router)
app.include_router(memory_router)
app.include_router(admin_router)


# ============================================================================
# 装配
# ============================================================================

async def load_pricing() -> List[ModelPricing]:
    """从 models_pricing 表加载有效费率"""
    async with session_scope() as session:
        records = await PricingRepository.list_active(session)
        return [
            ModelPricing(
                model=r.model,
                input_per_mtok=r.input_per_mtok,
                output_per_mtok=r.output_per_mtok,
                cached_input_per_mtok=r.cached_input_per_mtok,
            )
            for r in records
        ]


async def persist_telemetry(rec: TelemetryRecord) -> None:
    async with session_scope() as session:
        await TelemetryRepository.create(
            session,
            event_type=rec.type,
            payload=rec.payload,
            user_id=rec.user_id,
            session_id=rec.session_id,
        )


async def apply_admin_overrides(settings: Settings) -> None:
    """合并 admin_settings 表中的覆盖项；非法覆盖项记日志后忽略"""
    for section in OVERRIDABLE_SECTIONS:
        async with session_scope() as session:
            values = await AdminSettingRepository.get(session, section)
        if not values:
            continue
        try:
            settings.apply_overrides(section, values)
            logger.info(f"[SERVER] Applied admin overrides for '{section}': {sorted(values)}")
        except ValidationError as e:
            logger.error(f"[SERVER] Ignoring invalid admin overrides for '{section}': {e}")


def build_orchestrator(
    settings: Settings,
    llm_forwarder: LLMForwarder,
    pricing_catalog: PricingCatalog,
    telemetry: TelemetryService,
    retry: RetryManager,
) -> ChatOrchestrator:
    """按配置装配记忆降级路径和编排器"""
    breaker_cfg = settings.circuit_breaker
    breaker = CircuitBreaker(
        "memory_service",
        CircuitBreakerConfig(
            failure_threshold=breaker_cfg.failure_threshold,
            open_timeout_s=breaker_cfg.open_timeout_seconds,
            half_open_probes=breaker_cfg.half_open_probes,
        ),
    )
    memory_service = MemoryFallbackService(
        client=MemoryServiceClient(settings.memory_service),
        breaker=breaker,
        retry=retry,
        policy=RetrievalPolicyEngine(),
        telemetry=telemetry,
        config=settings.memory_service,
        retrieval=settings.retrieval,
    )
    return ChatOrchestrator(
        llm=llm_forwarder,
        assembler=PromptAssembler(settings.prompt_budget),
        calculator=UsageCostCalculator(pricing_catalog, settings.pricing),
        pricing=pricing_catalog,
        telemetry=telemetry,
        memory=memory_service,
        chat_config=settings.chat,
        memory_deadline_s=settings.memory_service.context_deadline_ms / 1000.0,
    )


@app.on_event("startup")
async def startup_event():
    """应用启动时的初始化"""
    try:
        settings = get_settings()
    except Exception as e:
        print("配置加载失败！")
        print(f"错误: {e}")
        print()
        print("请检查 config/servers.yaml 文件:")
        print("  1. 文件是否存在？")
        print("  2. YAML 格式是否正确？")
        print("  3. 是否填写了 API Key？")
        raise

    # Setup centralized logging
    log_file = Path(settings.logging.file) if settings.logging.file else None
    setup_logging(
        level=settings.logging.level,
        log_file=log_file
    )

    logger.info("[SERVER] Starting MemRelay...")
    logger.info(f"[SERVER] Memory service: {'enabled' if settings.memory_service.enabled else 'disabled'}")

    # 1. Initialize database
    try:
        await init_db()
        logger.info("[SERVER] Database initialized")
    except Exception as e:
        logger.error(f"[SERVER] Database initialization failed: {e}")
        print()
        print("数据库初始化失败！")
        print("请先运行: python init_db.py")
        raise

    # 2. Admin overrides and pricing snapshot
    await apply_admin_overrides(settings)

    pricing_catalog = PricingCatalog(loader=load_pricing)
    try:
        await pricing_catalog.refresh()
    except SQLAlchemyError as e:
        # 首次计费前 ensure_fresh() 会再次尝试
        logger.error(f"[SERVER] Pricing load failed, unknown-model defaults apply: {e}")

    telemetry = TelemetryService(sink=persist_telemetry)
    retry = RetryManager()

    # 3. Initialize LLM forwarder
    try:
        llm_forwarder = LLMForwarder(chat_config=settings.chat, retry=retry)
        await llm_forwarder.initialize(settings.servers)
        model_count = len(llm_forwarder.get_available_models())
        logger.info(f"[SERVER] LLM forwarder ready ({model_count} models)")
    except Exception as e:
        logger.error(f"[SERVER] LLM forwarder initialization failed: {e}")
        print()
        print("LLM 转发器初始化失败！")
        print("请检查 config/servers.yaml 中的服务器配置是否正确")
        raise

    # 4. Memory path + orchestrator
    orchestrator = build_orchestrator(settings, llm_forwarder, pricing_catalog, telemetry, retry)

    app.state.llm_forwarder = llm_forwarder
    app.state.pricing_catalog = pricing_catalog
    app.state.telemetry = telemetry
    app.state.orchestrator = orchestrator
    app.state.memory_service = orchestrator.memory
    app.state.memory_breaker = orchestrator.memory.breaker
    logger.info("[SERVER] Services initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """应用关闭时的清理"""
    logger.info("[SERVER] Shutting down...")

    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.drain()

    telemetry = getattr(app.state, "telemetry", None)
    if telemetry is not None:
        await telemetry.flush()

    memory_service = getattr(app.state, "memory_service", None)
    if memory_service is not None:
        await memory_service.client.close()

    if hasattr(app.state, "llm_forwarder"):
        await app.state.llm_forwarder.close()

    # Close database
    await close_db()
    logger.info("[SERVER] Shutdown complete")


@app.get("/")
async def root():
    """服务信息"""
    return {
        "name": "MemRelay",
        "version": APP_VERSION,
        "docs": "/docs"
    }


@app.get("/health")
async def health(request: Request):
    """健康检查（含记忆服务熔断器状态）"""
    breaker = getattr(request.app.state, "memory_breaker", None)
    return {
        "status": "healthy",
        "memory_breaker": breaker.to_dict() if breaker is not None else None,
    }

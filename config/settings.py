"""配置管理

从 config/servers.yaml 加载配置，包括 LLM 服务器、远程记忆服务、检索策略、
熔断器与计费默认值。管理员覆盖项在启动时从数据库合并（见 apply_overrides）。
"""
import yaml
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    base_url: str
    api_key: str
    models: List[str] = Field(default_factory=list)


class DatabaseConfig(BaseModel):
    url: str = "sqlite+aiosqlite:///./memrelay.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    slow_request_threshold: float = 5.0
    file: Optional[str] = None


class ChatConfig(BaseModel):
    """Chat relay behaviour."""
    default_model: str = "gpt-4o-mini"
    system_prompt: str = "You are a helpful assistant."
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    heartbeat_seconds: float = 10.0
    stream_open_timeout_seconds: float = 5.0


# ============================================================================
# Remote Memory Service Configuration
# ============================================================================

class MemoryServiceConfig(BaseModel):
    """远程长期记忆服务配置."""
    enabled: bool = True
    base_url: str = "http://localhost:8000"
    api_key: Optional[str] = None
    search_timeout_ms: int = 500
    cross_region_latency_ms: int = 150
    search_timeout_cap_ms: int = 700
    write_timeout_ms: int = 2000
    context_deadline_ms: int = 700
    cache_ttl_seconds: int = 60
    cache_max_entries: int = 1000
    collection_prefix: str = "user:"

    @property
    def effective_search_timeout(self) -> float:
        """Per-attempt search timeout in seconds."""
        ms = min(self.search_timeout_ms + self.cross_region_latency_ms, self.search_timeout_cap_ms)
        return ms / 1000.0


class RetrievalConfig(BaseModel):
    """检索后处理策略（去重、交错、裁剪、预算）."""
    top_k: int = Field(default=8, ge=1, le=20)
    clip_sentences: int = Field(default=2, ge=1, le=5)
    max_tokens: int = Field(default=1500, ge=100, le=3000)
    min_score: float = Field(default=0.3, ge=0.0, le=1.0)
    search_type: Literal["similarity", "mmr"] = "similarity"


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    open_timeout_seconds: float = 60.0
    half_open_probes: int = Field(default=3, ge=1)


class PromptBudgetConfig(BaseModel):
    """Per-segment token caps for prompt assembly."""
    system: int = 200
    memory: int = 1500
    user: int = 2000


class PricingSeed(BaseModel):
    model: str
    input_per_mtok: float
    output_per_mtok: float
    cached_input_per_mtok: Optional[float] = None


class PricingConfig(BaseModel):
    """默认费率（USD / 百万 token），未知模型时使用."""
    default_input_per_mtok: float = 1.0
    default_output_per_mtok: float = 2.0
    default_cached_input_per_mtok: float = 0.5
    seed: List[PricingSeed] = Field(default_factory=list)


class Settings(BaseModel):
    servers: Dict[str, ServerConfig] = Field(default_factory=dict)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    # Remote memory + retrieval shaping
    memory_service: MemoryServiceConfig = Field(default_factory=MemoryServiceConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)

    prompt_budget: PromptBudgetConfig = Field(default_factory=PromptBudgetConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)

    @classmethod
    def from_yaml(cls, path: str = "config/servers.yaml") -> "Settings":
        config_path = Path(path)
        if not config_path.exists():
            return cls()

        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        servers = {
            name: ServerConfig(**srv)
            for name, srv in data.get("servers", {}).items()
        }

        return cls(
            servers=servers,
            database=DatabaseConfig(**data.get("database", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            chat=ChatConfig(**data.get("chat", {})),
            memory_service=MemoryServiceConfig(**data.get("memory_service", {})),
            retrieval=RetrievalConfig(**data.get("retrieval", {})),
            circuit_breaker=CircuitBreakerSettings(**data.get("circuit_breaker", {})),
            prompt_budget=PromptBudgetConfig(**data.get("prompt_budget", {})),
            pricing=PricingConfig(**data.get("pricing", {})),
        )

    def apply_overrides(self, section: str, values: Dict[str, Any]) -> None:
        """合并管理员覆盖项到指定配置段.

        The merged section is validated as a whole; a ValidationError leaves
        the current settings untouched.
        """
        current = getattr(self, section)
        merged = current.model_validate({**current.model_dump(), **values})
        setattr(self, section, merged)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings


def reload_settings(config_path: str = "config/servers.yaml") -> Settings:
    global _settings
    _settings = Settings.from_yaml(config_path)
    return _settings

"""集中式日志配置

为所有服务提供统一的日志格式和行为。

特性:
    - 彩色日志输出（按模块着色：对话、记忆、熔断、计费）
    - 自动日志轮转（10MB，保留5个备份）
    - 过滤冗余日志（httpx、uvicorn、SSE 心跳）
"""
import logging
import logging.handlers
import sys
from typing import Optional
from pathlib import Path


# ============================================================================
# Color Support
# ============================================================================

class LogColors:
    """日志颜色"""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    # Level colors
    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[37m'       # White
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    # Module colors
    SERVER = '\033[96m'     # Bright Cyan
    API = '\033[94m'        # Blue
    MEMORY = '\033[92m'     # Green
    LLM = '\033[95m'        # Magenta
    RESILIENCE = '\033[93m' # Yellow
    USAGE = '\033[32m'      # Dark green

    DISABLED = False


def should_colorize() -> bool:
    """判断是否应该输出颜色"""
    return (
        not LogColors.DISABLED and
        hasattr(sys.stdout, 'isatty') and
        sys.stdout.isatty()
    )


# ============================================================================
# Log Format Constants
# ============================================================================

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(message)s'

TIMESTAMP_FORMAT = '%H:%M:%S'


# ============================================================================
# Custom Formatter with Colors
# ============================================================================

class ColorFormatter(logging.Formatter):
    """带颜色的日志格式化器"""

    LEVEL_COLORS = {
        logging.DEBUG: LogColors.DEBUG,
        logging.INFO: LogColors.INFO,
        logging.WARNING: LogColors.WARNING,
        logging.ERROR: LogColors.ERROR,
        logging.CRITICAL: LogColors.CRITICAL,
    }

    # 模块名称颜色映射（前缀匹配，先匹配先生效）
    MODULE_COLORS = {
        'api': LogColors.API,
        'services.llm_forwarder': LogColors.LLM,
        'services.chat_orchestrator': LogColors.LLM,
        'services.sse_emitter': LogColors.LLM,
        'services.memory': LogColors.MEMORY,
        'services.retrieval_policy': LogColors.MEMORY,
        'services.circuit_breaker': LogColors.RESILIENCE,
        'services.retry': LogColors.RESILIENCE,
        'services.usage_cost': LogColors.USAGE,
        'services.pricing': LogColors.USAGE,
        'services.telemetry': LogColors.USAGE,
    }

    def format(self, record: logging.LogRecord) -> str:
        result = super().format(record)

        if not should_colorize():
            return result

        level_color = self.LEVEL_COLORS.get(record.levelno, LogColors.INFO)
        level_name = f"{level_color}{record.levelname:8}{LogColors.RESET}"

        module_color = self._get_module_color(record.name)
        module_name = f"{module_color}{record.name:28}{LogColors.RESET}"

        return f"{record.asctime} | {level_name} | {module_name} | {record.getMessage()}"

    def _get_module_color(self, module_name: str) -> str:
        """获取模块对应的颜色"""
        for key, color in self.MODULE_COLORS.items():
            if module_name.startswith(key):
                return color
        return LogColors.RESET


# ============================================================================
# Log Level Configuration
# ============================================================================

def parse_log_level(level_str: str) -> int:
    """Parse log level string to logging constant.

    Args:
        level_str: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Logging level constant.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return level_map.get(level_str.upper(), logging.INFO)


# ============================================================================
# Quiet Log Filter
# ============================================================================

class QuietLogFilter(logging.Filter):
    """Filter to suppress noisy log messages.

    Filters out:
    - httpx INFO logs (one per memory search / LLM call)
    - uvicorn access logs (handled by middleware)
    - SSE heartbeat debug lines
    - repeated startup messages
    """

    def __init__(self):
        super().__init__()
        self._logged_messages = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "httpx" and record.levelno <= logging.INFO:
            return False

        if record.name.startswith("uvicorn.access"):
            return False

        msg = str(record.msg)
        if "[SSE] heartbeat" in msg and record.levelno <= logging.DEBUG:
            return False

        msg_key = f"{record.name}:{msg}"
        if "Services initialized" in msg or "Pricing catalog loaded" in msg:
            if msg_key in self._logged_messages:
                return False
            self._logged_messages.add(msg_key)

        return True


# ============================================================================
# Logger Configuration
# ============================================================================

def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
) -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path to write logs to
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(parse_log_level(level))
    root_logger.handlers.clear()

    quiet_filter = QuietLogFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=TIMESTAMP_FORMAT))
    console_handler.setLevel(parse_log_level(level))
    console_handler.addFilter(quiet_filter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

        # 10MB max, keep 5 backup files
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with consistent configuration.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)

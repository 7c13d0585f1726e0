"""MemRelay 启动脚本

检查配置与数据库后启动 FastAPI 开发服务器，支持自动重载。
"""
import sqlite3
import sys
from pathlib import Path

import uvicorn

from config.settings import Settings


REQUIRED_TABLES = {"users", "api_keys", "models_pricing", "telemetry_events", "admin_settings"}


# ANSI 颜色代码
class Colors:
    """终端颜色"""
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'
    GRAY = '\033[90m'

    DISABLED = False


def c(color: str, text: str) -> str:
    """为文本添加颜色"""
    if Colors.DISABLED or not sys.stdout.isatty():
        return text
    return f"{color}{text}{Colors.ENDC}"


def print_banner():
    """打印启动横幅"""
    print()
    print(c(Colors.OKCYAN, "╔═══════════════════════════════════════════════════════════════════╗"))
    print(c(Colors.OKCYAN, "║") + c(Colors.BOLD, "            MemRelay - 带长期记忆的流式对话中继                  ") + c(Colors.OKCYAN, "  ║"))
    print(c(Colors.OKCYAN, "║") + c(Colors.OKGREEN, "        SSE 流式输出 + 记忆降级 + 用量计费                       ") + c(Colors.OKCYAN, "  ║"))
    print(c(Colors.OKCYAN, "╚═══════════════════════════════════════════════════════════════════╝"))
    print()


def print_problem(title: str, lines: list) -> None:
    print()
    print(c(Colors.WARNING, f"⚠ {title}"))
    print()
    for line in lines:
        print(c(Colors.GRAY, f"  {line}"))
    print()


def check_config() -> bool:
    """检查配置文件是否存在"""
    if Path("config/servers.yaml").exists():
        return True
    print_problem("配置文件不存在", [
        "cp config/servers.example.yaml config/servers.yaml",
        "nano config/servers.yaml  # 填入 API Key",
        "python init_db.py",
    ])
    return False


def sqlite_path(url: str) -> Path:
    """sqlite+aiosqlite:///./memrelay.db -> ./memrelay.db"""
    return Path(url.split(":///", 1)[-1])


def check_database(settings: Settings) -> bool:
    """检查数据库是否已初始化（仅 SQLite）"""
    url = settings.database.url
    if not url.startswith("sqlite"):
        return True

    db_path = sqlite_path(url)
    if not db_path.exists():
        print_problem("数据库未初始化", [f"未找到 {db_path}", "python init_db.py"])
        return False

    try:
        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        print_problem("数据库检查失败", [f"错误: {e}", "python init_db.py"])
        return False

    missing_tables = REQUIRED_TABLES - {row[0] for row in rows}
    if missing_tables:
        print_problem("数据库表缺失", [f"缺少: {', '.join(sorted(missing_tables))}", "python init_db.py"])
        return False

    return True


def print_config_info(settings: Settings):
    """打印配置信息"""
    print(c(Colors.OKGREEN, "✓ 配置加载成功"))
    print()
    print(c(Colors.GRAY, f"    LLM 服务器: {c(Colors.OKBLUE, str(len(settings.servers)))} 个"))
    for name, server in settings.servers.items():
        models_display = ', '.join(server.models[:2])
        if len(server.models) > 2:
            models_display += f" +{len(server.models) - 2} 更多"
        print(c(Colors.GRAY, f"    · {c(Colors.OKCYAN, name)}: {c(Colors.OKBLUE, models_display)}"))

    memory = settings.memory_service
    if memory.enabled:
        print(c(Colors.GRAY, f"    记忆服务: {c(Colors.OKGREEN, '启用 ')}({c(Colors.OKCYAN, memory.base_url)})"))
    else:
        print(c(Colors.GRAY, f"    记忆服务: {c(Colors.WARNING, '禁用')}"))
    print(c(Colors.GRAY, f"    默认模型: {c(Colors.OKBLUE, settings.chat.default_model)}"))
    print()


def main():
    """主函数"""
    # 检测 Windows 环境
    if sys.platform == "win32":
        try:
            import colorama
            colorama.init()
        except ImportError:
            Colors.DISABLED = True

    print_banner()

    if not check_config():
        sys.exit(1)

    try:
        from config.settings import get_settings
        settings = get_settings()
    except Exception as e:
        print(c(Colors.FAIL, f"✗ 配置加载失败: {e}"))
        print(c(Colors.WARNING, "请检查 config/servers.yaml 文件格式是否正确"))
        sys.exit(1)

    if not check_database(settings):
        sys.exit(1)

    print_config_info(settings)
    print(c(Colors.OKGREEN, "◉ 正在启动服务器 http://0.0.0.0:8000 ..."))
    print()

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="warning",  # 降低默认日志级别
    )


if __name__ == "__main__":
    main()

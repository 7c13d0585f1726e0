"""数据库初始化脚本

初始化数据库表结构，写入模型费率种子，并创建默认用户和 API Key。

功能:
    - 创建数据库表（用户、API Key、模型费率、遥测事件、管理员设置）
    - 从 config/servers.yaml 的 pricing.seed 写入/更新费率
    - 创建默认用户和 API Key
"""
import asyncio
import sys
from pathlib import Path

from database.session import init_db, session_scope, close_db
from database.repository import PricingRepository, UserRepository
from services.auth import AuthService
from config.settings import Settings, get_settings


def print_header(text: str) -> None:
    """打印标题"""
    print("\n" + "=" * 50)
    print(text)
    print("=" * 50)


def print_success(text: str) -> None:
    """打印成功消息"""
    print(f"✓ {text}")


def print_error(text: str) -> None:
    """打印错误消息"""
    print(f"✗ {text}")


def check_config_file() -> bool:
    """检查配置文件是否存在"""
    config_path = Path("config/servers.yaml")
    example_path = Path("config/servers.example.yaml")

    if not config_path.exists():
        print_header("配置文件不存在")
        print_error("未找到 config/servers.yaml 配置文件")
        print()
        if example_path.exists():
            print("执行以下命令创建配置文件：")
            print(f"  cp {example_path} {config_path}")
            print()
            print("然后编辑 config/servers.yaml，填入 LLM 与记忆服务的 API Key")
        else:
            print_error("示例配置文件也不存在，请手动创建 config/servers.yaml")
        return False

    return True


async def seed_pricing(settings: Settings) -> int:
    """写入费率种子（已存在的模型会被更新）"""
    async with session_scope() as session:
        for seed in settings.pricing.seed:
            await PricingRepository.upsert(
                session,
                model=seed.model,
                input_per_mtok=seed.input_per_mtok,
                output_per_mtok=seed.output_per_mtok,
                cached_input_per_mtok=seed.cached_input_per_mtok,
            )
    return len(settings.pricing.seed)


async def create_default_user():
    """创建默认用户和API Key"""
    if not check_config_file():
        sys.exit(1)

    try:
        settings = get_settings()
        print_success("配置文件加载成功")
    except Exception as e:
        print_error(f"配置文件加载失败: {e}")
        print()
        print("请检查 config/servers.yaml 文件格式是否正确")
        sys.exit(1)

    try:
        print_header("正在初始化数据库...")
        await init_db()
        print_success("数据库初始化完成")
        count = await seed_pricing(settings)
        print_success(f"模型费率已写入: {count} 个模型")
    except Exception as e:
        print_error(f"数据库初始化失败: {e}")
        sys.exit(1)

    if not settings.servers:
        print_error("未配置任何 LLM 服务器")
        print()
        print("请在 config/servers.yaml 中配置至少一个服务器：")
        print("""
servers:
  openai:
    base_url: https://api.openai.com/v1
    api_key: sk-your-api-key-here
    models:
      - gpt-4o-mini
""")
        sys.exit(1)

    try:
        print_header("创建默认用户")
        username = input("请输入用户名 (直接回车使用 'default_user'): ").strip()
        if not username:
            username = "default_user"

        async with session_scope() as session:
            user = await UserRepository.get_or_create(session, name=username, email=None)
            api_key = await AuthService.create_api_key(
                session,
                user_id=user.id,
                name="Default API Key",
                daily_limit=10000,
                expires_days=365
            )
        print_success(f"用户创建完成: {user.name} (ID: {user.id})")
        print_success("API Key 创建完成")

        print_header("初始化完成！")
        print()
        print(f"用户ID:     {user.id}")
        print(f"用户名:     {user.name}")
        print()
        print("API Key (请妥善保管):")
        print(f"  {api_key.key}")
        print()

        print("已配置的 LLM 服务器:")
        for name, server in settings.servers.items():
            print(f"  - {name}: {len(server.models)} 个模型")
            for model in server.models[:3]:
                print(f"      · {model}")
            if len(server.models) > 3:
                print(f"      · ... 等 {len(server.models)} 个模型")

        memory = settings.memory_service
        print()
        if memory.enabled:
            print(f"记忆服务: {memory.base_url}")
            print(f"  - collection: {memory.collection_prefix}{user.id}")
            print(f"  - 检索超时: {memory.effective_search_timeout * 1000:.0f} ms")
        else:
            print("记忆服务: 禁用")

        print()
        print("=" * 50)
        print("快速开始")
        print("=" * 50)
        print()
        print("1. 启动服务:")
        print("   python run.py")
        print()
        print("2. 测试聊天 (SSE):")
        print('   curl -N -X POST "http://localhost:8000/v1/chat" \\')
        print('     -H "Content-Type: application/json" \\')
        print(f'     -H "Authorization: Bearer {api_key.key}" \\')
        print('     -d \'{"message":"你好","useMemory":true}\'')
        print()
        print("3. 访问 API 文档:")
        print("   http://localhost:8000/docs")
        print()

    except Exception as e:
        print_error(f"创建用户失败: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
    finally:
        await close_db()


def main():
    """主函数"""
    try:
        asyncio.run(create_default_user())
    except KeyboardInterrupt:
        print()
        print_error("操作已取消")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""
ModMan - Minecraft 模组包管理器

跟踪用户声明的模组列表，从 Modrinth 解析依赖并下载经过校验的文件，
保持模组目录、锁文件与配置文件三者一致。
"""

__version__ = "0.3.0"

USER_AGENT = f"modman/{__version__}"

__all__ = ["__version__", "USER_AGENT"]

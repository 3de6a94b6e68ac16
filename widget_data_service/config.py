"""
组件数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并切换内部 API 地址
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_api_base_url() -> str:
    """Docker 环境使用服务名 'backend'，本地使用 'localhost'"""
    host = "backend" if _is_docker() else "localhost"
    return f"http://{host}:9999/api/v1"


class WidgetDataSettings(BaseSettings):
    """组件数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── HTTP 数据源配置 ───────────────────────────────────
    HTTP_BASE_URL: str = Field(default_factory=_default_api_base_url)  # 内部地址前缀
    HTTP_TIMEOUT_MS: int = Field(default=10000)      # 单次请求超时（毫秒）
    HTTP_MAX_CONNECTIONS: int = Field(default=100)
    REQUEST_DEDUP_TTL: float = Field(default=2.0)    # 相同请求去重窗口（秒）

    # ── 脚本沙箱配置 ──────────────────────────────────────
    SCRIPT_TIMEOUT: float = Field(default=5.0)       # 脚本执行超时（秒）

    # ── 数据仓库配置 ──────────────────────────────────────
    WAREHOUSE_DEFAULT_EXPIRY: float = Field(default=300.0)   # 默认缓存过期时间（秒）
    WAREHOUSE_MAX_MEMORY_MB: float = Field(default=100.0)    # 最大内存占用（MB）
    WAREHOUSE_CLEANUP_INTERVAL: float = Field(default=60.0)  # 清理周期（秒）
    WAREHOUSE_MAX_ITEMS: int = Field(default=1000)
    WAREHOUSE_ENABLE_METRICS: bool = Field(default=True)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Shanghai")


@lru_cache
def get_settings() -> WidgetDataSettings:
    """获取全局配置（单例）"""
    return WidgetDataSettings()


settings = get_settings()

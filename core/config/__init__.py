from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
from pathlib import Path

from version import VERSION

import logging

# 设置日志
logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """应用配置类，使用Pydantic v2实现类型安全的配置管理"""

    # === 基础配置 ===
    APP_ENV: str = Field(
        default="development",
        description="应用环境: development, testing, production"
    )
    APP_VERSION: str = Field(
        default=VERSION,
        description="客户端版本号 (用于日志与遥测)"
    )
    DEBUG: bool = Field(
        default=False,
        description="是否启用调试模式"
    )

    # === 项目路径配置 ===
    BASE_DIR: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parent.parent.parent,
        description="项目根目录"
    )
    LOG_DIR: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parent.parent.parent / "logs",
        description="日志文件存储目录"
    )
    LOCAL_STORE_PATH: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parent.parent.parent / "db" / "local_store.db",
        description="本地键值存储 (对应浏览器 localStorage) 的 SQLite 文件"
    )
    CLAIM_STORE_PATH: Path = Field(
        default_factory=lambda: Path(__file__).resolve().parent.parent.parent / "db" / "instance_claim.db",
        description="单实例声明 (Instance Claim) 的 SQLite 文件，跨进程共享"
    )
    CLAIM_WATCH_INTERVAL: float = Field(
        default=1.0,
        description="检查其他进程是否写入新声明的间隔 (秒)，基于 PRAGMA data_version"
    )

    # === 日志配置 ===
    LOG_LEVEL: str = Field(
        default="INFO",
        description="日志级别: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )
    LOG_FORMAT: str = Field(default="text")
    LOG_INCLUDE_TRACEBACK: bool = Field(default=False)
    LOG_COLOR: bool = Field(default=True)
    LOG_MAX_BYTES: int = Field(default=10 * 1024 * 1024)
    LOG_BACKUP_COUNT: int = Field(default=5)
    LOG_LEVEL_OVERRIDES: str = Field(default="")

    # === 后端与路由 ===
    BACKEND_URL: str = Field(
        default="https://prod-nginz-https.wire.com",
        description="后端 REST 根地址"
    )
    CONNECTIVITY_PATH: str = Field(
        default="/access",
        description="连通性探测路径 (返回 2xx 或 401 即视为在线)"
    )
    CONNECTIVITY_TIMEOUT: float = Field(
        default=5.0,
        description="单次连通性探测超时 (秒)"
    )
    CONNECTIVITY_BASE_DELAY: float = Field(
        default=1.0,
        description="连通性探测失败后的基础退避 (秒)"
    )
    CONNECTIVITY_MAX_DELAY: float = Field(
        default=30.0,
        description="连通性探测的最大退避 (秒)"
    )
    LOGIN_ROUTE: str = Field(
        default="/auth/",
        description="登录页路由"
    )
    WEBSITE_URL: str = Field(
        default="https://wire.com/",
        description="公开官网地址 (临时访客退出时跳转)"
    )

    # === 生命周期 ===
    DESKTOP: bool = Field(
        default=False,
        description="是否运行在桌面壳 (Electron 等) 中"
    )
    NOTIFICATION_CHECK_SECONDS: float = Field(
        default=10.0,
        description="界面显示后延迟检查通知权限的时间 (秒)"
    )
    TEARDOWN_TOTAL_TIMEOUT: float = Field(
        default=5.0,
        description="页面卸载时清理钩子的总超时 (秒)"
    )
    TEARDOWN_TASK_TIMEOUT: float = Field(
        default=2.0,
        description="单个卸载清理钩子的超时 (秒)"
    )
    CRASH_AGGREGATION_MINUTES: int = Field(
        default=10,
        description="相同错误在该窗口内只上报一次"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        level = (v or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            logger.warning(f"未知的日志级别 {v!r}，回退到 INFO")
            return "INFO"
        return level

    @field_validator("LOGIN_ROUTE")
    @classmethod
    def _normalize_login_route(cls, v: str) -> str:
        route = v.strip() or "/auth/"
        if not route.startswith("/"):
            route = "/" + route
        if not route.endswith("/"):
            route += "/"
        return route

    @field_validator("BACKEND_URL")
    @classmethod
    def _strip_backend_url(cls, v: str) -> str:
        return v.rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

"""
统一日志模块 (Core Logging)
structlog 对接标准 logging，输出文本/JSON 两种格式，并注入实例与阶段上下文。
"""

import json
import logging
import os
import re
import zlib
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from dotenv import find_dotenv, load_dotenv

from core.config import settings
from core.context import trace_id_var, instance_id_var, init_state_var

# Simple redaction keywords
_REDACT_KEYS = {"token", "access_token", "authorization", "cookie", "password", "secret"}

_COMPILED_PATTERNS = []
for _k in _REDACT_KEYS:
    _e = re.escape(_k)
    _COMPILED_PATTERNS.extend(
        [
            (re.compile(rf"({_e}\s*=\s*)([^\s;,&]+)", re.IGNORECASE), r"\1***"),
            (re.compile(rf'("{_e}"\s*:\s*")(.*?)(")', re.IGNORECASE), r"\1***\3"),
            (re.compile(rf"('{_e}'\s*:\s*')(.*?)(')", re.IGNORECASE), r"\1***\3"),
        ]
    )


def _redact(text: str) -> str:
    if not text:
        return text
    masked = text
    for _p, _r in _COMPILED_PATTERNS:
        masked = _p.sub(_r, masked)
    return masked


class JsonFormatter(logging.Formatter):
    """JSON 格式化器"""

    def __init__(self, include_traceback: bool = True, datefmt: Optional[str] = None) -> None:
        super().__init__(datefmt=datefmt)
        self.include_traceback = include_traceback
        self.datefmt = datefmt or "%Y-%m-%dT%H:%M:%S%z"

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": _redact(record.getMessage()),
            "process": record.process,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "instance_id": getattr(record, "instance_id", "-"),
            "init_state": getattr(record, "init_state", "-"),
            "module_id": getattr(record, "module_id", "-"),
            "func_name": record.funcName,
            "lineno": record.lineno,
        }

        # 附加异常信息
        if record.exc_info and self.include_traceback:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False)


class ColorTextFormatter(logging.Formatter):
    """标准彩色文本格式化器"""

    _COLORS = {
        "DEBUG": "\x1b[90m",  # 灰
        "INFO": "\x1b[32m",  # 绿
        "WARNING": "\x1b[33m",  # 黄
        "ERROR": "\x1b[31m",  # 红
        "CRITICAL": "\x1b[35m",  # 品红
    }
    _RESET = "\x1b[0m"

    def __init__(self, use_color: bool = True, datefmt: Optional[str] = None) -> None:
        fmt = "%(asctime)s [%(correlation_id)s][%(instance_id)s][%(levelname)s][%(name)s] %(message)s"
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        record.msg = _redact(str(record.msg))
        out = super().format(record)
        if not self.use_color:
            return out
        color = self._COLORS.get(logging.getLevelName(record.levelno))
        return f"{color}{out}{self._RESET}" if color else out


class _ContextFilter(logging.Filter):
    """Inject correlation / instance / init-state ids from contextvars."""

    def filter(self, record: logging.LogRecord) -> bool:
        cid = trace_id_var.get()
        if cid == "-":
            cid = getattr(record, "correlation_id", None) or os.getenv("CORRELATION_ID", "-")
        setattr(record, "correlation_id", cid)
        setattr(record, "instance_id", short_id(instance_id_var.get(), 8))
        setattr(record, "init_state", init_state_var.get())

        if getattr(record, "module_id", None) in (None, "-"):
            name = record.name or ""
            setattr(record, "module_id", zlib.crc32(name.encode("utf-8")) & 0xFFFF)
        return True


class SafeLoggerFactory(structlog.stdlib.LoggerFactory):
    """确保 logger name 永远是字符串"""
    def __call__(self, *args, **kwargs):
        if args and args[0] is None:
            args = ("root",) + args[1:]
        elif not args:
            args = ("root",)
        return super().__call__(*args, **kwargs)


def configure_structlog() -> None:
    """配置 structlog 以对接标准 logging 系统"""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=SafeLoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(log_to_file: bool = True) -> logging.Logger:
    """配置日志系统，包括滚动归档"""
    # 优先加载 .env
    load_dotenv(find_dotenv(usecwd=True))

    configure_structlog()

    root_logger = logging.getLogger()
    level = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    log_format = os.getenv("LOG_FORMAT", settings.LOG_FORMAT).lower()
    include_tb = settings.LOG_INCLUDE_TRACEBACK

    # 移除现有处理器
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    if log_format == "json":
        console_handler.setFormatter(JsonFormatter(include_traceback=include_tb))
    else:
        console_handler.setFormatter(ColorTextFormatter(use_color=settings.LOG_COLOR))
    console_handler.addFilter(_ContextFilter())
    root_logger.addHandler(console_handler)

    # File Handler (Rolling)
    if log_to_file and settings.LOG_DIR:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_dir / "app.log"),
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        if log_format == "json":
            file_handler.setFormatter(JsonFormatter(include_traceback=include_tb))
        else:
            file_handler.setFormatter(ColorTextFormatter(use_color=False))
        file_handler.addFilter(_ContextFilter())
        root_logger.addHandler(file_handler)

    # Logger Overrides: "core.bootstrap=DEBUG,services=WARNING"
    for item in settings.LOG_LEVEL_OVERRIDES.split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        name, lvl = item.split("=", 1)
        if name.strip():
            logging.getLogger(name.strip()).setLevel(getattr(logging, lvl.strip().upper(), logging.WARNING))

    structlog.get_logger("core.logging").info(
        "Log system initialized (Core)",
        level=logging.getLevelName(root_logger.level),
        format=log_format,
    )
    return root_logger


class StandardLogger:
    """标准化日志记录器"""

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        if not isinstance(name, str):
            name = str(name) if name is not None else "unknown"
        self.name = name
        self.logger = logging.getLogger(name)
        self.module_name = name.split(".")[-1] if "." in name else name
        self.context = context or {}

    def _log(self, level: str, message: str, *args, **kwargs) -> None:
        standard_params = {"exc_info", "stack_info", "stacklevel", "extra"}
        log_kwargs = {k: v for k, v in kwargs.items() if k in standard_params}

        extra = log_kwargs.get("extra", {}) or {}
        if not isinstance(extra, dict):
            extra = {"_extra_data": extra}

        if self.context:
            extra = {**self.context, **extra}

        other_params = {k: v for k, v in kwargs.items() if k not in standard_params}
        if other_params:
            extra = {**extra, **other_params}

        if extra:
            log_kwargs["extra"] = extra

        getattr(self.logger, level.lower())(message, *args, **log_kwargs)

    def debug(self, message: str, *args, **kwargs) -> None: self._log("debug", message, *args, **kwargs)
    def info(self, message: str, *args, **kwargs) -> None: self._log("info", message, *args, **kwargs)
    def warning(self, message: str, *args, **kwargs) -> None: self._log("warning", message, *args, **kwargs)
    def error(self, message: str, *args, **kwargs) -> None: self._log("error", message, *args, **kwargs)
    def critical(self, message: str, *args, **kwargs) -> None: self._log("critical", message, *args, **kwargs)
    def exception(self, message: str, *args, **kwargs) -> None: self._log("exception", message, *args, **kwargs)

    def setLevel(self, level: int) -> None:
        self.logger.setLevel(level)

    def bind(self, **kwargs) -> "StandardLogger":
        new_context = {**self.context, **kwargs}
        return StandardLogger(self.name, context=new_context)

    def log_error(self, operation: str, error: Exception, context: Optional[Dict[str, Any]] = None) -> None:
        msg = f"[{self.module_name}] {operation} 失败: {type(error).__name__}: {error}"
        if context:
            msg += f" | 上下文: {json.dumps(context, ensure_ascii=False, default=str)}"
        self._log("error", msg)

    def log_system_state(self, component: str, state: str, metrics: Optional[Dict[str, Any]] = None) -> None:
        msg = f"[{self.module_name}] 系统状态 | {component}: {state}"
        if metrics:
            for key, value in metrics.items():
                msg += f" | {key}: {value}"
        self._log("info", msg)


# Cache
_logger_cache: Dict[str, StandardLogger] = {}


def get_logger(name: str) -> StandardLogger:
    if not isinstance(name, str):
        name = str(name) if name is not None else "unknown"
    if name not in _logger_cache:
        _logger_cache[name] = StandardLogger(name)
    return _logger_cache[name]


@contextmanager
def correlation_context(cid: Optional[str]):
    token = None
    if cid:
        token = trace_id_var.set(str(cid))
    try:
        yield
    finally:
        if token:
            trace_id_var.reset(token)


def short_id(val: Any, length: int = 6) -> str:
    s = str(val)
    if len(s) > length:
        return "..." + s[-length:]
    return s

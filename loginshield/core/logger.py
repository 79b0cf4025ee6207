"""structlog-backed logging for the login shield host.

Stdlib loggers (``logging.getLogger(__name__)``) everywhere in the package are
routed through a structlog ``ProcessorFormatter``: coloured console output,
JSON lines in ``shield.log``, and a separate ``lockouts.log`` carrying only
lockout and captcha events.
"""
import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog

# Rotation: 10 MB, 5 files, gzip-compressed
_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_LOGGER_NAME_MAP = {
    "uvicorn.error": "uvicorn",
    "uvicorn.access": "uvicorn",
    "loginshield.core.attempt_tracker": "tracker",
    "loginshield.core.policy_gate": "gate",
    "loginshield.api": "api",
    "httpx": "http",
    "httpcore": "http",
    "asyncpg": "db",
    "aiosmtplib": "smtp",
    "alembic": "migration",
    "sqlalchemy": "db",
}


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzips rotated files."""

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        for i in range(self.backupCount - 1, 0, -1):
            sfn = self.rotation_filename(f"{self.baseFilename}.{i}.gz")
            dfn = self.rotation_filename(f"{self.baseFilename}.{i + 1}.gz")
            if os.path.exists(sfn):
                if os.path.exists(dfn):
                    os.remove(dfn)
                os.rename(sfn, dfn)

        dfn = self.rotation_filename(f"{self.baseFilename}.1.gz")
        if os.path.exists(dfn):
            os.remove(dfn)
        if os.path.exists(self.baseFilename):
            with open(self.baseFilename, "rb") as f_in:
                with gzip.open(dfn, "wb") as f_out:
                    shutil.copyfileobj(f_in, f_out)
            with open(self.baseFilename, "w"):
                pass

        if not self.delay:
            self.stream = self._open()


class LockoutLogFilter(logging.Filter):
    """Passes only records about lockouts and captcha outcomes."""

    _SOURCE_MODULES = ("attempt_tracker", "captcha")
    _KEYWORDS = ("locked out", "lockout", "captcha", "fail-closed", "fail-open")

    def filter(self, record: logging.LogRecord) -> bool:
        name_lower = record.name.lower()
        if any(mod in name_lower for mod in self._SOURCE_MODULES):
            return True
        msg_lower = str(record.getMessage()).lower()
        return any(kw in msg_lower for kw in self._KEYWORDS)


def _shorten_logger_name(logger: object, method_name: str, event_dict: dict) -> dict:
    """structlog processor: shortens logger names."""
    name = event_dict.get("logger", "")
    for prefix, short in _LOGGER_NAME_MAP.items():
        if name == prefix or name.startswith(prefix + "."):
            event_dict["logger"] = short
            return event_dict
    if "." in name:
        event_dict["logger"] = name.rsplit(".", 1)[-1]
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(level_name: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """Configure the root logger. File handlers are added only when ``log_dir`` is set."""
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    shared_processors = _shared_processors()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _shorten_logger_name,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        foreign_pre_chain=shared_processors,
    ))
    root.addHandler(console)

    if log_dir:
        try:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)

            json_formatter = structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _shorten_logger_name,
                    structlog.processors.JSONRenderer(),
                ],
                foreign_pre_chain=shared_processors,
            )

            main_handler = CompressedRotatingFileHandler(
                str(path / "shield.log"),
                maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8",
            )
            main_handler.setLevel(logging.INFO)
            main_handler.setFormatter(json_formatter)
            root.addHandler(main_handler)

            lockout_handler = CompressedRotatingFileHandler(
                str(path / "lockouts.log"),
                maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8",
            )
            lockout_handler.setLevel(logging.INFO)
            lockout_handler.setFormatter(json_formatter)
            lockout_handler.addFilter(LockoutLogFilter())
            root.addHandler(lockout_handler)
        except OSError as exc:
            root.warning("Cannot create log files in %s (%s), logging to console only", log_dir, exc)

    # Quiet noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("aiosmtplib").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return logging.getLogger("loginshield")


def set_log_level(level_name: str) -> None:
    """Change the console and file levels without restarting."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)
    logging.getLogger("loginshield").info("Log level changed to %s", level_name.upper())

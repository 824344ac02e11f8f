"""
Logging configuration for the healing engine.

Structured JSON logs are written per component next to a plain console
stream. Provider error text passes through sanitize_error_message before it
is logged or stored, so API keys never reach log files.
"""

import logging
import logging.handlers
import json
import os
import re
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import asdict, is_dataclass


COMPONENTS = (
    "engine",
    "orchestrator",
    "cache",
    "registry",
    "source_updater",
    "metrics",
)

_EXTRA_FIELDS = (
    "run_id", "scenario", "operation", "phase", "duration",
    "success", "error_code", "fingerprint", "provider", "metadata",
)

_SECRET_PATTERNS = [
    (re.compile(r"sk-ant-[a-zA-Z0-9-]{20,}"), "sk-ant-***REDACTED***"),
    (re.compile(r"sk-[a-zA-Z0-9]{20,}"), "sk-***REDACTED***"),
    (re.compile(r"AIza[0-9A-Za-z_-]{20,}"), "AIza***REDACTED***"),
    (re.compile(r"(?i)(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[a-zA-Z0-9_-]{16,}"), r"\1***REDACTED***"),
    (re.compile(r"(?i)([?&]key=)[a-zA-Z0-9_-]{16,}"), r"\1***REDACTED***"),
    (re.compile(r"(?i)(Bearer\s+)[a-zA-Z0-9_.-]{20,}"), r"\1***REDACTED***"),
    (re.compile(r"(?i)(Authorization[\"']?\s*[:=]\s*[\"']?)[^\"'\s]{20,}"), r"\1***REDACTED***"),
]


def sanitize_error_message(message: Optional[str]) -> str:
    """Redact API keys and bearer tokens from error text."""
    if not message:
        return ""
    sanitized = str(message)
    for pattern, replacement in _SECRET_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": sanitize_error_message(record.getMessage()),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": sanitize_error_message(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": sanitize_error_message(self.formatException(record.exc_info))
            }

        return json.dumps(log_data, default=self._json_serializer)

    def _json_serializer(self, obj):
        """Custom JSON serializer for complex objects."""
        if is_dataclass(obj):
            return asdict(obj)
        elif isinstance(obj, Enum):
            return obj.value
        elif hasattr(obj, 'isoformat'):
            return obj.isoformat()
        elif hasattr(obj, '__dict__'):
            return obj.__dict__
        else:
            return str(obj)


class HealingLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter for healing operations with run and scenario context."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Merge the adapter context into the record extras."""
        kwargs['extra'] = {**(kwargs.get('extra') or {}), **self.extra}
        return msg, kwargs

    def log_operation_start(self, operation: str, **metadata):
        """Log the start of a healing operation."""
        self.info(f"Starting {operation}", extra={
            'operation': operation,
            'phase': 'start',
            'metadata': metadata
        })

    def log_operation_success(self, operation: str, duration: float, **metadata):
        """Log successful completion of a healing operation."""
        self.info(f"Completed {operation} successfully", extra={
            'operation': operation,
            'phase': 'complete',
            'success': True,
            'duration': duration,
            'metadata': metadata
        })

    def log_operation_failure(self, operation: str, duration: float, error: str,
                              error_code: Optional[str] = None, **metadata):
        """Log failure of a healing operation."""
        self.warning(f"Failed {operation}: {sanitize_error_message(error)}", extra={
            'operation': operation,
            'phase': 'complete',
            'success': False,
            'duration': duration,
            'error_code': error_code,
            'metadata': metadata
        })


def _rotating_handler(path: Path, max_mb: int, backups: int,
                      formatter: logging.Formatter, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_mb * 1024 * 1024, backupCount=backups, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def setup_healing_logging(log_level: str = "INFO", log_dir: Optional[str] = "logs") -> Dict[str, logging.Logger]:
    """
    Set up structured logging for the healer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory to store log files; console only when empty

    Returns:
        Dictionary of configured loggers keyed by component
    """
    level = getattr(logging, log_level.upper())
    structured_formatter = StructuredFormatter()

    root_logger = logging.getLogger("healer")
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    loggers: Dict[str, logging.Logger] = {}
    for component in COMPONENTS:
        loggers[component] = logging.getLogger(f"healer.{component}")
    loggers["audit"] = logging.getLogger("healer.audit")

    if not log_dir:
        return loggers

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger.addHandler(_rotating_handler(
        log_path / "healer_all.log", 10, 5, structured_formatter, logging.DEBUG))
    operations_handler = _rotating_handler(
        log_path / "healer_operations.log", 10, 10, structured_formatter, logging.INFO)
    error_handler = _rotating_handler(
        log_path / "healer_errors.log", 5, 10, structured_formatter, logging.ERROR)

    for component in COMPONENTS:
        component_logger = loggers[component]
        for handler in component_logger.handlers[:]:
            component_logger.removeHandler(handler)
            handler.close()
        component_logger.addHandler(operations_handler)
        if component != "metrics":
            component_logger.addHandler(error_handler)

    audit_logger = loggers["audit"]
    for handler in audit_logger.handlers[:]:
        audit_logger.removeHandler(handler)
        handler.close()
    audit_logger.addHandler(_rotating_handler(
        log_path / "healer_audit.log", 20, 20, structured_formatter, logging.INFO))

    # Model client libraries used by the providers
    for library, env_var, default in (("crewai", "CREWAI_LOG_LEVEL", "WARNING"),
                                      ("litellm", "LITELLM_LOG_LEVEL", "WARNING")):
        library_logger = logging.getLogger(library)
        library_logger.setLevel(getattr(logging, os.getenv(env_var, default).upper()))
        for handler in library_logger.handlers[:]:
            library_logger.removeHandler(handler)
            handler.close()
        library_logger.addHandler(_rotating_handler(
            log_path / f"{library}.log", 10, 5, structured_formatter, logging.DEBUG))
        loggers[library] = library_logger

    return loggers


def get_healing_logger(component: str, run_id: Optional[str] = None,
                       scenario: Optional[str] = None) -> HealingLoggerAdapter:
    """
    Get a healing logger adapter with contextual information.

    Args:
        component: Component name (engine, orchestrator, cache, etc.)
        run_id: Optional test run identifier
        scenario: Optional scenario name

    Returns:
        HealingLoggerAdapter instance
    """
    logger = logging.getLogger(f"healer.{component}")

    extra = {}
    if run_id:
        extra['run_id'] = run_id
    if scenario:
        extra['scenario'] = scenario

    return HealingLoggerAdapter(logger, extra)

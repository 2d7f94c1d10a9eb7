"""Logging configuration for Loom.

Entry points call configure_logging() once, early.

Levels used across the session layer:
- DEBUG: per-write storage detail (appends, snapshots, lock waits)
- INFO: lifecycle transitions (created, resumed, forked, completed,
  archived) and compaction results
- WARNING: skipped corrupt lines or files, failed auto-saves
- ERROR: failures that lose data, such as a failed final save
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TextIO

DEFAULT_LOG_RETENTION_DAYS = 7

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Session logs carry user text, which may contain pasted credentials
DEFAULT_REDACT_PATTERNS: list[str] = [
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    r"\b(ghp_[A-Za-z0-9]{20,})\b",
    r"\b(github_pat_[A-Za-z0-9_]{20,})\b",
    r"\b(xox[baprs]-[A-Za-z0-9-]{10,})\b",
    r"\b(AIza[0-9A-Za-z\-_]{20,})\b",
    r"\b[A-Z0-9_]+(?:KEY|TOKEN|SECRET|PASSWORD)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})\b",
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]+?-----END [A-Z ]*PRIVATE KEY-----",
]

# Attributes every LogRecord has; anything else came from ``extra=``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "component"}


@dataclass
class SecretRedactor:
    """Masks secrets in log text, keeping the first and last 4 characters."""

    patterns: list[re.Pattern[str]] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.patterns:
            self.patterns = [
                re.compile(p, re.IGNORECASE) for p in DEFAULT_REDACT_PATTERNS
            ]

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(self._mask, text)
        return text

    @staticmethod
    def _mask(match: re.Match[str]) -> str:
        full = match.group(0)
        if "PRIVATE KEY" in full:
            lines = full.strip().splitlines()
            return f"{lines[0]}\n...redacted...\n{lines[-1]}"

        secret = match.group(1) if match.lastindex else full
        if "..." in secret:
            return full
        masked = "***" if len(secret) < 12 else f"{secret[:4]}...{secret[-4:]}"
        return full.replace(secret, masked)


_redactor = SecretRedactor()


def component_name(logger_name: str) -> str:
    """``loom.sessions.store`` -> ``sessions``."""
    parts = logger_name.split(".")
    if len(parts) >= 2 and parts[0] == "loom":
        return parts[1]
    return parts[0]


def prune_old_logs(
    logs_dir: Path,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    suffix: str = ".jsonl",
) -> int:
    """Delete log files older than the retention period.

    Returns:
        Number of files deleted.
    """
    if not logs_dir.exists():
        return 0

    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    deleted = 0
    for entry in logs_dir.iterdir():
        if not entry.is_file() or entry.suffix != suffix:
            continue
        try:
            if datetime.fromtimestamp(entry.stat().st_mtime, UTC) < cutoff:
                entry.unlink()
                deleted += 1
        except OSError:
            continue
    return deleted


class JSONLHandler(logging.Handler):
    """Writes one redacted JSON object per record to ``<logs>/YYYY-MM-DD.jsonl``.

    Rotates daily and prunes files past the retention period on rotation.
    """

    def __init__(
        self,
        logs_dir: Path,
        retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
        redactor: SecretRedactor | None = None,
    ) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.retention_days = retention_days
        self.redactor = redactor or _redactor
        self._current_date: str | None = None
        self._file: TextIO | None = None

    def _log_file(self) -> TextIO:
        today = datetime.now(UTC).strftime("%Y-%m-%d")
        if self._file is None or self._current_date != today:
            if self._file is not None:
                self._file.close()
            self._current_date = today
            self._file = (self.logs_dir / f"{today}.jsonl").open("a", encoding="utf-8")
            prune_old_logs(self.logs_dir, self.retention_days)
        return self._file

    def build_entry(self, record: logging.LogRecord) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "component": component_name(record.name),
            "logger": record.name,
            "message": self.redactor.redact(record.getMessage()),
        }

        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            entry["exception"] = self.redactor.redact(
                formatter.formatException(record.exc_info)
            )

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        }
        if extra:
            redacted = self.redactor.redact(json.dumps(extra, default=str))
            try:
                entry["extra"] = json.loads(redacted)
            except json.JSONDecodeError:
                entry["extra"] = {"_redacted_raw": redacted}
        return entry

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_file = self._log_file()
            log_file.write(json.dumps(self.build_entry(record), default=str) + "\n")
            log_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        super().close()


class ComponentFormatter(logging.Formatter):
    """Adds ``%(component)s`` (the loom subpackage) to the format namespace."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = component_name(record.name)
        return super().format(record)


def resolve_level(level: str | None = None) -> int:
    """Level from the argument, else LOOM_LOG_LEVEL, else INFO."""
    name = (level or os.environ.get("LOOM_LOG_LEVEL") or "INFO").upper()
    if name not in LEVELS:
        name = "INFO"
    return getattr(logging, name)


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_to_file: bool = False,
) -> None:
    """Configure logging for Loom.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
            If None, uses LOOM_LOG_LEVEL env var or INFO.
        use_rich: Use Rich handler for colorful console output.
        log_to_file: Also write logs to JSONL files in <LOOM_HOME>/logs/.
    """
    from loom.config.paths import get_logs_path

    log_level = resolve_level(level)
    handlers: list[logging.Handler] = []

    if use_rich:
        from rich.logging import RichHandler

        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=False,
            show_path=False,
            show_time=True,
            markup=False,
        )
        console_handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            ComponentFormatter(
                "%(asctime)s | %(levelname)-8s | %(component)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    handlers.append(console_handler)

    if log_to_file:
        file_handler = JSONLHandler(get_logs_path())
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Slow-callback reports from the event loop are noise at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

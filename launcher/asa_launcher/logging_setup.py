from __future__ import annotations
import json
import logging
import re
from logging.handlers import RotatingFileHandler
from .settings import Settings

LAUNCHER_LOGGER = "asa.launcher"

_SECRET_PATTERNS = [
    re.compile(r"(ServerAdminPassword=)[^?\s\"]*", re.IGNORECASE),
    re.compile(r"(ServerPassword=)[^?\s\"]*", re.IGNORECASE),
    re.compile(r"(ClusterPassword=)[^?\s\"]*", re.IGNORECASE),
    # steamcmd +login <user> <password>
    re.compile(r"(\+login\s+\S+\s+)\S+", re.IGNORECASE),
]


def mask_secrets(text: str) -> str:
    for pat in _SECRET_PATTERNS:
        text = pat.sub(r"\1<REDACTED>", text)
    return text


class _SecretFilter(logging.Filter):
    """Masks passwords in the rendered message of every record passing a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        masked = mask_secrets(msg)
        if masked != msg:
            record.msg, record.args = masked, None
        return True


class _JsonFormatter(logging.Formatter):
    # set through `extra=` by the supervisor and the job manager
    context_fields = ("server", "job_id")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in self.context_fields:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(settings: Settings) -> None:
    """Console + rotating launcher.log under <base>/logs. Safe to call more than once."""
    logs_dir = settings.logs_path
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = settings.log_level.upper()

    if settings.log_json:
        fmt: logging.Formatter = _JsonFormatter()
    else:
        fmt = logging.Formatter(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                                datefmt="%Y-%m-%d %H:%M:%S")
    secrets = _SecretFilter()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    console = logging.StreamHandler()
    console.setFormatter(fmt)
    console.addFilter(secrets)
    root.addHandler(console)

    launcher = logging.getLogger(LAUNCHER_LOGGER)
    for h in list(launcher.handlers):
        launcher.removeHandler(h)
        h.close()
    fh = RotatingFileHandler(logs_dir / "launcher.log", maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    fh.setFormatter(fmt)
    fh.setLevel(level)
    fh.addFilter(secrets)
    launcher.addHandler(fh)
    launcher.propagate = True

    # uvicorn's access log repeats every status poll
    logging.getLogger("uvicorn.access").setLevel(max(logging.WARNING, root.level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)

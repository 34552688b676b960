import json
import logging
from typing import Any, Dict

from .config import RuntimeConfig


def build_logger(config: RuntimeConfig) -> logging.Logger:
    config.ensure_paths()
    logger = logging.getLogger("chorus.audit")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    handler = logging.FileHandler(config.audit_log_path, encoding="utf-8")
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


def log_dispatch(
    logger: logging.Logger,
    channel_id: str,
    agent_id: str,
    forced: bool,
    decision: Dict[str, Any] | None,
    result: Dict[str, Any],
) -> None:
    payload = {
        "channel_id": channel_id,
        "agent_id": agent_id,
        "forced": forced,
        "decision": decision,
        "result": result,
    }
    logger.info(json.dumps(payload, default=str))

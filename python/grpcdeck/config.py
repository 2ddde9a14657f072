"""
grpcdeck/config.py

Environment-driven settings and logging setup.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

ENV_DEBUG = "GRPCDECK_DEBUG"
ENV_HOME  = "GRPCDECK_HOME"

DEFAULT_DIAL_TIMEOUT   = 10.0
DEFAULT_CALL_TIMEOUT   = 30.0
REPLAY_CONNECT_TIMEOUT = 30.0

_TRUE  = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

log = logging.getLogger(__name__)


def default_storage_path() -> str:
    return str(Path.home() / ".grpcdeck")


def parse_bool(raw: str) -> Optional[bool]:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


@dataclass(frozen=True)
class Config:
    debug:        bool = False
    storage_path: str  = ""
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    call_timeout: float = DEFAULT_CALL_TIMEOUT

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env   = os.environ if environ is None else environ
        debug = False
        raw   = env.get(ENV_DEBUG)
        if raw is not None:
            parsed = parse_bool(raw)
            if parsed is None:
                log.warning("ignoring %s=%r: not a boolean", ENV_DEBUG, raw)
            else:
                debug = parsed
        home = env.get(ENV_HOME) or default_storage_path()
        return cls(debug=debug, storage_path=home)


def configure_logging(debug: bool = False, stream=None) -> logging.Logger:
    """Attach a single stderr handler to the package logger."""
    logger = logging.getLogger("grpcdeck")
    for handler in list(logger.handlers):
        if getattr(handler, "_grpcdeck", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._grpcdeck = True  # type: ignore[attr-defined]
    if debug:
        fmt = "%(asctime)s %(levelname)-7s %(name)s %(module)s:%(lineno)d  %(message)s"
    else:
        fmt = "%(levelname)s %(name)s: %(message)s"
    handler.setFormatter(logging.Formatter(fmt))

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False
    return logger

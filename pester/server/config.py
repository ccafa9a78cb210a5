from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

log = logging.getLogger("pester.server.config")

CONFIG_PATH = Path("configs/server.yaml")


def parse_listen(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"listen address must look like host:port, got {value!r}")
    return host, int(port)


class ServerConfig(BaseModel):
    """Runtime settings, loaded from YAML and overridable from the environment."""

    model_config = ConfigDict(extra="forbid")

    listen: str = "0.0.0.0:4000"
    tcp_listen: Optional[str] = "0.0.0.0:4001"
    mailbox_limit: int = Field(default=500, ge=0)
    outbox_limit: int = Field(default=1000, ge=1)
    auto_rejoin: bool = True
    log_level: str = "INFO"

    @field_validator("listen", "tcp_listen")
    @classmethod
    def _valid_address(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_listen(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level


def load_config(path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Read ``path`` (if given) and apply PESTER_LISTEN / PESTER_TCP_LISTEN overrides.

    An empty PESTER_TCP_LISTEN disables the TCP listener. Raises ValueError
    (pydantic's ValidationError included) on bad values.
    """
    data: dict = {}
    if path is not None:
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")

    env = os.environ if env is None else env
    if env.get("PESTER_LISTEN"):
        data["listen"] = env["PESTER_LISTEN"]
    if "PESTER_TCP_LISTEN" in env:
        data["tcp_listen"] = env["PESTER_TCP_LISTEN"] or None

    config = ServerConfig.model_validate(data)
    log.debug("Loaded config: %s", config.model_dump())
    return config


__all__ = ["ServerConfig", "load_config", "parse_listen", "CONFIG_PATH"]

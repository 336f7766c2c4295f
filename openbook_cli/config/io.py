from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from openbook_cli.config.models import ProgramConfig, parse_program_config

_config_logger = logging.getLogger("openbook_cli.config")

RPC_URL_ENV = "OPENBOOK_CLI_RPC_URL"
LEGACY_RPC_URL_ENV = "MAINNET_RPC_URL"
LOG_LEVEL_ENV = "OPENBOOK_CLI_LOG_LEVEL"
HOME_PROGRAM_CONFIG = "~/.openbook-cli/config/program.yaml"


def default_program_config_path() -> str:
    home_default = Path(HOME_PROGRAM_CONFIG).expanduser()
    if home_default.exists():
        return str(home_default)
    return "config/program.yaml"


def load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML file must parse to a mapping: {path}")
    return data


def apply_env_overrides(config: ProgramConfig) -> ProgramConfig:
    rpc_url = os.getenv(RPC_URL_ENV, "").strip() or os.getenv(LEGACY_RPC_URL_ENV, "").strip()
    if rpc_url:
        config.rpc_url = rpc_url
    log_level = os.getenv(LOG_LEVEL_ENV, "").strip()
    if log_level:
        config.log_level = log_level
    return config


def load_program_config(path: Path | None, *, required: bool = False) -> ProgramConfig:
    """Load the YAML program config, falling back to built-in defaults.

    A missing file is only an error when the caller named it explicitly.
    Environment overrides are applied last.
    """
    if path is None or not path.expanduser().exists():
        if required and path is not None:
            raise ValueError(f"program config not found: {path}")
        if path is not None:
            _config_logger.debug("program_config_missing path=%s using_defaults=true", path)
        return apply_env_overrides(ProgramConfig())
    raw = load_yaml(path.expanduser())
    return apply_env_overrides(parse_program_config(raw))

import os
import re
from dataclasses import fields
from typing import Any, Dict, Optional

import yaml
from jsonschema import ValidationError, validate as jsonschema_validate

from watch_core.errors import ConfigurationError
from watch_core.labels import parse_bool
from watch_core.models import AgentConfig, UpdateParams

_DURATION_RE = re.compile(r'^\s*(\d+)\s*([smh]?)\s*$')
_DURATION_UNITS = {'': 1, 's': 1, 'm': 60, 'h': 3600}

_BOOL = {'type': 'boolean'}
_INT = {'type': 'integer', 'minimum': 0}
_DURATION = {'type': ['integer', 'string']}
_NAMES = {'type': 'array', 'items': {'type': 'string'}}

SCHEMA = {
    'type': 'object',
    'properties': {
        'monitor_only': _BOOL,
        'no_pull': _BOOL,
        'label_precedence': _BOOL,
        'cleanup': _BOOL,
        'remove_volumes': _BOOL,
        'include_stopped': _BOOL,
        'revive_stopped': _BOOL,
        'include_restarting': _BOOL,
        'disable_memory_swappiness': _BOOL,
        'cpu_copy_mode': {'enum': ['auto', 'full', 'none']},
        'rolling_restart': _BOOL,
        'lifecycle_hooks': _BOOL,
        'lifecycle_uid': _INT,
        'lifecycle_gid': _INT,
        'warn_on_head_failed': {'enum': ['always', 'never', 'auto']},
        'no_self_update': _BOOL,
        'no_restart': _BOOL,
        'stop_timeout': _DURATION,
        'health_check': _BOOL,
        'health_timeout': _DURATION,
        'containers': _NAMES,
        'disabled_containers': _NAMES,
        'images': _NAMES,
        'label_enable': _BOOL,
        'scope': {'type': 'string'},
        'poll_interval': _DURATION,
        'registry_timeout': _DURATION,
    },
    'additionalProperties': False,
}

# environment variable -> config key
ENV_OVERRIDES = {
    'WATCHTOWER_MONITOR_ONLY': 'monitor_only',
    'WATCHTOWER_NO_PULL': 'no_pull',
    'WATCHTOWER_LABEL_PRECEDENCE': 'label_precedence',
    'WATCHTOWER_CLEANUP': 'cleanup',
    'WATCHTOWER_REMOVE_VOLUMES': 'remove_volumes',
    'WATCHTOWER_INCLUDE_STOPPED': 'include_stopped',
    'WATCHTOWER_REVIVE_STOPPED': 'revive_stopped',
    'WATCHTOWER_INCLUDE_RESTARTING': 'include_restarting',
    'WATCHTOWER_DISABLE_MEMORY_SWAPPINESS': 'disable_memory_swappiness',
    'WATCHTOWER_CPU_COPY_MODE': 'cpu_copy_mode',
    'WATCHTOWER_ROLLING_RESTART': 'rolling_restart',
    'WATCHTOWER_LIFECYCLE_HOOKS': 'lifecycle_hooks',
    'WATCHTOWER_LIFECYCLE_UID': 'lifecycle_uid',
    'WATCHTOWER_LIFECYCLE_GID': 'lifecycle_gid',
    'WATCHTOWER_WARN_ON_HEAD_FAILURE': 'warn_on_head_failed',
    'WATCHTOWER_NO_SELF_UPDATE': 'no_self_update',
    'WATCHTOWER_NO_RESTART': 'no_restart',
    'WATCHTOWER_TIMEOUT': 'stop_timeout',
    'WATCHTOWER_HEALTH_CHECK': 'health_check',
    'WATCHTOWER_HEALTH_TIMEOUT': 'health_timeout',
    'WATCHTOWER_CONTAINERS': 'containers',
    'WATCHTOWER_DISABLE_CONTAINERS': 'disabled_containers',
    'WATCHTOWER_IMAGES': 'images',
    'WATCHTOWER_LABEL_ENABLE': 'label_enable',
    'WATCHTOWER_SCOPE': 'scope',
    'WATCHTOWER_POLL_INTERVAL': 'poll_interval',
    'WATCHTOWER_REGISTRY_TIMEOUT': 'registry_timeout',
}

_DURATION_KEYS = ('stop_timeout', 'health_timeout', 'poll_interval', 'registry_timeout')


def parse_duration(value) -> int:
    """Seconds from ``30``, ``"30"``, ``"30s"``, ``"5m"`` or ``"1h"``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"invalid duration: {value!r}")
    return int(match.group(1)) * _DURATION_UNITS[match.group(2)]


def resolve_env_vars(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively resolve ${VAR} environment variables in a dict."""
    resolved: Dict[str, Any] = {}

    def replace_env_var(match):
        var_name = match.group(1)
        return os.getenv(var_name, match.group(0))

    for key, value in config_dict.items():
        if isinstance(value, str):
            resolved[key] = re.sub(r"\$\{([^}]+)\}", replace_env_var, value)
        elif isinstance(value, dict):
            resolved[key] = resolve_env_vars(value)
        elif isinstance(value, list):
            resolved[key] = [
                re.sub(r"\$\{([^}]+)\}", replace_env_var, item) if isinstance(item, str) else item
                for item in value
            ]
        else:
            resolved[key] = value
    return resolved


def _env_value(key: str, raw: str):
    kind = SCHEMA['properties'][key]
    if kind is _BOOL:
        value = parse_bool(raw)
        if value is None:
            raise ConfigurationError(f"{key}: expected a boolean, got {raw!r}")
        return value
    if kind is _INT:
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"{key}: expected an integer, got {raw!r}")
    if kind is _NAMES:
        return [part.strip() for part in re.split(r'[,\s]+', raw) if part.strip()]
    return raw


def apply_env_overrides(config: Dict[str, Any], environ=None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    merged = dict(config)
    for env_name, key in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is not None and raw != '':
            merged[key] = _env_value(key, raw)
    return merged


def build_agent_config(config: Dict[str, Any]) -> AgentConfig:
    config = dict(config)
    for key in _DURATION_KEYS:
        if key in config:
            config[key] = parse_duration(config[key])
    param_names = {f.name for f in fields(UpdateParams)}
    params = UpdateParams(**{k: v for k, v in config.items() if k in param_names})
    agent = {k: v for k, v in config.items() if k not in param_names}
    return AgentConfig(params=params, **agent)


def load_config(config_file: Optional[str], logger, environ=None) -> AgentConfig:
    """Load the optional YAML/JSON config file, validate it and apply environment overrides."""
    raw: Dict[str, Any] = {}
    if config_file and os.path.exists(config_file):
        with open(config_file, 'r') as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{config_file}: top level must be a mapping")
        logger.info(f"Loaded configuration from {config_file}")
    elif config_file:
        logger.debug(f"Config file {config_file} not found, using defaults and environment")

    config = apply_env_overrides(resolve_env_vars(raw), environ)
    try:
        jsonschema_validate(config, SCHEMA)
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e.message}")
        raise ConfigurationError(e.message) from e
    return build_agent_config(config)

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from watch_core import labels as lb
from watch_core.errors import ConfigurationError

module_logger = logging.getLogger(__name__)

CPU_COPY_MODES = ('auto', 'full', 'none')
WARN_ON_HEAD_FAILED = ('always', 'never', 'auto')


@dataclass
class UpdateParams:
    """Decision inputs for one sweep."""
    monitor_only: bool = False
    no_pull: bool = False
    label_precedence: bool = False
    cleanup: bool = False
    remove_volumes: bool = False
    include_stopped: bool = False
    revive_stopped: bool = False
    include_restarting: bool = False
    disable_memory_swappiness: bool = False
    cpu_copy_mode: str = 'auto'  # auto, full, none
    rolling_restart: bool = False
    lifecycle_hooks: bool = False
    lifecycle_uid: int = 0
    lifecycle_gid: int = 0
    warn_on_head_failed: str = 'auto'  # always, never, auto
    no_self_update: bool = False
    no_restart: bool = False
    stop_timeout: int = 10  # seconds
    health_check: bool = True  # wait for the new container to report healthy
    health_timeout: int = 300  # seconds

    def __post_init__(self):
        if self.cpu_copy_mode not in CPU_COPY_MODES:
            raise ConfigurationError(f"invalid cpu copy mode: {self.cpu_copy_mode}")
        if self.warn_on_head_failed not in WARN_ON_HEAD_FAILED:
            raise ConfigurationError(f"invalid warn-on-head-failed strategy: {self.warn_on_head_failed}")


@dataclass
class AgentConfig:
    """Everything the agent reads from its config file and environment."""
    params: UpdateParams = field(default_factory=UpdateParams)
    containers: List[str] = field(default_factory=list)  # only these names; empty means all
    disabled_containers: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    label_enable: bool = False  # opt-in via the enable label
    scope: Optional[str] = None
    poll_interval: int = 86400  # seconds between sweeps
    registry_timeout: int = 30  # seconds per registry HTTP request


class LifecycleStage(Enum):
    PRE_CHECK = 'pre-check'
    POST_CHECK = 'post-check'
    PRE_UPDATE = 'pre-update'
    POST_UPDATE = 'post-update'


_STAGE_COMMAND_LABELS = {
    LifecycleStage.PRE_CHECK: lb.PRE_CHECK_LABEL,
    LifecycleStage.POST_CHECK: lb.POST_CHECK_LABEL,
    LifecycleStage.PRE_UPDATE: lb.PRE_UPDATE_LABEL,
    LifecycleStage.POST_UPDATE: lb.POST_UPDATE_LABEL,
}

_STAGE_TIMEOUT_LABELS = {
    LifecycleStage.PRE_UPDATE: lb.PRE_UPDATE_TIMEOUT_LABEL,
    LifecycleStage.POST_UPDATE: lb.POST_UPDATE_TIMEOUT_LABEL,
}

_HEALTHCHECK_FIELDS = ('Test', 'Retries', 'Interval', 'Timeout', 'StartPeriod')


class Container:
    """A container as seen by one sweep: inspect payload plus image inspect payload."""

    def __init__(self, container_info: Dict[str, Any], image_info: Optional[Dict[str, Any]] = None):
        if not container_info or not container_info.get('Id'):
            raise ConfigurationError("container inspect payload has no Id")
        self.container_info = container_info
        self.image_info = image_info
        self.stale = False
        self.linked_to_restarting = False
        self.replaced_by: Optional[str] = None  # id of the container that took over

    def __repr__(self):
        return f"Container({self.name!r}, {self.short_id()})"

    @property
    def id(self) -> str:
        return self.container_info['Id']

    def short_id(self) -> str:
        value = self.id
        if value.startswith('sha256:'):
            value = value[len('sha256:'):]
        return value[:12]

    @property
    def name(self) -> str:
        return (self.container_info.get('Name') or '').lstrip('/')

    @property
    def config(self) -> Dict[str, Any]:
        return self.container_info.get('Config') or {}

    @property
    def host_config(self) -> Dict[str, Any]:
        return self.container_info.get('HostConfig') or {}

    @property
    def image_config(self) -> Optional[Dict[str, Any]]:
        if not self.image_info:
            return None
        return self.image_info.get('Config') or {}

    @property
    def has_image_info(self) -> bool:
        return self.image_info is not None

    @property
    def labels(self) -> Dict[str, str]:
        return self.config.get('Labels') or {}

    @property
    def network_settings(self) -> Dict[str, Dict[str, Any]]:
        return (self.container_info.get('NetworkSettings') or {}).get('Networks') or {}

    @property
    def state(self) -> str:
        return (self.container_info.get('State') or {}).get('Status', '')

    def is_running(self) -> bool:
        return bool((self.container_info.get('State') or {}).get('Running'))

    def is_restarting(self) -> bool:
        return self.state == 'restarting'

    @property
    def created(self) -> str:
        return self.container_info.get('Created', '')

    @property
    def image_id(self) -> str:
        return self.container_info.get('Image', '')

    @property
    def image_name(self) -> str:
        image = self.labels.get(lb.ZODIAC_LABEL)
        if not image:
            image = self.config.get('Image')
            if not image:
                module_logger.warning(f"No image in config of {self.name}, using unknown:latest")
                return 'unknown:latest'
        if ':' not in image:
            image += ':latest'
        return image

    def is_pinned(self) -> bool:
        return self.image_name.startswith('sha256:')

    @property
    def stop_signal(self) -> str:
        return self.labels.get(lb.SIGNAL_LABEL) or 'SIGTERM'

    @property
    def to_restart(self) -> bool:
        return self.stale or self.linked_to_restarting

    def mark_stale(self):
        self.stale = True

    def mark_linked_to_restarting(self):
        self.linked_to_restarting = True

    def is_watchtower(self) -> bool:
        return self.labels.get(lb.WATCHTOWER_LABEL) == 'true'

    def enabled(self) -> Optional[bool]:
        """Parsed enable label, None when absent or malformed."""
        return lb.parse_bool(self.labels.get(lb.ENABLE_LABEL))

    def scope(self) -> Optional[str]:
        value = self.labels.get(lb.SCOPE_LABEL)
        return value.strip() if value and value.strip() else None

    def is_monitor_only(self, params: UpdateParams) -> bool:
        return lb.container_or_global(self.labels, lb.MONITOR_ONLY_LABEL, params.monitor_only, params.label_precedence)

    def is_no_pull(self, params: UpdateParams) -> bool:
        return lb.container_or_global(self.labels, lb.NO_PULL_LABEL, params.no_pull, params.label_precedence)

    def lifecycle_command(self, stage: LifecycleStage) -> str:
        return (self.labels.get(_STAGE_COMMAND_LABELS[stage]) or '').strip()

    def hook_timeout(self, stage: LifecycleStage) -> int:
        key = _STAGE_TIMEOUT_LABELS.get(stage)
        return lb.parse_hook_timeout(self.labels.get(key) if key else None)

    def auto_remove(self) -> bool:
        return bool(self.host_config.get('AutoRemove'))

    def identities(self) -> List[str]:
        """Every name other containers may use to refer to this one."""
        names = [self.name] if self.name else [self.id]
        names.extend(lb.compose_identities(self.labels))
        return names

    def links(self) -> List[str]:
        """Names of the containers this one depends on, each with a leading slash.

        The first non-empty source wins: the depends-on label, then the compose
        depends_on label, then HostConfig links plus a container network mode.
        """
        links = lb.parse_depends_on(self.labels.get(lb.DEPENDS_ON_LABEL))
        if not links:
            links = lb.parse_compose_depends_on(self.labels.get(lb.COMPOSE_DEPENDS_ON_LABEL))
        if not links:
            links = self._host_config_links()
        own = {lb.normalize_name(n) for n in self.identities()}
        return [link for link in links if link not in own]

    def _host_config_links(self) -> List[str]:
        links = []
        for link in self.host_config.get('Links') or []:
            if ':' not in link:
                module_logger.warning(f"Invalid link {link!r} on {self.name}, expected name:alias")
                continue
            name = link.split(':', 1)[0]
            if not name.strip('/'):
                continue
            links.append(lb.normalize_name(name))
        target = self.network_mode_container()
        if target:
            links.append(lb.normalize_name(target))
        return links

    def network_mode_container(self) -> Optional[str]:
        mode = self.host_config.get('NetworkMode') or ''
        if mode.startswith('container:'):
            return mode[len('container:'):]
        return None

    def verify_configuration(self):
        if self.image_info is None:
            raise ConfigurationError(f"{self.name}: no image info available")
        if not self.container_info:
            raise ConfigurationError(f"{self.name}: no container info available")
        if self.container_info.get('Config') is None:
            raise ConfigurationError(f"{self.name}: container has no Config")
        if self.container_info.get('HostConfig') is None:
            raise ConfigurationError(f"{self.name}: container has no HostConfig")
        config = self.container_info['Config']
        if self.container_info['HostConfig'].get('PortBindings') and config.get('ExposedPorts') is None:
            config['ExposedPorts'] = {}

    def build_create_config(self) -> Dict[str, Any]:
        """Config for the create call, with values inherited from the image removed."""
        config = copy.deepcopy(self.config)
        image_config = self.image_config
        if image_config is None:
            config['Image'] = self.image_name
            return config

        host_config = self.host_config
        if config.get('WorkingDir') == image_config.get('WorkingDir'):
            config['WorkingDir'] = ''
        if config.get('User') == image_config.get('User'):
            config['User'] = ''
        if self.network_mode_container() is not None or host_config.get('UTSMode'):
            config['Hostname'] = ''

        if _same_list(config.get('Entrypoint'), image_config.get('Entrypoint')):
            config['Entrypoint'] = None
            if _same_list(config.get('Cmd'), image_config.get('Cmd')):
                config['Cmd'] = None

        healthcheck = config.get('Healthcheck')
        image_healthcheck = image_config.get('Healthcheck')
        if healthcheck is not None and image_healthcheck is not None:
            for field in _HEALTHCHECK_FIELDS:
                if field in healthcheck and healthcheck.get(field) == image_healthcheck.get(field):
                    del healthcheck[field]
            config['Healthcheck'] = healthcheck or None

        image_env = image_config.get('Env') or []
        config['Env'] = [e for e in (config.get('Env') or []) if e not in image_env]

        image_labels = image_config.get('Labels') or {}
        config['Labels'] = {
            k: v for k, v in (config.get('Labels') or {}).items()
            if k not in image_labels or image_labels[k] != v
        }

        image_volumes = image_config.get('Volumes') or {}
        config['Volumes'] = {k: v for k, v in (config.get('Volumes') or {}).items() if k not in image_volumes}

        image_ports = image_config.get('ExposedPorts') or {}
        exposed = {k: v for k, v in (config.get('ExposedPorts') or {}).items() if k not in image_ports}
        for port in host_config.get('PortBindings') or {}:
            exposed[port] = {}
        config['ExposedPorts'] = exposed

        config['Image'] = self.image_name
        return config

    def build_create_host_config(self) -> Dict[str, Any]:
        host_config = copy.deepcopy(self.host_config)
        adjusted = []
        for link in host_config.get('Links') or []:
            if ':' not in link:
                module_logger.warning(f"Skipping link {link!r} on {self.name}, expected name:alias")
                continue
            name, alias = link.split(':', 1)
            adjusted.append(f"{name}:/{alias.lstrip('/')}")
        if host_config.get('Links') is not None:
            host_config['Links'] = adjusted
        return host_config


def _same_list(a, b) -> bool:
    return list(a or []) == list(b or [])

import os
from typing import Any, Callable, Dict, Optional

PODMAN = 'podman'
DOCKER = 'docker'

CPU_FIELDS = ('NanoCpus', 'CpuShares', 'CpuQuota', 'CpuPeriod', 'CpusetCpus', 'CpusetMems')


def detect_runtime(get_info: Optional[Callable[[], Dict[str, Any]]], logger, root: str = '/') -> str:
    """Return ``podman`` or ``docker``.

    Marker files win over the environment, which wins over the daemon's info.
    """
    if os.path.exists(os.path.join(root, 'run/.containerenv')):
        logger.debug("Found /run/.containerenv, runtime is podman")
        return PODMAN
    if os.path.exists(os.path.join(root, '.dockerenv')):
        logger.debug("Found /.dockerenv, runtime is docker")
        return DOCKER
    if os.getenv('CONTAINER', '').lower() in ('podman', 'oci'):
        logger.debug("CONTAINER environment variable indicates podman")
        return PODMAN
    if get_info is not None:
        try:
            info = get_info() or {}
        except Exception as e:
            logger.debug(f"Runtime info unavailable ({e}), assuming docker")
            return DOCKER
        if (info.get('Name') or '').lower() == PODMAN or PODMAN in (info.get('ServerVersion') or '').lower():
            return PODMAN
    return DOCKER


def apply_host_config_policy(host_config: Dict[str, Any], params, runtime: str, logger) -> Dict[str, Any]:
    """Drop host settings that do not survive recreation on this runtime."""
    if params.disable_memory_swappiness and 'MemorySwappiness' in host_config:
        host_config['MemorySwappiness'] = None

    mode = params.cpu_copy_mode
    if mode == 'none':
        for field in CPU_FIELDS:
            if field in host_config:
                host_config[field] = '' if field.startswith('Cpuset') else 0
        logger.debug("CPU settings cleared (cpu copy mode none)")
    elif mode == 'auto' and runtime == PODMAN:
        if host_config.get('NanoCpus'):
            logger.debug("Clearing NanoCpus for podman")
        host_config['NanoCpus'] = 0
    return host_config

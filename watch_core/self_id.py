import os
import re
from typing import Callable, Iterable, Optional

from watch_core.errors import UpdaterError

MOUNTINFO_PATH = '/proc/self/mountinfo'
CGROUP_PATH = '/proc/self/cgroup'

_HEX64 = re.compile(r'(?<![0-9a-f])[0-9a-f]{64}(?![0-9a-f])')
_MOUNTINFO_RE = re.compile(r'/containers/([0-9a-f]+)/')
_CGROUP_RE = re.compile(r'/(?:docker|libpod|crio|containerd)[-/]([0-9a-f]+)(?:\.scope)?')


def extract_container_id(path: str) -> Optional[str]:
    """Return the first run of exactly 64 lowercase hex characters in ``path``."""
    match = _HEX64.search(path or '')
    return match.group(0) if match else None


def _read_lines(path: str):
    try:
        with open(path, 'r') as f:
            return f.read().splitlines()
    except OSError:
        return []


def id_from_mountinfo(lines: Iterable[str]) -> Optional[str]:
    for line in lines:
        for match in _MOUNTINFO_RE.finditer(line):
            candidate = extract_container_id(match.group(1))
            if candidate and candidate == match.group(1):
                return candidate
    return None


def id_from_cgroup(lines: Iterable[str]) -> Optional[str]:
    for line in lines:
        for match in _CGROUP_RE.finditer(line):
            candidate = extract_container_id(match.group(1))
            if candidate and candidate == match.group(1):
                return candidate
    return None


def get_current_container_id(
    list_containers: Optional[Callable[[], Iterable]] = None,
    logger=None,
    mountinfo_path: str = MOUNTINFO_PATH,
    cgroup_path: str = CGROUP_PATH,
    hostname: Optional[str] = None,
) -> str:
    """Find the id of the container this process runs in.

    Tries /proc/self/mountinfo, then /proc/self/cgroup, then a container whose
    Config.Hostname equals $HOSTNAME (``list_containers`` must return
    Container objects for that step).
    """
    container_id = id_from_mountinfo(_read_lines(mountinfo_path))
    if container_id:
        if logger:
            logger.debug(f"Self id {container_id[:12]} found in mountinfo")
        return container_id

    container_id = id_from_cgroup(_read_lines(cgroup_path))
    if container_id:
        if logger:
            logger.debug(f"Self id {container_id[:12]} found in cgroup")
        return container_id

    if hostname is None:
        hostname = os.getenv('HOSTNAME')
    if hostname and list_containers is not None:
        for container in list_containers():
            if container.config.get('Hostname') == hostname:
                if logger:
                    logger.debug(f"Self id {container.short_id()} matched by hostname {hostname}")
                return container.id

    raise UpdaterError("current container id undetectable")

"""Label names understood by the agent and helpers to interpret their values.

Label keys are matched byte-for-byte; values are parsed leniently and a
malformed value is treated the same as an absent one.
"""

from typing import Dict, List, Optional

WATCHTOWER_LABEL = 'com.centurylinklabs.watchtower'
LABEL_PREFIX = 'com.centurylinklabs.watchtower.'
ENABLE_LABEL = 'com.centurylinklabs.watchtower.enable'
MONITOR_ONLY_LABEL = 'com.centurylinklabs.watchtower.monitor-only'
NO_PULL_LABEL = 'com.centurylinklabs.watchtower.no-pull'
DEPENDS_ON_LABEL = 'com.centurylinklabs.watchtower.depends-on'
SCOPE_LABEL = 'com.centurylinklabs.watchtower.scope'
SIGNAL_LABEL = 'com.centurylinklabs.watchtower.stop-signal'
ZODIAC_LABEL = 'com.centurylinklabs.zodiac.original-image'

PRE_CHECK_LABEL = 'com.centurylinklabs.watchtower.lifecycle.pre-check'
POST_CHECK_LABEL = 'com.centurylinklabs.watchtower.lifecycle.post-check'
PRE_UPDATE_LABEL = 'com.centurylinklabs.watchtower.lifecycle.pre-update'
POST_UPDATE_LABEL = 'com.centurylinklabs.watchtower.lifecycle.post-update'
PRE_UPDATE_TIMEOUT_LABEL = 'com.centurylinklabs.watchtower.lifecycle.pre-update-timeout'
POST_UPDATE_TIMEOUT_LABEL = 'com.centurylinklabs.watchtower.lifecycle.post-update-timeout'

COMPOSE_DEPENDS_ON_LABEL = 'com.docker.compose.depends_on'
COMPOSE_SERVICE_LABEL = 'com.docker.compose.service'
COMPOSE_PROJECT_LABEL = 'com.docker.compose.project'
COMPOSE_NUMBER_LABEL = 'com.docker.compose.container-number'

DEFAULT_HOOK_TIMEOUT_MINUTES = 1

_TRUE_VALUES = ('1', 't', 'T', 'TRUE', 'true', 'True')
_FALSE_VALUES = ('0', 'f', 'F', 'FALSE', 'false', 'False')


def parse_bool(value: Optional[str]) -> Optional[bool]:
    """Return True/False for a recognised boolean string, None otherwise."""
    if value is None:
        return None
    value = value.strip()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


def container_or_global(labels: Dict[str, str], key: str, global_value: bool, label_precedence: bool) -> bool:
    """Combine a boolean container label with the matching global flag.

    Absent or malformed label: the global value. With label precedence the
    label decides on its own, otherwise either side can switch the setting on.
    """
    cont = parse_bool(labels.get(key))
    if cont is None:
        return global_value
    if label_precedence:
        return cont
    return cont or global_value


def normalize_name(name: str) -> str:
    name = name.strip()
    if not name:
        return name
    return name if name.startswith('/') else '/' + name


def strip_name(name: str) -> str:
    return name.strip().lstrip('/')


def parse_depends_on(value: Optional[str]) -> List[str]:
    if not value:
        return []
    links = []
    for part in value.split(','):
        part = part.strip()
        if part:
            links.append(normalize_name(part))
    return links


def parse_compose_depends_on(value: Optional[str]) -> List[str]:
    """Parse ``db,cache:service_healthy:true`` into ``['/db', '/cache']``."""
    if not value:
        return []
    links = []
    for dep in value.split(','):
        dep = dep.strip()
        if not dep:
            continue
        service = dep.split(':')[0].strip()
        if service:
            links.append(normalize_name(service))
    return links


def parse_hook_timeout(value: Optional[str]) -> int:
    """Minutes for a lifecycle hook; invalid or absent values fall back to 1, 0 is unbounded."""
    if value is None or not value.strip():
        return DEFAULT_HOOK_TIMEOUT_MINUTES
    try:
        minutes = int(value.strip())
    except ValueError:
        return DEFAULT_HOOK_TIMEOUT_MINUTES
    if minutes < 0:
        return DEFAULT_HOOK_TIMEOUT_MINUTES
    return minutes


def compose_identities(labels: Dict[str, str]) -> List[str]:
    """Names a compose-managed container can be referred to by in dependency labels."""
    service = labels.get(COMPOSE_SERVICE_LABEL)
    if not service:
        return []
    identities = [service]
    project = labels.get(COMPOSE_PROJECT_LABEL)
    if project:
        identities.append(f"{project}-{service}")
        number = labels.get(COMPOSE_NUMBER_LABEL)
        if number:
            identities.append(f"{project}-{service}-{number}")
    return identities


def watchtower_labels(labels: Dict[str, str]) -> Dict[str, str]:
    return {k: v for k, v in (labels or {}).items() if k.startswith(LABEL_PREFIX)}

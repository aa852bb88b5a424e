"""Composable container predicates.

A filter is any callable taking a Container and returning a bool; filters
combine with ``all_of`` (logical AND).
"""

from typing import Callable, List, Optional, Tuple

from watch_core.labels import strip_name
from watch_core.models import Container

Filter = Callable[[Container], bool]


def no_filter(container: Container) -> bool:
    return True


def all_of(*filters: Filter) -> Filter:
    def combined(container: Container) -> bool:
        return all(f(container) for f in filters)
    return combined


def by_names(names: Optional[List[str]]) -> Filter:
    wanted = {strip_name(n) for n in names or [] if n.strip()}
    if not wanted:
        return no_filter

    def matches(container: Container) -> bool:
        return container.name in wanted or container.id in wanted or container.short_id() in wanted
    return matches


def by_disabled_names(names: Optional[List[str]]) -> Filter:
    unwanted = {strip_name(n) for n in names or [] if n.strip()}
    if not unwanted:
        return no_filter
    return lambda container: container.name not in unwanted


def by_enable_label(default_if_absent: bool = True) -> Filter:
    """Opt-in mode uses ``default_if_absent=False``; an explicit false always excludes."""
    def matches(container: Container) -> bool:
        enabled = container.enabled()
        if enabled is None:
            return default_if_absent
        return enabled
    return matches


def by_scope(scope: Optional[str]) -> Filter:
    """``none`` selects unscoped containers; an empty scope matches everything."""
    if not scope:
        return no_filter
    if scope == 'none':
        return lambda container: container.scope() in (None, 'none')
    return lambda container: container.scope() == scope


def by_image(images: Optional[List[str]]) -> Filter:
    repos = {i.split(':', 1)[0] for i in images or [] if i.strip()}
    if not repos:
        return no_filter

    def matches(container: Container) -> bool:
        return container.image_name.rsplit(':', 1)[0] in repos
    return matches


def exclude_self(agent_id: Optional[str]) -> Filter:
    if not agent_id:
        return no_filter
    return lambda container: container.id != agent_id


def by_state(include_stopped: bool, include_restarting: bool) -> Filter:
    def matches(container: Container) -> bool:
        state = container.state
        if state == 'restarting':
            return include_restarting
        if state == 'running':
            return True
        if state in ('created', 'exited'):
            return include_stopped
        return False
    return matches


def watchtower_containers(container: Container) -> bool:
    return container.is_watchtower()


def build_filter(names=None, disabled_names=None, enable_label: bool = False,
                 scope: Optional[str] = None, images=None) -> Tuple[Filter, str]:
    """Combine the configured selection rules, returning (filter, description)."""
    filters = [by_names(names), by_disabled_names(disabled_names), by_image(images),
               by_enable_label(default_if_absent=not enable_label), by_scope(scope)]
    parts = []
    if names:
        parts.append(f"only checking containers named {', '.join(names)}")
    if disabled_names:
        parts.append(f"not checking {', '.join(disabled_names)}")
    if images:
        parts.append(f"only checking images {', '.join(images)}")
    if enable_label:
        parts.append("only checking containers with the enable label")
    if scope:
        parts.append(f"scope {scope}")
    description = '; '.join(parts) if parts else 'checking all containers'
    return all_of(*filters), description

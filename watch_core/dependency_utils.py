from typing import Dict, List

from watch_core.labels import strip_name
from watch_core.models import Container


def index_by_identity(containers: List[Container]) -> Dict[str, Container]:
    """Map every name a container answers to (plain name and compose identities) to it."""
    index: Dict[str, Container] = {}
    for container in containers:
        for identity in container.identities():
            index.setdefault(strip_name(identity), container)
    return index


def build_graph(containers: List[Container]) -> Dict[str, List[Container]]:
    """container id -> containers it depends on; unresolvable link names are dropped."""
    index = index_by_identity(containers)
    graph: Dict[str, List[Container]] = {}
    for container in containers:
        deps = []
        for link in container.links():
            target = index.get(strip_name(link))
            if target is not None and target.id != container.id and target not in deps:
                deps.append(target)
        graph[container.id] = deps
    return graph


def mark_linked_to_restarting(containers: List[Container], logger) -> List[Container]:
    """Flag every container that transitively depends on a stale one.

    Returns the restart set: stale containers plus the newly flagged ones.
    """
    graph = build_graph(containers)
    dependents: Dict[str, List[Container]] = {c.id: [] for c in containers}
    for container in containers:
        for dep in graph[container.id]:
            dependents[dep.id].append(container)

    queue = [c for c in containers if c.stale]
    seen = {c.id for c in queue}
    while queue:
        current = queue.pop(0)
        for dependent in dependents[current.id]:
            if dependent.id in seen:
                continue
            seen.add(dependent.id)
            if not dependent.stale:
                dependent.mark_linked_to_restarting()
                logger.debug(f"{dependent.name} depends on restarting {current.name}, marking for restart")
            queue.append(dependent)
    return [c for c in containers if c.id in seen]


def sort_by_dependencies(containers: List[Container], logger) -> List[Container]:
    """Order containers so each comes after everything it depends on.

    Agent containers go last. Cycles do not raise: the back edge is ignored
    and a warning names the container where it was found.
    """
    regular = [c for c in containers if not c.is_watchtower()]
    agents = [c for c in containers if c.is_watchtower()]
    graph = build_graph(regular)

    ordered: List[Container] = []
    done = set()
    visiting = set()

    def visit(container: Container):
        if container.id in done:
            return
        if container.id in visiting:
            logger.warning(f"Circular dependency involving {container.name}, using input order")
            return
        visiting.add(container.id)
        for dep in graph[container.id]:
            visit(dep)
        visiting.discard(container.id)
        done.add(container.id)
        ordered.append(container)

    for container in regular:
        if not graph[container.id]:
            visit(container)
    for container in regular:
        visit(container)
    return ordered + agents

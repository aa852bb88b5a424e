from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from watch_core.models import Container


class State(Enum):
    SKIPPED = 'skipped'
    SCANNED = 'scanned'
    UPDATED = 'updated'
    FAILED = 'failed'
    FRESH = 'fresh'
    STALE = 'stale'


@dataclass
class ContainerStatus:
    container_id: str
    name: str
    image_name: str
    old_image_id: str
    new_image_id: str = ''
    state: State = State.SCANNED
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            'id': self.container_id,
            'name': self.name,
            'image_name': self.image_name,
            'old_image_id': self.old_image_id,
            'new_image_id': self.new_image_id,
            'state': self.state.value,
            'error': self.error,
        }


@dataclass
class Report:
    scanned: List[ContainerStatus] = field(default_factory=list)
    updated: List[ContainerStatus] = field(default_factory=list)
    failed: List[ContainerStatus] = field(default_factory=list)
    skipped: List[ContainerStatus] = field(default_factory=list)
    stale: List[ContainerStatus] = field(default_factory=list)
    fresh: List[ContainerStatus] = field(default_factory=list)

    def as_dict(self) -> Dict[str, list]:
        return {
            'scanned': [s.as_dict() for s in self.scanned],
            'updated': [s.as_dict() for s in self.updated],
            'failed': [s.as_dict() for s in self.failed],
            'skipped': [s.as_dict() for s in self.skipped],
            'stale': [s.as_dict() for s in self.stale],
            'fresh': [s.as_dict() for s in self.fresh],
        }


class Progress:
    """Status of every container touched during one sweep, keyed by the original id."""

    def __init__(self):
        self._statuses: Dict[str, ContainerStatus] = {}

    def add_scanned(self, container: Container, new_image_id: str):
        self._statuses[container.id] = ContainerStatus(
            container.id, container.name, container.image_name, container.image_id, new_image_id, State.SCANNED
        )

    def add_skipped(self, container: Container, error: Exception):
        self._statuses[container.id] = ContainerStatus(
            container.id, container.name, container.image_name, container.image_id, '', State.SKIPPED, str(error)
        )

    def mark_for_update(self, container_id: str):
        status = self._statuses.get(container_id)
        if status is not None:
            status.state = State.UPDATED

    def mark_failed(self, container_id: str, error: Exception):
        status = self._statuses.get(container_id)
        if status is not None:
            status.state = State.FAILED
            status.error = str(error)

    def report(self) -> Report:
        report = Report()
        for status in self._statuses.values():
            if status.state == State.SKIPPED:
                report.skipped.append(status)
                continue
            report.scanned.append(status)
            if status.state == State.UPDATED:
                report.updated.append(status)
            elif status.state == State.FAILED:
                report.failed.append(status)
            elif status.new_image_id and status.new_image_id != status.old_image_id:
                report.stale.append(status)
            else:
                report.fresh.append(status)
        return report

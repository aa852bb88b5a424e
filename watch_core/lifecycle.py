import json
from typing import Iterable

from watch_core import labels as lb
from watch_core.errors import ContainerNotFound, HookCommandFailed, SweepCancelled, TransientError
from watch_core.models import Container, LifecycleStage


def container_metadata_json(container: Container) -> str:
    """Payload exported to hooks as WT_CONTAINER."""
    return json.dumps({
        'name': container.name,
        'id': container.id,
        'image_name': container.image_name,
        'stop_signal': container.stop_signal,
        'labels': lb.watchtower_labels(container.labels),
    })


def exec_user(uid: int, gid: int) -> str:
    if uid > 0 and gid > 0:
        return f"{uid}:{gid}"
    if uid > 0:
        return str(uid)
    if gid > 0:
        return f":{gid}"
    return ''


class LifecycleRunner:
    """Runs the label-defined hook commands through the gateway's exec support."""

    def __init__(self, gateway, params, logger):
        self.gateway = gateway
        self.params = params
        self.logger = logger

    def run(self, container: Container, stage: LifecycleStage) -> bool:
        """Execute one stage. Returns True when the command asked to skip the update (exit 75)."""
        command = container.lifecycle_command(stage)
        if not command:
            self.logger.debug(f"No {stage.value} command for {container.name}")
            return False
        timeout = container.hook_timeout(stage)
        self.logger.info(f"Running {stage.value} command for {container.name}")
        return self.gateway.execute_command(
            container,
            command,
            timeout,
            self.params.lifecycle_uid,
            self.params.lifecycle_gid,
            stage=stage.value,
        )

    def _run_logged(self, container: Container, stage: LifecycleStage):
        try:
            self.run(container, stage)
        except SweepCancelled:
            raise
        except (HookCommandFailed, ContainerNotFound, TransientError) as e:
            self.logger.warning(f"{stage.value} hook for {container.name} failed: {e}")

    def pre_checks(self, containers: Iterable[Container]):
        for container in containers:
            self._run_logged(container, LifecycleStage.PRE_CHECK)

    def post_checks(self, containers: Iterable[Container]):
        for container in containers:
            self._run_logged(container, LifecycleStage.POST_CHECK)

    def _can_exec(self, container: Container, stage: LifecycleStage) -> bool:
        if container.is_running() and not container.is_restarting():
            return True
        self.logger.debug(f"{container.name} is not running, skipping {stage.value} command")
        return False

    def pre_update(self, container: Container) -> bool:
        """Failures propagate so the caller can abandon the replacement."""
        if not self._can_exec(container, LifecycleStage.PRE_UPDATE):
            return False
        skip = self.run(container, LifecycleStage.PRE_UPDATE)
        if skip:
            self.logger.info(f"Pre-update command for {container.name} exited 75, skipping update")
        return skip

    def post_update(self, container: Container):
        if self._can_exec(container, LifecycleStage.POST_UPDATE):
            self._run_logged(container, LifecycleStage.POST_UPDATE)

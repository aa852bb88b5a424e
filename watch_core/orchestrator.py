"""One update sweep: classify, expand the restart set, replace in dependency order, clean up."""

import random
import string
from typing import Dict, List, Optional, Set, Tuple

import requests
from docker.errors import DockerException

from watch_core import dependency_utils
from watch_core import filters as flt
from watch_core.errors import (
    ConfigurationError,
    ContainerUnhealthy,
    HealthcheckTimeout,
    ImageNotFound,
    PinnedImageError,
    SweepCancelled,
    UpdaterError,
)
from watch_core.lifecycle import LifecycleRunner
from watch_core.models import Container, UpdateParams
from watch_core.session import Progress, Report

CONTAINER_ERRORS = (UpdaterError, DockerException, requests.RequestException)


def random_name(length: int = 32) -> str:
    return ''.join(random.choices(string.ascii_letters, k=length))


class UpdateOrchestrator:
    def __init__(self, gateway, oracle, params: UpdateParams, logger, metrics=None,
                 lifecycle: Optional[LifecycleRunner] = None, agent_id: Optional[str] = None):
        self.gateway = gateway
        self.oracle = oracle
        self.params = params
        self.logger = logger
        self.metrics = metrics
        self.lifecycle = lifecycle or LifecycleRunner(gateway, params, logger)
        self.agent_id = agent_id

    def _is_agent(self, container: Container) -> bool:
        return container.is_watchtower() or (self.agent_id is not None and container.id == self.agent_id)

    def sweep(self, candidate_filter=None) -> Tuple[Report, Set[str]]:
        """Run one sweep and return the report plus the image ids queued (and removed) for cleanup."""
        progress = Progress()
        cleanup_ids: Set[str] = set()
        try:
            containers = self._gather(candidate_filter, progress)
            self._classify(containers, progress)
            restart_set = dependency_utils.mark_linked_to_restarting(containers, self.logger)
            self.logger.debug(
                f"{len(containers)} candidates, {sum(1 for c in containers if c.stale)} stale, "
                f"{len(restart_set)} to restart"
            )
            if self.params.lifecycle_hooks:
                self.lifecycle.pre_checks([c for c in restart_set if c.to_restart])

            ordered = [c for c in dependency_utils.sort_by_dependencies(restart_set, self.logger) if c.to_restart]
            if self.params.rolling_restart:
                updated = self._rolling_restart(ordered, progress, cleanup_ids)
            else:
                updated = self._batch_restart(ordered, progress, cleanup_ids)

            if self.params.lifecycle_hooks:
                self.lifecycle.post_checks(updated)
            if self.params.cleanup and cleanup_ids:
                survivors = [c for c in containers if c.replaced_by is None] + updated
                self.cleanup_images(cleanup_ids, survivors)
        except SweepCancelled:
            self.logger.warning("Sweep cancelled, changes already made are kept")

        report = progress.report()
        if self.metrics is not None:
            self.metrics.record_report(report)
        self.logger.info(
            f"Session done: scanned={len(report.scanned)} updated={len(report.updated)} "
            f"failed={len(report.failed)} skipped={len(report.skipped)}"
        )
        return report, cleanup_ids

    def _gather(self, candidate_filter, progress: Progress) -> List[Container]:
        state_filter = flt.by_state(self.params.include_stopped, self.params.include_restarting)
        predicate = flt.all_of(state_filter, candidate_filter) if candidate_filter else state_filter
        containers = self.gateway.list_containers(predicate)
        if not self.params.no_self_update:
            return containers
        candidates = []
        for container in containers:
            if self._is_agent(container):
                self.logger.debug(f"Not updating agent container {container.name} (self-update disabled)")
                progress.add_scanned(container, container.image_id)
                continue
            candidates.append(container)
        return candidates

    def _classify(self, containers: List[Container], progress: Progress):
        for container in containers:
            try:
                stale, newest = self.oracle.is_container_stale(container)
                if stale and not self._monitor_only(container):
                    container.verify_configuration()
            except SweepCancelled:
                raise
            except PinnedImageError as e:
                self.logger.debug(f"{container.name}: {e}")
                progress.add_scanned(container, container.image_id)
                continue
            except CONTAINER_ERRORS as e:
                self.logger.info(f"Unable to update container {container.name}: {e}. Proceeding to next.")
                progress.add_skipped(container, e)
                continue
            progress.add_scanned(container, newest)
            if stale:
                container.mark_stale()

    def _monitor_only(self, container: Container) -> bool:
        return self.params.no_restart or container.is_monitor_only(self.params)

    def _prepare(self, container: Container, progress: Progress) -> bool:
        """Checks and the pre-update hook. False means leave this container alone."""
        if self._monitor_only(container):
            self.logger.info(f"{container.name} is monitor-only, not updating")
            return False
        try:
            if container.linked_to_restarting:
                container.verify_configuration()
            if self.params.lifecycle_hooks and self.lifecycle.pre_update(container):
                return False
        except SweepCancelled:
            raise
        except CONTAINER_ERRORS as e:
            self.logger.error(f"Not updating {container.name}: {e}")
            progress.mark_failed(container.id, e)
            return False
        return True

    def _stop(self, container: Container, progress: Progress) -> bool:
        if self._is_agent(container):
            return True
        try:
            self.gateway.stop_container(container, self.params.stop_timeout)
            return True
        except SweepCancelled:
            raise
        except CONTAINER_ERRORS as e:
            self.logger.error(f"Failed to stop {container.name}: {e}")
            progress.mark_failed(container.id, e)
            return False

    def _start(self, container: Container, progress: Progress, cleanup_ids: Set[str]) -> Optional[Container]:
        renamed = False
        if self._is_agent(container):
            new_name = random_name()
            try:
                self.gateway.rename_container(container, new_name)
            except CONTAINER_ERRORS as e:
                self.logger.error(f"Failed to rename agent container {container.name}: {e}")
                progress.mark_failed(container.id, e)
                return None
            renamed = True
            self.logger.info(f"Renamed agent container {container.name} to {new_name} for self-update")

        try:
            new_id = self.gateway.start_container(container)
        except SweepCancelled:
            raise
        except CONTAINER_ERRORS as e:
            if renamed:
                self.logger.error(f"Failed to start new agent container: {e}; old instance keeps running")
            else:
                self.logger.error(
                    f"Failed to recreate {container.name}: {e}; the container is stopped and removed"
                )
            progress.mark_failed(container.id, e)
            return None

        if not renamed:
            container.replaced_by = new_id
        self._wait_healthy(container, new_id)
        try:
            new_container = self.gateway.get_container(new_id)
        except CONTAINER_ERRORS as e:
            self.logger.warning(f"Could not inspect new container for {container.name}: {e}")
            new_container = None

        if new_container is not None and self.params.lifecycle_hooks:
            self.lifecycle.post_update(new_container)

        if container.stale:
            progress.mark_for_update(container.id)
            if not renamed:
                cleanup_ids.add(container.image_id)
            self.logger.info(f"Updated {container.name} ({container.image_name})")
        else:
            self.logger.info(f"Restarted {container.name} after a dependency was updated")
        return new_container

    def _wait_healthy(self, container: Container, new_id: str):
        if not self.params.health_check:
            return
        if not container.is_running() and not self.params.revive_stopped:
            return
        try:
            verified = self.gateway.wait_for_container_healthy(new_id, self.params.health_timeout)
        except SweepCancelled:
            raise
        except (HealthcheckTimeout, ContainerUnhealthy) as e:
            self.logger.warning(f"{container.name}: {e}; not rolling back")
            return
        except CONTAINER_ERRORS as e:
            self.logger.warning(f"Health wait for {container.name} failed: {e}")
            return
        if not verified:
            self.logger.debug(f"{container.name} has no healthcheck, treating it as healthy once started")
            if self.metrics is not None:
                self.metrics.unverified_restart()

    def _rolling_restart(self, ordered: List[Container], progress: Progress, cleanup_ids: Set[str]) -> List[Container]:
        updated = []
        for container in ordered:
            if not self._prepare(container, progress):
                continue
            if not self._stop(container, progress):
                continue
            new_container = self._start(container, progress, cleanup_ids)
            if new_container is not None:
                updated.append(new_container)
        return updated

    def _batch_restart(self, ordered: List[Container], progress: Progress, cleanup_ids: Set[str]) -> List[Container]:
        stopped: Dict[str, Container] = {}
        for container in reversed(ordered):
            if self._prepare(container, progress) and self._stop(container, progress):
                stopped[container.id] = container
        updated = []
        for container in ordered:
            if container.id not in stopped:
                continue
            new_container = self._start(container, progress, cleanup_ids)
            if new_container is not None:
                updated.append(new_container)
        return updated

    def cleanup_images(self, image_ids: Set[str], survivors: List[Container]):
        in_use = {c.image_id for c in survivors}
        for image_id in sorted(image_ids):
            if image_id in in_use:
                self.logger.debug(f"Image {image_id[:19]} still used by another container, keeping it")
                continue
            try:
                self.gateway.remove_image_by_id(image_id)
                self.logger.info(f"Removed old image {image_id[:19]}")
            except ImageNotFound:
                self.logger.debug(f"Image {image_id[:19]} already removed")
            except CONTAINER_ERRORS as e:
                if 'dependent child images' in str(e) or 'being used by' in str(e):
                    self.logger.debug(f"Image {image_id[:19]} not removed: {e}")
                else:
                    self.logger.warning(f"Failed to remove image {image_id[:19]}: {e}")


def check_for_sanity(containers: List[Container], rolling_restart: bool, logger):
    """Rolling restarts cannot honour links; refuse to start with such a candidate set."""
    if not rolling_restart:
        return
    for container in containers:
        links = container.links()
        if links:
            raise ConfigurationError(
                f"{container.name} depends on {', '.join(links)}, which is incompatible with rolling restarts"
            )
    logger.debug("Sanity check passed, no dependencies found")


def check_for_multiple_instances(gateway, scope: Optional[str], cleanup: bool, logger) -> Set[str]:
    """Stop every agent container in this scope except the newest one.

    Returns the image ids of the stopped instances, removed right away when
    cleanup is enabled.
    """
    predicate = flt.all_of(flt.watchtower_containers, flt.by_scope(scope or 'none'))
    agents = gateway.list_containers(predicate)
    if len(agents) <= 1:
        logger.debug("No additional agent instances found")
        return set()

    logger.info(f"Found {len(agents)} agent instances, stopping all but the newest")
    agents.sort(key=lambda c: c.created)
    image_ids = set()
    newest = agents[-1]
    for agent in agents[:-1]:
        try:
            gateway.stop_container(agent, 10)
        except CONTAINER_ERRORS as e:
            logger.error(f"Failed to stop agent instance {agent.name}: {e}")
            continue
        if agent.image_id != newest.image_id:
            image_ids.add(agent.image_id)
    if cleanup:
        for image_id in image_ids:
            try:
                gateway.remove_image_by_id(image_id)
            except CONTAINER_ERRORS as e:
                logger.debug(f"Could not remove image {image_id[:19]}: {e}")
    return image_ids

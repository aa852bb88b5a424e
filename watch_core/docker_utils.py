import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from docker.errors import APIError, DockerException, NotFound
from docker.utils import parse_repository_tag, version_gte

from watch_core.errors import (
    ContainerNotFound,
    ContainerUnhealthy,
    HealthcheckTimeout,
    HookCommandFailed,
    ImageNotFound,
    RegistryAuthError,
    SweepCancelled,
    TransientError,
)
from watch_core.lifecycle import container_metadata_json, exec_user
from watch_core.models import Container, UpdateParams
from watch_core.runtime_policy import DOCKER, apply_host_config_policy

POLL_INTERVAL = 1.0
PER_ENDPOINT_MAC_VERSION = '1.44'
EX_TEMPFAIL = 75


def translate_error(e: Exception, what: str) -> Exception:
    """Map docker/requests exceptions onto the agent's error kinds."""
    if isinstance(e, APIError):
        if e.is_server_error():
            return TransientError(f"{what}: {e.explanation or e}")
        status = e.status_code
        if status in (401, 403) or 'unauthorized' in str(e.explanation or '').lower():
            return RegistryAuthError(f"{what}: {e.explanation or e}")
    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                      requests.exceptions.ChunkedEncodingError)):
        return TransientError(f"{what}: {e}")
    return e


class DockerGateway:
    """The only component that talks to the container runtime.

    Wraps a low-level docker ``APIClient`` and hides the differences between
    Docker and Podman's Docker-compatible API.
    """

    def __init__(self, api, params: UpdateParams, logger, runtime: str = DOCKER,
                 cancel: Optional[threading.Event] = None):
        self.api = api
        self.params = params
        self.logger = logger
        self.runtime = runtime
        self.cancel = cancel or threading.Event()
        self.registry_config: Optional[Dict[str, Any]] = None

    @property
    def api_version(self) -> str:
        return getattr(self.api, 'api_version', None) or '1.24'

    def _check_cancelled(self):
        if self.cancel.is_set():
            raise SweepCancelled("sweep cancelled")

    def _tick(self):
        if self.cancel.wait(POLL_INTERVAL):
            raise SweepCancelled("sweep cancelled")

    def _status_filter(self) -> List[str]:
        statuses = ['running']
        if self.params.include_stopped:
            statuses.extend(['created', 'exited'])
        if self.params.include_restarting:
            statuses.append('restarting')
        return statuses

    def list_containers(self, predicate: Optional[Callable[[Container], bool]] = None) -> List[Container]:
        """Inspect every container in an accepted state and return those passing ``predicate``."""
        self._check_cancelled()
        try:
            summaries = self.api.containers(all=True, filters={'status': self._status_filter()})
        except NotFound:
            self.logger.warning("Container list endpoint returned 404, treating as empty")
            return []
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, "list containers")

        containers = []
        for summary in summaries:
            container_id = summary.get('Id') or summary.get('ID')
            try:
                container = self.get_container(container_id)
            except ContainerNotFound:
                self.logger.debug(f"Container {container_id[:12]} disappeared before inspect, skipping")
                continue
            if predicate is None or predicate(container):
                containers.append(container)
        return containers

    def get_container(self, container_id: str) -> Container:
        try:
            info = self.api.inspect_container(container_id)
        except NotFound:
            raise ContainerNotFound(container_id)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"inspect container {container_id[:12]}")

        self._resolve_network_container(info)

        image_info = None
        image_ref = info.get('Image')
        if image_ref:
            try:
                image_info = self.api.inspect_image(image_ref)
            except NotFound:
                self.logger.debug(f"Image {image_ref[:19]} of {info.get('Name')} no longer present")
            except (APIError, requests.exceptions.RequestException) as e:
                raise translate_error(e, f"inspect image {image_ref}")
        return Container(info, image_info)

    def _resolve_network_container(self, info: Dict[str, Any]):
        host_config = info.get('HostConfig') or {}
        mode = host_config.get('NetworkMode') or ''
        if not mode.startswith('container:'):
            return
        target = mode[len('container:'):]
        try:
            target_info = self.api.inspect_container(target)
        except (NotFound, APIError) as e:
            self.logger.debug(f"Could not resolve network container {target[:12]}: {e}")
            return
        name = (target_info.get('Name') or '').lstrip('/')
        if name:
            host_config['NetworkMode'] = f"container:{name}"

    def stop_container(self, container: Container, timeout: int):
        """Signal, wait, kill if needed, then remove. Missing containers count as stopped."""
        self._check_cancelled()
        if container.is_running():
            self.logger.info(f"Stopping {container.name} ({container.short_id()}) with {container.stop_signal}")
            try:
                self.api.kill(container.id, signal=container.stop_signal)
            except NotFound:
                self.logger.debug(f"Container {container.short_id()} already gone")
                return
            except (APIError, requests.exceptions.RequestException) as e:
                raise translate_error(e, f"stop {container.name}")
            if not self.wait_for_stop_or_timeout(container, timeout):
                self.logger.debug(f"{container.name} did not stop within {timeout}s, killing")
                try:
                    self.api.kill(container.id, signal='SIGKILL')
                except NotFound:
                    return
                except (APIError, requests.exceptions.RequestException) as e:
                    raise translate_error(e, f"kill {container.name}")

        if container.auto_remove():
            self.logger.debug(f"{container.name} has AutoRemove set, skipping remove")
            return
        self.logger.debug(f"Removing container {container.short_id()}")
        try:
            self.api.remove_container(container.id, v=self.params.remove_volumes, force=True)
        except NotFound:
            self.logger.debug(f"Container {container.short_id()} already removed")
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"remove {container.name}")

    def wait_for_stop_or_timeout(self, container: Container, timeout: int) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            try:
                info = self.api.inspect_container(container.id)
            except NotFound:
                return True
            if not (info.get('State') or {}).get('Running'):
                return True
            if time.monotonic() >= deadline:
                return False
            self._tick()

    def _endpoint_kwargs(self, container: Container, details: Dict[str, Any], per_endpoint_mac: bool) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        own_ids = {container.id, container.id[:12]}
        aliases = [a for a in details.get('Aliases') or [] if a not in own_ids]
        if aliases:
            kwargs['aliases'] = aliases
        ipam = details.get('IPAMConfig') or {}
        if ipam.get('IPv4Address'):
            kwargs['ipv4_address'] = ipam['IPv4Address']
        if ipam.get('IPv6Address'):
            kwargs['ipv6_address'] = ipam['IPv6Address']
        if ipam.get('LinkLocalIPs'):
            kwargs['link_local_ips'] = ipam['LinkLocalIPs']
        links = details.get('Links')
        if links:
            kwargs['links'] = dict(link.split(':', 1) if ':' in link else (link, None) for link in links)
        if details.get('DriverOpts'):
            kwargs['driver_opt'] = details['DriverOpts']
        if per_endpoint_mac and details.get('MacAddress'):
            kwargs['mac_address'] = details['MacAddress']
        return kwargs

    def start_container(self, source: Container) -> str:
        """Create a replacement for ``source`` from its preserved config and start it."""
        self._check_cancelled()
        config = source.build_create_config()
        host_config = apply_host_config_policy(source.build_create_host_config(), self.params, self.runtime, self.logger)
        networks = source.network_settings
        modern = version_gte(self.api_version, PER_ENDPOINT_MAC_VERSION)

        if not modern:
            for details in networks.values():
                if details.get('MacAddress'):
                    config['MacAddress'] = details['MacAddress']
                    break

        names = list(networks)
        attach_all = modern or len(names) <= 1
        initial = names if attach_all else names[:1]
        endpoints = {
            name: self.api.create_endpoint_config(**self._endpoint_kwargs(source, networks[name], modern))
            for name in initial
        }

        body = dict(config)
        body['HostConfig'] = host_config
        if endpoints:
            body['NetworkingConfig'] = self.api.create_networking_config(endpoints)

        self.logger.info(f"Creating {source.name} from {source.image_name}")
        try:
            created = self.api.create_container_from_config(body, name=source.name)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"create {source.name}")
        new_id = created.get('Id') or created.get('id')
        for warning in created.get('Warnings') or []:
            self.logger.warning(f"Create {source.name}: {warning}")

        if not attach_all:
            for name in names[1:]:
                try:
                    self.api.connect_container_to_network(
                        new_id, name, **self._endpoint_kwargs(source, networks[name], False)
                    )
                except (APIError, requests.exceptions.RequestException) as e:
                    self.logger.error(f"Failed to connect {source.name} to {name}: {e}")
                    try:
                        self.api.remove_container(new_id, force=True)
                    except DockerException as cleanup_error:
                        self.logger.debug(f"Cleanup of {new_id[:12]} failed: {cleanup_error}")
                    raise translate_error(e, f"connect {source.name} to {name}")

        if not source.is_running() and not self.params.revive_stopped:
            self.logger.debug(f"{source.name} was not running, leaving new container {new_id[:12]} stopped")
            return new_id
        try:
            self.api.start(new_id)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"start {source.name}")
        return new_id

    def rename_container(self, container: Container, new_name: str):
        self.logger.debug(f"Renaming {container.name} to {new_name}")
        try:
            self.api.rename(container.id, new_name)
        except NotFound:
            raise ContainerNotFound(container.id)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"rename {container.name}")

    def execute_command(self, container: Container, command: str, timeout_minutes: int,
                        uid: int = 0, gid: int = 0, stage: str = 'lifecycle') -> bool:
        """Run ``sh -c command`` inside the container. Returns True when the update should be skipped."""
        self._check_cancelled()
        kwargs = {
            'tty': True,
            'environment': [f"WT_CONTAINER={container_metadata_json(container)}"],
        }
        user = exec_user(uid, gid)
        if user:
            kwargs['user'] = user
        try:
            exec_id = self.api.exec_create(container.id, ['sh', '-c', command], **kwargs)['Id']
            self.api.exec_start(exec_id, detach=True, tty=True)
        except NotFound:
            raise ContainerNotFound(container.id)
        except (APIError, requests.exceptions.RequestException) as e:
            raise HookCommandFailed(stage, container.name, reason=str(translate_error(e, 'exec')))

        deadline = time.monotonic() + timeout_minutes * 60 if timeout_minutes > 0 else None
        while True:
            try:
                result = self.api.exec_inspect(exec_id)
            except (APIError, requests.exceptions.RequestException) as e:
                raise HookCommandFailed(stage, container.name, reason=str(e))
            if not result.get('Running'):
                break
            if deadline is not None and time.monotonic() >= deadline:
                raise HookCommandFailed(stage, container.name, reason=f"timed out after {timeout_minutes}m")
            self._tick()

        exit_code = result.get('ExitCode')
        if exit_code == EX_TEMPFAIL:
            return True
        if exit_code:
            raise HookCommandFailed(stage, container.name, exit_code=exit_code)
        return False

    def wait_for_container_healthy(self, container_id: str, timeout: float) -> bool:
        """Block until the container is healthy.

        Returns True when a healthcheck confirmed the state and False when the
        container has no healthcheck to consult.
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                info = self.api.inspect_container(container_id)
            except NotFound:
                raise ContainerNotFound(container_id)
            except (APIError, requests.exceptions.RequestException) as e:
                raise translate_error(e, f"inspect container {container_id[:12]}")
            health = (info.get('State') or {}).get('Health')
            if not health:
                return False
            status = health.get('Status')
            if status == 'healthy':
                return True
            if status == 'unhealthy':
                raise ContainerUnhealthy(container_id)
            if time.monotonic() >= deadline:
                raise HealthcheckTimeout(container_id, timeout)
            self._tick()

    def inspect_image(self, image: str) -> Dict[str, Any]:
        try:
            return self.api.inspect_image(image)
        except NotFound:
            raise ImageNotFound(image)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"inspect image {image}")

    def pull_image(self, image_name: str, auth_config: Optional[Dict[str, str]] = None):
        """Pull and drain the progress stream; an error event or broken stream fails the pull."""
        self._check_cancelled()
        repository, tag = parse_repository_tag(image_name)
        self.logger.debug(f"Pulling {image_name}")
        try:
            for event in self.api.pull(repository, tag=tag or 'latest', stream=True, decode=True, auth_config=auth_config):
                if isinstance(event, dict) and event.get('error'):
                    message = event['error']
                    if 'unauthorized' in message.lower() or 'denied' in message.lower():
                        raise RegistryAuthError(f"pull {image_name}: {message}")
                    raise TransientError(f"pull {image_name}: {message}")
        except NotFound:
            raise ImageNotFound(image_name)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"pull {image_name}")

    def remove_image_by_id(self, image_id: str, image_name: str = ''):
        self.logger.debug(f"Removing image {image_id[:19]} ({image_name})")
        try:
            self.api.remove_image(image_id, force=True, noprune=False)
        except NotFound:
            raise ImageNotFound(image_id)
        except (APIError, requests.exceptions.RequestException) as e:
            raise translate_error(e, f"remove image {image_id[:19]}")

    def get_version(self) -> Dict[str, Any]:
        return self.api.version()

    def get_info(self) -> Dict[str, Any]:
        info = self.api.info()
        if self.registry_config is None:
            self.registry_config = info.get('RegistryConfig') or {}
        return info

import logging
from typing import Callable, Optional, Tuple

import requests

from watch_core import digest_utils
from watch_core.errors import ImageNotFound, PinnedImageError, UpdaterError
from watch_core.models import Container, UpdateParams
from watch_core.registry_utils import is_rate_limited_registry, parse_reference


class StalenessOracle:
    """Decides whether a newer image than the one a container runs is available."""

    def __init__(self, gateway, credentials, params: UpdateParams, logger,
                 registry_timeout: float = 30,
                 digest_fetcher: Optional[Callable] = None):
        self.gateway = gateway
        self.credentials = credentials
        self.params = params
        self.logger = logger
        self.registry_timeout = registry_timeout
        self.digest_fetcher = digest_fetcher or digest_utils.fetch_remote_digest

    def is_container_stale(self, container: Container) -> Tuple[bool, str]:
        """Return (stale, latest image id). Raises PinnedImageError for digest-pinned images."""
        image_name = container.image_name
        current_id = container.image_id
        if container.is_pinned():
            raise PinnedImageError(image_name)

        if container.is_no_pull(self.params):
            self.logger.debug(f"Skipping pull for {container.name} (no-pull)")
            try:
                local_id = self.gateway.inspect_image(image_name).get('Id', current_id)
            except ImageNotFound:
                return False, current_id
            return local_id != current_id, local_id

        auth_config = self.credentials.auth_config(image_name) if self.credentials else None
        if self._digest_unchanged(container, image_name, auth_config):
            self.logger.debug(f"Digest of {image_name} unchanged, no pull needed")
            return False, current_id

        self.gateway.pull_image(image_name, auth_config)
        new_id = self.gateway.inspect_image(image_name).get('Id', '')
        if new_id and new_id != current_id:
            self.logger.info(f"Found new {image_name} image ({new_id[:19]})")
            return True, new_id
        return False, current_id

    def _digest_unchanged(self, container: Container, image_name: str, auth_config) -> bool:
        if not container.has_image_info:
            return False
        try:
            remote = self.digest_fetcher(image_name, auth_config, self.registry_timeout)
        except (UpdaterError, requests.RequestException, ValueError) as e:
            self._log_head_failure(image_name, e)
            return False
        return digest_utils.digest_matches(container.image_info, remote)

    def _log_head_failure(self, image_name: str, error: Exception):
        strategy = self.params.warn_on_head_failed
        registry, _, _ = parse_reference(image_name)
        if strategy == 'always' or (strategy == 'auto' and is_rate_limited_registry(registry)):
            level = logging.WARNING
        else:
            level = logging.DEBUG
        self.logger.log(level, f"Could not do a head request for {image_name}, falling back to regular pull: {error}")

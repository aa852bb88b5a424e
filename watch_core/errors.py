class UpdaterError(Exception):
    """Base class for every error raised by the update agent."""


class ContainerNotFound(UpdaterError):
    def __init__(self, container_id: str):
        super().__init__(f"container {container_id} not found")
        self.container_id = container_id


class ImageNotFound(UpdaterError):
    def __init__(self, image: str):
        super().__init__(f"image {image} not found")
        self.image = image


class RegistryAuthError(UpdaterError):
    """Registry rejected the credentials (401/403) or no token could be obtained."""


class PinnedImageError(UpdaterError):
    def __init__(self, image_name: str):
        super().__init__(f"image {image_name} is pinned by digest and cannot be updated")
        self.image_name = image_name


class TransientError(UpdaterError):
    """Timeouts, 5xx responses and broken streams from the runtime or a registry."""


class HookCommandFailed(UpdaterError):
    def __init__(self, stage: str, container_name: str, exit_code=None, reason: str = ''):
        detail = f"exit code {exit_code}" if exit_code is not None else reason
        super().__init__(f"{stage} command failed for {container_name}: {detail}")
        self.stage = stage
        self.container_name = container_name
        self.exit_code = exit_code


class HealthcheckTimeout(UpdaterError):
    def __init__(self, container_id: str, timeout: float):
        super().__init__(f"container {container_id[:12]} not healthy after {timeout:.0f}s")
        self.container_id = container_id


class ContainerUnhealthy(UpdaterError):
    def __init__(self, container_id: str):
        super().__init__(f"container {container_id[:12]} reported unhealthy")
        self.container_id = container_id


class ConfigurationError(UpdaterError):
    """A container (or the agent configuration) cannot be used as-is."""


class SweepCancelled(UpdaterError):
    """The cancellation token was set while an operation was in flight."""

#!/usr/bin/env python3
"""
Container Updater
Watches the containers on a Docker (or Podman) host and replaces each one whose
image has a newer version in its registry, keeping the container's runtime
configuration, dependency order and lifecycle hooks intact.
"""

import os
import sys
import time
import signal
import logging
import argparse
import threading
from typing import Optional

import docker
from docker.errors import DockerException, NotFound
from dotenv import load_dotenv

from watch_core.logging_utils import JSONFormatter
from watch_core import config_utils as cu
from watch_core import filters as flt
from watch_core import metrics_utils as mu
from watch_core import notify_utils as nu
from watch_core.docker_utils import DockerGateway
from watch_core.errors import ConfigurationError, UpdaterError
from watch_core.lifecycle import LifecycleRunner
from watch_core.orchestrator import UpdateOrchestrator, check_for_multiple_instances, check_for_sanity
from watch_core.registry_utils import CredentialProvider
from watch_core.runtime_policy import detect_runtime
from watch_core.self_id import get_current_container_id
from watch_core.staleness import StalenessOracle

ENV_FILE = '/etc/container-updater/.env'
if os.path.exists(ENV_FILE):
    load_dotenv(ENV_FILE)


class ContainerUpdater:
    """Main agent: wires the gateway, staleness oracle and orchestrator together."""

    def __init__(self, config_file: str = None):
        if config_file is None:
            config_file = os.getenv('CONFIG_FILE', '/etc/container-updater/config.yml')
        self.config_file = config_file
        self.cancel = threading.Event()
        self.docker_client = None
        self.agent_id: Optional[str] = None
        self.setup_logging()
        self.load_config()
        self.init_docker_client()
        self.init_metrics()
        self.build_components()

    def setup_logging(self):
        """Configure logging with proper formatting."""
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

        log_dir = os.getenv('LOG_DIR', '/var/log/container-updater')
        log_file = os.path.join(log_dir, 'container_updater.log')

        # Ensure log directory exists and is writable; fallback if needed
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError:
            try:
                log_dir = os.path.abspath('./logs')
                os.makedirs(log_dir, exist_ok=True)
            except OSError:
                log_dir = '/tmp/container-updater'
                os.makedirs(log_dir, exist_ok=True)
            log_file = os.path.join(log_dir, 'container_updater.log')

        logging.basicConfig(
            level=getattr(logging, log_level, logging.INFO),
            handlers=[
                logging.FileHandler(log_file),
                logging.StreamHandler(sys.stdout)
            ]
        )
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        if os.getenv('LOG_FORMAT', 'plain').lower() == 'json':
            fmt = JSONFormatter()
        for h in logging.getLogger().handlers:
            h.setFormatter(fmt)
        self.logger = logging.getLogger(__name__)

    def load_config(self):
        try:
            self.config = cu.load_config(self.config_file, self.logger)
        except (ConfigurationError, OSError) as e:
            self.logger.error(f"Invalid configuration: {e}")
            sys.exit(1)
        self.params = self.config.params

    def init_docker_client(self):
        """Connect to the runtime named by DOCKER_HOST; exits when it cannot be reached."""
        version = os.getenv('DOCKER_API_VERSION') or 'auto'
        try:
            self.docker_client = docker.from_env(version=version)
            try:
                self.docker_client.ping()
            except NotFound:
                if version == 'auto':
                    raise
                self.logger.warning(f"API version {version} rejected by the daemon, negotiating instead")
                self.docker_client = docker.from_env(version='auto')
                self.docker_client.ping()
            self.logger.info(f"Docker client initialized (API {self.docker_client.api.api_version})")
        except DockerException as e:
            self.logger.error(f"Failed to initialize Docker client: {e}")
            sys.exit(1)

    def init_metrics(self):
        self.metrics = mu.init_metrics(self.logger)

    def _retry(self, func, *args, **kwargs):
        max_attempts = kwargs.pop('max_attempts', 3)
        base = kwargs.pop('base', 1.0)
        for attempt in range(1, max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if attempt == max_attempts:
                    raise
                sleep = base * (2 ** (attempt - 1)) + (0.1 * attempt)
                self.logger.warning(f"Transient error: {e}. Retrying in {sleep:.1f}s (attempt {attempt}/{max_attempts})")
                time.sleep(sleep)

    def build_components(self):
        api = self.docker_client.api
        self.gateway = DockerGateway(api, self.params, self.logger, cancel=self.cancel)
        self.gateway.runtime = detect_runtime(self.gateway.get_info, self.logger)
        self.logger.info(f"Container runtime: {self.gateway.runtime}")
        try:
            self.agent_id = get_current_container_id(lambda: self.gateway.list_containers(), self.logger)
            self.logger.info(f"Running inside container {self.agent_id[:12]}")
        except UpdaterError as e:
            self.logger.debug(f"Not running in a container ({e})")
        credentials = CredentialProvider(self.logger, retry_func=self._retry)
        oracle = StalenessOracle(self.gateway, credentials, self.params, self.logger,
                                 registry_timeout=self.config.registry_timeout)
        self.filter, description = flt.build_filter(
            self.config.containers,
            self.config.disabled_containers,
            self.config.label_enable,
            self.config.scope,
            self.config.images,
        )
        self.logger.info(f"Filter: {description}")
        self.orchestrator = UpdateOrchestrator(
            self.gateway,
            oracle,
            self.params,
            self.logger,
            metrics=self.metrics,
            lifecycle=LifecycleRunner(self.gateway, self.params, self.logger),
            agent_id=self.agent_id,
        )

    def startup_checks(self):
        candidates = self.gateway.list_containers(flt.all_of(self.filter, flt.exclude_self(self.agent_id)))
        check_for_sanity(candidates, self.params.rolling_restart, self.logger)
        check_for_multiple_instances(self.gateway, self.config.scope, self.params.cleanup, self.logger)

    def run_once(self):
        report, _ = self.orchestrator.sweep(self.filter)
        nu.notify_report(report, self.logger)
        return report

    def stop(self, *_):
        self.logger.info("Received stop signal. Shutting down...")
        self.cancel.set()

    def run(self):
        """Main execution loop."""
        self.logger.info("Container Updater starting...")
        self.logger.info(f"Check interval: {self.config.poll_interval} seconds")
        signal.signal(signal.SIGTERM, self.stop)
        try:
            self.startup_checks()
            while not self.cancel.is_set():
                self.logger.info("Checking for updates...")
                try:
                    self.run_once()
                except UpdaterError as e:
                    self.logger.error(f"Sweep failed: {e}")
                except DockerException as e:
                    self.logger.error(f"Runtime error during sweep: {e}")
                self.logger.info(f"Check complete. Sleeping for {self.config.poll_interval} seconds...")
                self.cancel.wait(self.config.poll_interval)
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal. Shutting down...")
        except ConfigurationError as e:
            self.logger.error(f"Startup check failed: {e}")
            sys.exit(1)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Container Updater')
    parser.add_argument('--config', dest='config', help='Path to a YAML or JSON config file')
    parser.add_argument('--once', action='store_true', help='Run a single update sweep and exit')
    parser.add_argument('--interval', type=int, help='Seconds between sweeps (overrides config)')
    parser.add_argument('--test', action='store_true', help='Test Docker connectivity and self detection, then exit')
    args = parser.parse_args()

    updater = ContainerUpdater(config_file=args.config)
    if args.interval:
        updater.config.poll_interval = args.interval

    if args.test:
        ok = True
        try:
            updater.docker_client.ping()
            version = updater.gateway.get_version()
            print(f"Docker connectivity: OK (server {version.get('Version', '?')}, API {version.get('ApiVersion', '?')})")
        except DockerException as e:
            print(f'Docker connectivity: FAIL - {e}')
            ok = False
        print(f'Runtime: {updater.gateway.runtime}')
        print(f'Agent container: {updater.agent_id[:12] if updater.agent_id else "not detected"}')
        sys.exit(0 if ok else 1)

    if args.once:
        try:
            report = updater.run_once()
        except (UpdaterError, DockerException) as e:
            updater.logger.error(f"Error during single sweep: {e}")
            sys.exit(1)
        sys.exit(1 if report.failed else 0)

    updater.run()


if __name__ == "__main__":
    main()

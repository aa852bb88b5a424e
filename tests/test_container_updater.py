import logging
import threading
from types import SimpleNamespace

import pytest

import container_updater
from container_updater import ContainerUpdater
from fakes import FakeApi, make_container, make_info

from watch_core.docker_utils import DockerGateway
from watch_core.metrics_utils import Metrics
from watch_core.models import AgentConfig
from watch_core.orchestrator import UpdateOrchestrator
from watch_core.session import Report


def make_updater():
    # Skip __init__ so no daemon connection or log files are needed
    u = ContainerUpdater.__new__(ContainerUpdater)
    u.logger = logging.getLogger('test')
    u.cancel = threading.Event()
    u.config = AgentConfig()
    u.params = u.config.params
    u.docker_client = SimpleNamespace(api=FakeApi())
    u.metrics = Metrics()
    u.agent_id = None
    return u


def test_build_components_wires_filter_and_orchestrator():
    u = make_updater()
    u.config.containers = ['web']
    u.build_components()
    assert isinstance(u.gateway, DockerGateway)
    assert isinstance(u.orchestrator, UpdateOrchestrator)
    assert u.filter(make_container('web'))
    assert not u.filter(make_container('db'))


def test_startup_checks_stop_old_agents(monkeypatch):
    u = make_updater()
    u.build_components()
    api = u.docker_client.api
    for name, created in (('agent-a', '2024-01-01T00:00:00Z'), ('agent-b', '2024-02-01T00:00:00Z')):
        info = make_info(name, labels={'com.centurylinklabs.watchtower': 'true'})
        info['Created'] = created
        api.containers_info[info['Id']] = info
    u.startup_checks()
    killed = [call[1] for call in api.calls if call[0] == 'kill']
    assert len(killed) == 1


def test_run_once_sends_report(monkeypatch):
    u = make_updater()
    report = Report()
    u.filter = None
    u.orchestrator = SimpleNamespace(sweep=lambda candidate_filter: (report, set()))
    sent = []
    monkeypatch.setattr(container_updater.nu, 'notify_report', lambda r, logger: sent.append(r))
    assert u.run_once() is report
    assert sent == [report]


def test_run_loop_stops_when_cancelled(monkeypatch):
    u = make_updater()
    u.config.poll_interval = 0
    monkeypatch.setattr(container_updater.signal, 'signal', lambda *args: None)
    sweeps = []
    u.startup_checks = lambda: None

    def run_once():
        sweeps.append(1)
        u.stop()

    u.run_once = run_once
    u.run()
    assert sweeps == [1]
    assert u.cancel.is_set()


def test_load_config_exits_on_invalid_file(tmp_path):
    u = make_updater()
    path = tmp_path / 'config.yml'
    path.write_text('cleanup: maybe\n')
    u.config_file = str(path)
    with pytest.raises(SystemExit):
        u.load_config()


def test_retry_backs_off_then_succeeds(monkeypatch):
    u = make_updater()
    monkeypatch.setattr(container_updater.time, 'sleep', lambda s: None)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError('throttled')
        return 'ok'

    assert u._retry(flaky) == 'ok'
    assert len(attempts) == 3

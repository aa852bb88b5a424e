import json
import logging

import pytest
import requests

from watch_core import config_utils as cu
from watch_core import notify_utils as nu
from watch_core.errors import ConfigurationError
from watch_core.logging_utils import JSONFormatter
from watch_core.metrics_utils import Metrics, init_metrics
from watch_core.models import UpdateParams
from watch_core.session import Progress, Report

from fakes import make_container


def test_parse_duration():
    assert cu.parse_duration(30) == 30
    assert cu.parse_duration('45') == 45
    assert cu.parse_duration('5m') == 300
    assert cu.parse_duration('2h') == 7200
    with pytest.raises(ConfigurationError):
        cu.parse_duration('soon')


def test_load_config_defaults_without_file(tmp_path):
    config = cu.load_config(str(tmp_path / 'missing.yml'), logging.getLogger('test'), environ={})
    assert config.poll_interval == 86400
    assert config.params == UpdateParams()
    assert config.containers == []


def test_load_config_from_yaml_with_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv('APP_SCOPE', 'prod')
    path = tmp_path / 'config.yml'
    path.write_text(
        'cleanup: true\n'
        'rolling_restart: true\n'
        'stop_timeout: 1m\n'
        'scope: ${APP_SCOPE}\n'
        'containers:\n'
        '  - web\n'
        '  - db\n'
    )
    config = cu.load_config(str(path), logging.getLogger('test'), environ={})
    assert config.params.cleanup is True
    assert config.params.rolling_restart is True
    assert config.params.stop_timeout == 60
    assert config.scope == 'prod'
    assert config.containers == ['web', 'db']


def test_environment_overrides_file(tmp_path):
    path = tmp_path / 'config.yml'
    path.write_text('cleanup: false\npoll_interval: 60\n')
    environ = {
        'WATCHTOWER_CLEANUP': 'true',
        'WATCHTOWER_POLL_INTERVAL': '10m',
        'WATCHTOWER_LIFECYCLE_UID': '1000',
        'WATCHTOWER_DISABLE_CONTAINERS': 'a, b c',
        'WATCHTOWER_CPU_COPY_MODE': 'none',
        'WATCHTOWER_SCOPE': '',
    }
    config = cu.load_config(str(path), logging.getLogger('test'), environ=environ)
    assert config.params.cleanup is True
    assert config.poll_interval == 600
    assert config.params.lifecycle_uid == 1000
    assert config.params.cpu_copy_mode == 'none'
    assert config.disabled_containers == ['a', 'b', 'c']
    assert config.scope is None


def test_invalid_values_raise_configuration_error(tmp_path):
    logger = logging.getLogger('test')
    with pytest.raises(ConfigurationError):
        cu.load_config(None, logger, environ={'WATCHTOWER_CLEANUP': 'sometimes'})
    with pytest.raises(ConfigurationError):
        cu.load_config(None, logger, environ={'WATCHTOWER_CPU_COPY_MODE': 'half'})
    path = tmp_path / 'config.yml'
    path.write_text('unknown_key: 1\n')
    with pytest.raises(ConfigurationError):
        cu.load_config(str(path), logger, environ={})
    path.write_text('- a\n- b\n')
    with pytest.raises(ConfigurationError):
        cu.load_config(str(path), logger, environ={})


def test_update_params_validation():
    with pytest.raises(ConfigurationError):
        UpdateParams(warn_on_head_failed='sometimes')


def test_json_formatter():
    record = logging.LogRecord('test', logging.INFO, __file__, 1, 'hello %s', ('world',), None)
    payload = json.loads(JSONFormatter().format(record))
    assert payload['msg'] == 'hello world'
    assert payload['level'] == 'INFO'
    assert payload['logger'] == 'test'
    assert payload['ts'].endswith('Z')


def report_with(updated=False):
    progress = Progress()
    c = make_container('web')
    progress.add_scanned(c, 'sha256:new')
    if updated:
        progress.mark_for_update(c.id)
    return progress.report()


def test_progress_report_buckets():
    progress = Progress()
    fresh = make_container('fresh')
    stale = make_container('stale')
    failed = make_container('failed')
    skipped = make_container('skipped')
    progress.add_scanned(fresh, fresh.image_id)
    progress.add_scanned(stale, 'sha256:new')
    progress.add_scanned(failed, 'sha256:new')
    progress.mark_failed(failed.id, RuntimeError('boom'))
    progress.add_skipped(skipped, RuntimeError('registry down'))
    report = progress.report()
    assert [s.name for s in report.fresh] == ['fresh']
    assert [s.name for s in report.stale] == ['stale']
    assert [s.name for s in report.failed] == ['failed']
    assert [s.name for s in report.skipped] == ['skipped']
    assert len(report.scanned) == 3
    assert report.as_dict()['failed'][0]['error'] == 'boom'


def test_notify_report_only_when_something_happened(monkeypatch):
    posted = []
    monkeypatch.setenv('WEBHOOK_URL', 'http://hooks.local/x')
    monkeypatch.setattr(requests, 'post', lambda url, **kw: posted.append((url, json.loads(kw['data']))))
    logger = logging.getLogger('test')
    nu.notify_report(report_with(updated=False), logger)
    assert posted == []
    nu.notify_report(report_with(updated=True), logger)
    assert posted[0][0] == 'http://hooks.local/x'
    assert posted[0][1]['event'] == 'sweep'
    assert posted[0][1]['updated'][0]['name'] == 'web'


def test_notify_failure_is_logged(monkeypatch, caplog):
    def boom(url, **kw):
        raise requests.ConnectionError('down')

    monkeypatch.setenv('WEBHOOK_URL', 'http://hooks.local/x')
    monkeypatch.setattr(requests, 'post', boom)
    with caplog.at_level(logging.WARNING, logger='test'):
        nu.notify_event('sweep', {}, logging.getLogger('test'))
    assert any('Webhook notify failed' in r.getMessage() for r in caplog.records)


def test_metrics_disabled_records_nothing():
    metrics = Metrics()
    metrics.record_report(report_with(updated=True))
    metrics.unverified_restart()
    assert metrics.registry.get_sample_value('updater_updated_total') == 0.0
    assert metrics.registry.get_sample_value('updater_unverified_restarts_total') == 0.0


def test_metrics_record_report():
    metrics = Metrics(enabled=True)
    metrics.record_report(report_with(updated=True))
    assert metrics.registry.get_sample_value('updater_scanned_total') == 1.0
    assert metrics.registry.get_sample_value('updater_sweeps_total') == 1.0
    assert metrics.registry.get_sample_value('updater_last_sweep_timestamp_seconds') > 0


def test_init_metrics_without_port(monkeypatch):
    monkeypatch.delenv('METRICS_PORT', raising=False)
    assert init_metrics(logging.getLogger('test')).enabled is False


def test_report_defaults_empty():
    assert Report().as_dict()['updated'] == []

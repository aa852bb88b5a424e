import logging

import pytest

from fakes import FakeGateway, image_id, make_container, make_image

from watch_core import labels as lb
from watch_core.errors import PinnedImageError, TransientError
from watch_core.models import UpdateParams
from watch_core.staleness import StalenessOracle

DIGEST = 'sha256:' + 'd' * 64


class RecordingCredentials:
    def __init__(self):
        self.requested = []

    def auth_config(self, image_name):
        self.requested.append(image_name)
        return {'username': 'u', 'password': 'p'}


def make_oracle(gateway, params=None, fetcher=None):
    return StalenessOracle(
        gateway, RecordingCredentials(), params or UpdateParams(), logging.getLogger('test'),
        digest_fetcher=fetcher or (lambda name, auth, timeout: DIGEST),
    )


def test_pinned_image_raises():
    c = make_container('web', image='sha256:' + 'a' * 64)
    with pytest.raises(PinnedImageError):
        make_oracle(FakeGateway()).is_container_stale(c)


def test_matching_digest_skips_pull():
    c = make_container('web', image='repo/app:latest')
    c.image_info = make_image(c.image_id, digest=DIGEST)
    gw = FakeGateway(images={'repo/app:latest': image_id('new')})
    stale, newest = make_oracle(gw).is_container_stale(c)
    assert (stale, newest) == (False, c.image_id)
    assert gw.names('pull') == []


def test_changed_digest_pulls_and_compares_ids():
    c = make_container('web', image='repo/app:latest')
    c.image_info = make_image(c.image_id, digest='sha256:' + 'e' * 64)
    gw = FakeGateway(images={'repo/app:latest': image_id('new')})
    stale, newest = make_oracle(gw).is_container_stale(c)
    assert stale is True
    assert newest == image_id('new')
    assert gw.names('pull') == ['repo/app:latest']


def test_pull_of_same_image_is_not_stale():
    c = make_container('web', image='repo/app:latest')
    gw = FakeGateway(images={'repo/app:latest': c.image_id})
    assert make_oracle(gw).is_container_stale(c) == (False, c.image_id)


def test_head_failure_falls_back_to_pull(caplog):
    def failing(name, auth, timeout):
        raise TransientError('registry down')

    c = make_container('web', image='nginx:latest')
    gw = FakeGateway(images={'nginx:latest': image_id('new')})
    with caplog.at_level(logging.DEBUG, logger='test'):
        stale, _ = make_oracle(gw, fetcher=failing).is_container_stale(c)
    assert stale is True
    assert gw.names('pull') == ['nginx:latest']
    # docker hub is rate limited, so auto mode warns
    assert any(r.levelno == logging.WARNING and 'head request' in r.getMessage() for r in caplog.records)


def test_head_failure_on_private_registry_logs_debug(caplog):
    def failing(name, auth, timeout):
        raise TransientError('registry down')

    c = make_container('web', image='registry.example.com/app:1')
    gw = FakeGateway(images={'registry.example.com/app:1': c.image_id})
    with caplog.at_level(logging.DEBUG, logger='test'):
        make_oracle(gw, fetcher=failing).is_container_stale(c)
    assert not any(r.levelno >= logging.WARNING for r in caplog.records)


def test_no_pull_label_only_inspects_locally():
    c = make_container('web', image='repo/app:latest', labels={lb.NO_PULL_LABEL: 'true'})
    gw = FakeGateway(images={'repo/app:latest': image_id('local')})
    stale, newest = make_oracle(gw).is_container_stale(c)
    assert stale is True and newest == image_id('local')
    assert gw.names('pull') == []


def test_no_pull_without_local_image():
    c = make_container('web', image='repo/app:latest')
    gw = FakeGateway()
    stale, newest = make_oracle(gw, UpdateParams(no_pull=True)).is_container_stale(c)
    assert (stale, newest) == (False, c.image_id)

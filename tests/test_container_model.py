import pytest

from fakes import make_container, make_image, make_info

from watch_core import labels as lb
from watch_core.errors import ConfigurationError
from watch_core.models import Container, LifecycleStage, UpdateParams


def test_container_requires_id():
    with pytest.raises(ConfigurationError):
        Container({'Name': '/x'})


def test_image_name_defaults_and_zodiac_label():
    assert make_container('a', image='nginx').image_name == 'nginx:latest'
    assert make_container('b', image='nginx:1.25').image_name == 'nginx:1.25'
    c = make_container('c', image='sha256:abc', labels={lb.ZODIAC_LABEL: 'repo/app:2'})
    assert c.image_name == 'repo/app:2'
    info = make_info('d')
    info['Config']['Image'] = ''
    assert Container(info).image_name == 'unknown:latest'


def test_is_pinned():
    assert make_container('a', image='sha256:' + 'a' * 64).is_pinned()
    assert not make_container('b', image='repo/app@sha256:' + 'a' * 64).is_pinned()


def test_name_and_stop_signal():
    c = make_container('web', labels={lb.SIGNAL_LABEL: 'SIGHUP'})
    assert c.name == 'web'
    assert c.stop_signal == 'SIGHUP'
    assert make_container('db').stop_signal == 'SIGTERM'


def test_monitor_only_and_no_pull_use_params():
    c = make_container('web', labels={lb.MONITOR_ONLY_LABEL: 'true'})
    assert c.is_monitor_only(UpdateParams())
    assert not c.is_no_pull(UpdateParams())
    assert c.is_no_pull(UpdateParams(no_pull=True))


def test_hook_timeout_and_command():
    c = make_container('web', labels={
        lb.PRE_UPDATE_LABEL: ' /stop.sh ',
        lb.PRE_UPDATE_TIMEOUT_LABEL: '3',
    })
    assert c.lifecycle_command(LifecycleStage.PRE_UPDATE) == '/stop.sh'
    assert c.hook_timeout(LifecycleStage.PRE_UPDATE) == 3
    assert c.hook_timeout(LifecycleStage.POST_UPDATE) == 1
    assert c.lifecycle_command(LifecycleStage.PRE_CHECK) == ''


def test_links_prefer_depends_on_label():
    c = make_container('web', labels={
        lb.DEPENDS_ON_LABEL: 'db,cache',
        lb.COMPOSE_DEPENDS_ON_LABEL: 'other:service_started',
    }, host_config={'Links': ['/legacy:/web/legacy']})
    assert c.links() == ['/db', '/cache']


def test_links_from_compose_label_drop_self():
    c = make_container('shop-web-1', labels={
        lb.COMPOSE_SERVICE_LABEL: 'web',
        lb.COMPOSE_PROJECT_LABEL: 'shop',
        lb.COMPOSE_DEPENDS_ON_LABEL: 'db:service_healthy:true,web:service_started',
    })
    assert c.links() == ['/db']


def test_links_from_host_config_and_network_mode():
    c = make_container('web', host_config={
        'Links': ['/db:/web/db', 'broken'],
        'NetworkMode': 'container:vpn',
    })
    assert c.links() == ['/db', '/vpn']


def test_verify_configuration_adds_exposed_ports():
    info = make_info('web', host_config={'PortBindings': {'80/tcp': [{'HostPort': '8080'}]}})
    c = Container(info, make_image(info['Image']))
    c.verify_configuration()
    assert c.config['ExposedPorts'] == {}


def test_verify_configuration_requires_image_info():
    with pytest.raises(ConfigurationError):
        Container(make_info('web'), None).verify_configuration()


def test_create_config_removes_image_defaults():
    image_config = {
        'WorkingDir': '/app',
        'User': 'app',
        'Entrypoint': ['/entry'],
        'Cmd': ['serve'],
        'Env': ['PATH=/usr/bin', 'LANG=C'],
        'Labels': {'maintainer': 'x', 'version': '1'},
        'Volumes': {'/data': {}},
        'ExposedPorts': {'80/tcp': {}},
    }
    info = make_info('web', image='repo/app', env=['PATH=/usr/bin', 'MODE=prod'],
                     labels={'maintainer': 'x', 'version': '2', 'team': 'a'},
                     host_config={'PortBindings': {'443/tcp': [{'HostPort': '443'}]}})
    info['Config'].update({
        'WorkingDir': '/app',
        'User': 'root',
        'Entrypoint': ['/entry'],
        'Cmd': ['serve'],
        'Volumes': {'/data': {}, '/logs': {}},
        'ExposedPorts': {'80/tcp': {}, '8080/tcp': {}},
    })
    c = Container(info, make_image(info['Image'], config=image_config))
    config = c.build_create_config()

    assert config['WorkingDir'] == ''
    assert config['User'] == 'root'
    assert config['Entrypoint'] is None and config['Cmd'] is None
    assert config['Env'] == ['MODE=prod']
    assert config['Labels'] == {'version': '2', 'team': 'a'}
    assert config['Volumes'] == {'/logs': {}}
    assert config['ExposedPorts'] == {'8080/tcp': {}, '443/tcp': {}}
    assert config['Image'] == 'repo/app:latest'
    # the source payload is left untouched
    assert c.config['Env'] == ['PATH=/usr/bin', 'MODE=prod']


def test_create_config_keeps_cmd_when_entrypoint_differs():
    info = make_info('web')
    info['Config'].update({'Entrypoint': ['/custom'], 'Cmd': ['serve']})
    c = Container(info, make_image(info['Image'], config={'Entrypoint': ['/entry'], 'Cmd': ['serve']}))
    config = c.build_create_config()
    assert config['Entrypoint'] == ['/custom']
    assert config['Cmd'] == ['serve']


def test_create_config_clears_hostname_for_shared_network():
    c = make_container('web', host_config={'NetworkMode': 'container:vpn'})
    assert c.build_create_config()['Hostname'] == ''


def test_create_config_healthcheck_diff():
    hc = {'Test': ['CMD', 'true'], 'Interval': 10, 'Retries': 3}
    info = make_info('web', healthcheck=dict(hc))
    c = Container(info, make_image(info['Image'], config={'Healthcheck': dict(hc)}))
    assert c.build_create_config()['Healthcheck'] is None

    info = make_info('api', healthcheck={'Test': ['CMD', 'curl'], 'Interval': 10})
    c = Container(info, make_image(info['Image'], config={'Healthcheck': {'Test': ['CMD', 'true'], 'Interval': 10}}))
    assert c.build_create_config()['Healthcheck'] == {'Test': ['CMD', 'curl']}


def test_create_config_without_image_info_keeps_everything():
    info = make_info('web', env=['A=1'])
    config = Container(info, None).build_create_config()
    assert config['Env'] == ['A=1']
    assert config['Image'] == 'repo/app:latest'


def test_create_host_config_rewrites_links():
    c = make_container('web', host_config={'Links': ['/db:/web/db', '/cache:cache']})
    host_config = c.build_create_host_config()
    assert host_config['Links'] == ['/db:/web/db', '/cache:/cache']
    assert c.host_config['Links'] == ['/db:/web/db', '/cache:cache']

import logging

from fakes import make_container

from watch_core import dependency_utils as du
from watch_core import labels as lb


def chain():
    db = make_container('db')
    api = make_container('api', labels={lb.DEPENDS_ON_LABEL: 'db'})
    web = make_container('web', labels={lb.DEPENDS_ON_LABEL: 'api'})
    return db, api, web


def test_restart_set_follows_dependents():
    db, api, web = chain()
    other = make_container('other')
    db.mark_stale()
    restart = du.mark_linked_to_restarting([web, other, api, db], logging.getLogger('test'))
    assert {c.name for c in restart} == {'db', 'api', 'web'}
    assert api.linked_to_restarting and web.linked_to_restarting
    assert not db.linked_to_restarting
    assert not other.to_restart


def test_stale_leaf_does_not_restart_dependencies():
    db, api, web = chain()
    web.mark_stale()
    restart = du.mark_linked_to_restarting([db, api, web], logging.getLogger('test'))
    assert [c.name for c in restart] == ['web']


def test_sort_puts_dependencies_first():
    db, api, web = chain()
    ordered = du.sort_by_dependencies([web, api, db], logging.getLogger('test'))
    assert [c.name for c in ordered] == ['db', 'api', 'web']


def test_sort_puts_agent_last():
    agent = make_container('agent', labels={lb.WATCHTOWER_LABEL: 'true'})
    db, api, web = chain()
    ordered = du.sort_by_dependencies([agent, web, db, api], logging.getLogger('test'))
    assert ordered[-1] is agent
    assert [c.name for c in ordered[:-1]] == ['db', 'api', 'web']


def test_compose_identities_resolve_links():
    db = make_container('shop-db-1', labels={
        lb.COMPOSE_SERVICE_LABEL: 'db',
        lb.COMPOSE_PROJECT_LABEL: 'shop',
        lb.COMPOSE_NUMBER_LABEL: '1',
    })
    web = make_container('shop-web-1', labels={lb.COMPOSE_DEPENDS_ON_LABEL: 'db:service_started'})
    graph = du.build_graph([web, db])
    assert graph[web.id] == [db]


def test_unresolved_links_are_ignored():
    web = make_container('web', labels={lb.DEPENDS_ON_LABEL: 'missing'})
    assert du.build_graph([web]) == {web.id: []}


def test_cycle_is_broken_with_warning(caplog):
    a = make_container('a', labels={lb.DEPENDS_ON_LABEL: 'b'})
    b = make_container('b', labels={lb.DEPENDS_ON_LABEL: 'a'})
    with caplog.at_level(logging.WARNING, logger='test'):
        ordered = du.sort_by_dependencies([a, b], logging.getLogger('test'))
    assert sorted(c.name for c in ordered) == ['a', 'b']
    assert any('Circular dependency' in r.getMessage() for r in caplog.records)

    a.mark_stale()
    restart = du.mark_linked_to_restarting([a, b], logging.getLogger('test'))
    assert {c.name for c in restart} == {'a', 'b'}

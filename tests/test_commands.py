from models import db, User, Task
from tests.conftest import register


def test_init_db(runner):
    result = runner.invoke(args=['init-db'])
    assert result.exit_code == 0
    assert 'Database initialized.' in result.output


def test_init_db_drop_clears_data(runner, client, app):
    register(client)

    result = runner.invoke(args=['init-db', '--drop'])

    assert result.exit_code == 0
    assert 'Dropped all tables.' in result.output
    with app.app_context():
        assert User.query.count() == 0


def test_show_db_lists_users_and_tasks(runner, client):
    register(client)
    client.post('/tasks', data={'title': 'Buy milk'})

    result = runner.invoke(args=['show-db'])

    assert result.exit_code == 0
    assert '共 1 筆' in result.output
    assert 'a@x.com' in result.output
    assert 'Title: Buy milk, Status: open' in result.output


def test_show_db_empty(runner, app):
    with app.app_context():
        assert db.session.query(Task).count() == 0

    result = runner.invoke(args=['show-db'])
    assert result.exit_code == 0
    assert '【使用者】共 0 筆' in result.output

import click
from models import db, User, Task


def register_commands(app):
    """註冊 flask CLI 指令"""

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop all tables first.')
    def init_db(drop):
        """建立資料表"""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')
        db.create_all()
        click.echo('Database initialized.')

    @app.cli.command('show-db')
    def show_db():
        """印出資料庫內容 (開發用)"""
        click.echo('=' * 60)
        click.echo('資料庫內容')
        click.echo('=' * 60)

        # 使用者
        users = User.query.order_by(User.id).all()
        click.echo(f'\n【使用者】共 {len(users)} 筆:')
        for u in users:
            click.echo(f'  ID: {u.id}, Email: {u.email}, Name: {u.name}')

        # 任務
        tasks = Task.query.order_by(Task.user_id, Task.created_at, Task.id).all()
        click.echo(f'\n【任務】共 {len(tasks)} 筆:')
        for t in tasks:
            status = 'done' if t.completed else 'open'
            click.echo(f'  ID: {t.id}, Title: {t.title}, Status: {status}, Owner: {t.owner.email}')

        click.echo('\n' + '=' * 60)

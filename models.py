from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy import event
from sqlalchemy.engine import Engine
from datetime import datetime
import sqlite3

db = SQLAlchemy()


@event.listens_for(Engine, 'connect')
def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite 預設不檢查 foreign key,每條連線都要打開 (CASCADE 才會生效)"""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


# ============================================
# 1. User 模型
# ============================================
class User(db.Model, UserMixin):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    # email 唯一性交給資料庫保證,不靠應用層先查再寫
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)

    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # 關聯
    tasks = db.relationship(
        'Task',
        backref='owner',
        lazy=True,
        cascade='all,delete-orphan',
        passive_deletes=True,
        order_by='Task.created_at'
    )

    def __repr__(self):
        return f'<User {self.id} {self.email}>'


# ============================================
# 2. Task 模型
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    completed = db.Column(db.Boolean, nullable=False, default=False)

    # 擁有者
    user_id = db.Column(
        db.Integer,
        db.ForeignKey('users.id', ondelete='CASCADE'),
        nullable=False
    )

    # 時間欄位
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # 索引
    __table_args__ = (
        db.Index('idx_task_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f'<Task {self.id} owner={self.user_id}>'

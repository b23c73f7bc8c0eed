from flask import Blueprint, request, render_template, redirect, url_for, flash
from flask_login import current_user
from marshmallow import fields, validate
from datetime import datetime
import logging

from models import db, Task
from auth import StrippedSchema, validate_request_data
from errors import ValidationError, UnauthenticatedError, ForbiddenError, NotFoundError

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(StrippedSchema):
    """建立任務驗證"""
    title = fields.String(
        required=True,
        validate=validate.Length(min=1, max=255, error='Task title is required (max 255 characters)'),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.String(allow_none=True, validate=validate.Length(max=5000))


class UpdateTaskSchema(StrippedSchema):
    """更新任務驗證 (只更新有傳的欄位)"""
    title = fields.String(
        validate=validate.Length(min=1, max=255, error='Task title is required (max 255 characters)')
    )
    description = fields.String(allow_none=True, validate=validate.Length(max=5000))
    completed = fields.Boolean()


# ============================================
# 權限檢查 (所有跟單一任務有關的操作都要經過這裡)
# ============================================

def require_user(user):
    """確認有登入的使用者,沒有就丟 UnauthenticatedError"""
    if user is None or not getattr(user, 'is_authenticated', False):
        raise UnauthenticatedError()
    return user


def authorize_task(user, task_id):
    """
    取得任務並確認是 user 的

    不存在跟不是自己的分成兩種錯誤,但對外都顯示成同一個拒絕頁面

    Raises:
        UnauthenticatedError: 沒有登入
        NotFoundError: 任務不存在
        ForbiddenError: 任務屬於別人
    """
    require_user(user)

    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError()

    if task.user_id != user.id:
        logger.warning(f"User {user.id} denied access to task {task_id} owned by {task.user_id}")
        raise ForbiddenError()

    return task


def session_user():
    """目前 request 的使用者 (沒登入時回傳 None)"""
    return current_user if current_user.is_authenticated else None


def clean_description(result):
    # 空字串存成 NULL
    if 'description' in result and not result['description']:
        result['description'] = None
    return result


# ============================================
# Task Operations
# ============================================

def list_tasks(user):
    """使用者自己的任務,依建立順序"""
    require_user(user)
    return Task.query.filter_by(user_id=user.id).order_by(
        Task.created_at.asc(),
        Task.id.asc()
    ).all()


def create_task(user, data):
    require_user(user)
    result = clean_description(validate_request_data(CreateTaskSchema, data))

    task = Task(
        title=result['title'],
        description=result.get('description'),
        completed=False,
        user_id=user.id
    )

    try:
        db.session.add(task)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Task created: {task.id} by user {user.id}")
    return task


def get_task(user, task_id):
    return authorize_task(user, task_id)


def update_task(user, task_id, data):
    """
    更新任務

    只有擁有者能改,更新後一定刷新 updated_at
    """
    task = authorize_task(user, task_id)
    result = clean_description(validate_request_data(UpdateTaskSchema, data))

    for field in ['title', 'description', 'completed']:
        if field in result:
            setattr(task, field, result[field])
    task.updated_at = datetime.utcnow()

    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Task {task_id} updated by user {user.id}")
    return task


def delete_task(user, task_id):
    task = authorize_task(user, task_id)

    try:
        db.session.delete(task)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Task {task_id} deleted by user {user.id}")


# ============================================
# Routes
# ============================================

@tasks_bp.route('/tasks', methods=['GET'])
def index():
    tasks = list_tasks(session_user())
    return render_template('tasks/index.html', tasks=tasks)


@tasks_bp.route('/tasks/create', methods=['GET'])
def create_form():
    require_user(session_user())
    return render_template('tasks/create.html', errors={}, form={})


@tasks_bp.route('/tasks', methods=['POST'])
def store():
    user = session_user()
    form = request.form.to_dict()

    try:
        create_task(user, form)
    except ValidationError as err:
        return render_template('tasks/create.html', errors=err.messages, form=form), 400

    flash('Task created.', 'success')
    return redirect(url_for('tasks.index'))


@tasks_bp.route('/tasks/<int:task_id>/edit', methods=['GET'])
def edit(task_id):
    task = get_task(session_user(), task_id)
    form = {
        'title': task.title,
        'description': task.description or '',
        'completed': task.completed
    }
    return render_template('tasks/edit.html', task=task, errors={}, form=form)


@tasks_bp.route('/tasks/<int:task_id>', methods=['PUT'])
def update(task_id):
    """
    更新任務

    HTML checkbox 沒勾就不會送出,所以 completed 看欄位有沒有出現
    """
    user = session_user()
    form = request.form.to_dict()
    form['completed'] = 'completed' in request.form

    try:
        update_task(user, task_id, form)
    except ValidationError as err:
        task = authorize_task(user, task_id)
        return render_template('tasks/edit.html', task=task, errors=err.messages, form=form), 400

    flash('Task updated.', 'success')
    return redirect(url_for('tasks.index'), code=303)


@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
def destroy(task_id):
    delete_task(session_user(), task_id)
    flash('Task deleted.', 'success')
    return redirect(url_for('tasks.index'), code=303)

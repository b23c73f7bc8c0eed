from flask import Blueprint, request, render_template, redirect, url_for, flash, session, current_app
from flask_login import login_user, logout_user, current_user
from marshmallow import Schema, fields, validate, validates_schema, pre_load, EXCLUDE
from marshmallow import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError
from urllib.parse import urlparse, urljoin
from datetime import datetime
import logging

from models import db, User
from errors import ValidationError, AuthenticationError
from extensions import bcrypt, limiter, login_manager

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class StrippedSchema(Schema):
    """表單欄位先去頭尾空白,多出來的欄位 (csrf_token 等) 直接忽略"""

    class Meta:
        unknown = EXCLUDE

    @pre_load
    def strip_strings(self, data, **kwargs):
        return {
            key: value.strip() if isinstance(value, str) and not key.startswith('password') else value
            for key, value in data.items()
        }


class RegisterSchema(StrippedSchema):
    """註冊輸入驗證"""
    name = fields.String(
        required=True,
        validate=validate.Length(min=1, max=255, error='Name is required (max 255 characters)'),
        error_messages={'required': 'Name is required'}
    )
    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
        error_messages={
            'required': 'Email is required',
            'invalid': 'Invalid email format'
        }
    )
    password = fields.String(
        required=True,
        error_messages={'required': 'Password is required'}
    )
    password_confirmation = fields.String(
        required=True,
        error_messages={'required': 'Password confirmation is required'}
    )

    @validates_schema(skip_on_field_errors=False)
    def check_password(self, data, **kwargs):
        if 'password' not in data:
            return

        password = data['password']
        min_length = current_app.config['PASSWORD_MIN_LENGTH']
        max_length = current_app.config['PASSWORD_MAX_LENGTH']

        if not password:
            raise SchemaValidationError('Password is required', 'password')
        if len(password) < min_length or len(password) > max_length:
            raise SchemaValidationError(
                f'Password must be {min_length}-{max_length} characters', 'password'
            )
        if password != data.get('password_confirmation'):
            raise SchemaValidationError('Passwords do not match', 'password_confirmation')


class LoginSchema(StrippedSchema):
    """登入輸入驗證 (格式不檢查,錯了一律當成帳密錯誤)"""
    email = fields.String(
        required=True,
        validate=validate.Length(min=1, error='Email is required'),
        error_messages={'required': 'Email is required'}
    )
    password = fields.String(
        required=True,
        validate=validate.Length(min=1, error='Password is required'),
        error_messages={'required': 'Password is required'}
    )


# ============================================
# Helper Functions
# ============================================

def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    驗證失敗時丟出 ValidationError,帶欄位層級訊息
    """
    schema = schema_class()
    try:
        return schema.load(data)
    except SchemaValidationError as err:
        raise ValidationError(err.messages)


def normalize_email(email):
    return email.strip().lower()


def is_safe_url(target):
    """只允許 redirect 到同一個 host"""
    if not target:
        return False
    ref_url = urlparse(request.host_url)
    test_url = urlparse(urljoin(request.host_url, target))
    return test_url.scheme in ('http', 'https') and ref_url.netloc == test_url.netloc


@login_manager.user_loader
def load_user(user_id):
    """Flask-Login 用 session 裡的 id 取回使用者"""
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None


# ============================================
# Identity Operations
# ============================================

def register_user(data):
    """
    建立新使用者

    Returns:
        User: 新建立的使用者

    Raises:
        ValidationError: 欄位錯誤或 email 已被使用
    """
    result = validate_request_data(RegisterSchema, data)
    email = normalize_email(result['email'])

    user = User(
        name=result['name'],
        email=email,
        password_hash=bcrypt.generate_password_hash(result['password']).decode('utf-8')
    )

    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        # unique constraint 擋下重複的 email (併發註冊也一樣)
        db.session.rollback()
        logger.info(f"Registration rejected, email already taken: {email}")
        raise ValidationError({'email': ['Email already exists']})

    logger.info(f"New user registered: {user.email}")
    return user


def authenticate(email, password):
    """
    驗證帳號密碼

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊

    Raises:
        ValidationError: 欄位空白
        AuthenticationError: 帳密錯誤
    """
    result = validate_request_data(LoginSchema, {'email': email or '', 'password': password or ''})
    email = normalize_email(result['email'])

    user = User.query.filter_by(email=email).first()
    if not user or not bcrypt.check_password_hash(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {email}")
        raise AuthenticationError()

    return user


def start_session(user, remember=False):
    """把 session 綁到使用者 (先清掉舊 session 避免 session fixation)"""
    session.clear()
    login_user(user, remember=remember)

    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 這個錯誤不影響登入,只記錄就好
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")


def end_session():
    """登出,沒有 session 時什麼都不做"""
    user_id = current_user.get_id() if current_user.is_authenticated else None
    # 先清 session,logout_user 才能留下清除 remember cookie 的標記
    session.clear()
    logout_user()
    if user_id:
        logger.info(f"User logged out: {user_id}")


# ============================================
# 註冊
# ============================================

@auth_bp.route('/register', methods=['GET'])
def register_form():
    if current_user.is_authenticated:
        return redirect(url_for('tasks.index'))
    return render_template('auth/register.html', errors={}, form={})


@auth_bp.route('/register', methods=['POST'])
@limiter.limit(lambda: current_app.config['REGISTER_RATE_LIMIT'])
def register():
    """使用者註冊,成功後直接登入"""
    form = request.form.to_dict()

    try:
        user = register_user(form)
    except ValidationError as err:
        form.pop('password', None)
        form.pop('password_confirmation', None)
        return render_template('auth/register.html', errors=err.messages, form=form), 400

    start_session(user)
    flash(f'Welcome, {user.name}!', 'success')
    return redirect(url_for('tasks.index'))


# ============================================
# 登入
# ============================================

@auth_bp.route('/login', methods=['GET'])
def login_form():
    if current_user.is_authenticated:
        return redirect(url_for('tasks.index'))
    return render_template(
        'auth/login.html',
        errors={},
        form={},
        next=request.args.get('next', '')
    )


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(lambda: current_app.config['LOGIN_RATE_LIMIT'])
def login():
    """使用者登入"""
    form = request.form.to_dict()
    next_url = form.get('next') or request.args.get('next', '')
    view = {'email': form.get('email', '')}

    try:
        user = authenticate(form.get('email'), form.get('password'))
    except ValidationError as err:
        return render_template('auth/login.html', errors=err.messages, form=view, next=next_url), 400
    except AuthenticationError as err:
        return render_template(
            'auth/login.html',
            errors={'credentials': [err.message]},
            form=view,
            next=next_url
        ), 401

    start_session(user, remember='remember' in form)
    logger.info(f"User logged in: {user.email}")

    if is_safe_url(next_url):
        return redirect(next_url)
    return redirect(url_for('tasks.index'))


# ============================================
# 登出
# ============================================

@auth_bp.route('/logout', methods=['POST'])
def logout():
    """登出 (重複呼叫也不會出錯)"""
    end_session()
    flash('You have been logged out.', 'info')
    return redirect(url_for('auth.login_form'))

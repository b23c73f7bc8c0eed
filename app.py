from flask import Flask, request, jsonify, render_template, redirect, url_for
from flask_login import current_user
from flask_wtf.csrf import CSRFError
from werkzeug.exceptions import HTTPException
from sqlalchemy import text
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
from urllib.parse import parse_qs
import os

from config import get_config
from models import db
from errors import UnauthenticatedError, ForbiddenError, NotFoundError
from extensions import bcrypt, csrf, limiter, login_manager

# ============================================
# HTTP Method Override
# ============================================

class MethodOverrideMiddleware:
    """
    HTML form 只能送 GET/POST

    POST 搭配 ?_method=PUT 或 X-HTTP-Method-Override header
    在進入 routing 之前把 method 換掉。只讀 query string,不碰 request body。
    """

    allowed_methods = frozenset(['PUT', 'PATCH', 'DELETE'])

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app

    def __call__(self, environ, start_response):
        if environ.get('REQUEST_METHOD', '').upper() == 'POST':
            method = environ.get('HTTP_X_HTTP_METHOD_OVERRIDE')
            if not method:
                method = parse_qs(environ.get('QUERY_STRING', '')).get('_method', [None])[0]
            if method and method.upper() in self.allowed_methods:
                environ['REQUEST_METHOD'] = method.upper()
        return self.wsgi_app(environ, start_response)


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 設定統一的 log format
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # 各模組用 logging.getLogger(__name__),所以掛在 root logger
    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.addHandler(info_handler)
    app.logger.addHandler(error_handler)
    app.logger.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')


# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(UnauthenticatedError)
    def unauthenticated(error):
        """沒登入就導回登入頁,GET 的話記住原本要去的地方"""
        if request.method == 'GET':
            return redirect(url_for('auth.login_form', next=request.path))
        return redirect(url_for('auth.login_form'))

    @app.errorhandler(ForbiddenError)
    @app.errorhandler(NotFoundError)
    def access_denied(error):
        """不存在跟不是自己的任務都回同一個頁面,不洩漏資源是否存在"""
        return render_template('errors/403.html'), 403

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        app.logger.warning(f"CSRF validation failed from: {request.remote_addr}, reason: {error.description}")
        return render_template(
            'errors/error.html',
            title='Bad request',
            message='Your form has expired or is invalid. Please go back and try again.'
        ), 400

    @app.errorhandler(404)
    def not_found(error):
        return render_template('errors/404.html'), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return render_template(
            'errors/error.html',
            title='Method not allowed',
            message='The HTTP method is not allowed for this page.'
        ), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return render_template(
            'errors/error.html',
            title='Too many requests',
            message='Too many requests. Please try again later.'
        ), 429

    @app.errorhandler(500)
    def internal_server_error(error):
        """
        處理 500 錯誤

        不洩漏錯誤細節,完整 stack trace 寫到 log
        """
        db.session.rollback()
        app.logger.error(f"Internal server error: {str(error)}", exc_info=True)
        return render_template('errors/500.html'), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """最後的防線,捕捉所有沒被處理的 exception"""
        # HTTPException (例如 400) 交回給 Flask 預設處理
        if isinstance(error, HTTPException):
            return error

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return render_template('errors/500.html'), 500


# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # 加上 security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'same-origin'

        return response


# ============================================
# 一般路由
# ============================================

def register_routes(app):

    @app.route('/', methods=['GET'])
    def home():
        if current_user.is_authenticated:
            return redirect(url_for('tasks.index'))
        return redirect(url_for('auth.login_form'))

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """
        健康檢查端點

        用於 load balancer 或監控系統檢查服務是否正常
        """
        try:
            db.session.execute(text('SELECT 1'))

            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503


# ============================================
# App Factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    Args:
        config_class: 設定類別,沒給就依 FLASK_ENV 選
    """
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)
    app.wsgi_app = MethodOverrideMiddleware(app.wsgi_app)

    # 擴展初始化
    db.init_app(app)
    bcrypt.init_app(app)
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    if not app.debug and not app.testing:
        setup_logging(app)

    from auth import auth_bp
    app.register_blueprint(auth_bp)

    from tasks import tasks_bp
    app.register_blueprint(tasks_bp)

    from commands import register_commands
    register_commands(app)

    register_error_handlers(app)
    register_request_hooks(app)
    register_routes(app)

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    return app


# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server
    # 應該用 gunicorn 或 uwsgi: gunicorn "app:create_app()"
    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 8888))

    app = create_app()
    app.run(
        debug=debug_mode,
        port=port,
        host='0.0.0.0'
    )

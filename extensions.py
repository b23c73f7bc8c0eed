"""
Flask 擴展

在這裡建立實例,再由 create_app() 呼叫 init_app(),
讓 blueprint 可以 import 而不會有循環 import。
"""

from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect

bcrypt = Bcrypt()
csrf = CSRFProtect()

login_manager = LoginManager()
login_manager.session_protection = 'basic'

# default_limits / storage 從 app.config 讀 (RATELIMIT_*)
limiter = Limiter(key_func=get_remote_address)

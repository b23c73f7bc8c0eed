"""
應用程式的錯誤類型

所有錯誤都在 request 邊界被接住,轉成頁面、訊息或 redirect,
不會讓 process 掛掉。
"""


class AppError(Exception):
    """所有應用層錯誤的基底類別"""
    status_code = 400
    message = 'Request failed'

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ValidationError(AppError):
    """輸入錯誤 (使用者可以自己修正),帶有欄位層級的訊息"""
    status_code = 400
    message = 'Validation failed'

    def __init__(self, messages=None, message=None):
        super().__init__(message)
        # {'field': ['message', ...]}
        self.messages = messages or {}


class AuthenticationError(AppError):
    """帳號或密碼錯誤,不告訴使用者是哪一個錯"""
    status_code = 401
    message = 'Invalid credentials'


class UnauthenticatedError(AppError):
    """沒有登入 session"""
    status_code = 401
    message = 'Authentication required'


class ForbiddenError(AppError):
    """資源存在但不屬於目前使用者"""
    status_code = 403
    message = 'Permission denied'


class NotFoundError(AppError):
    """資源不存在 (對外呈現跟 ForbiddenError 一樣)"""
    status_code = 404
    message = 'Resource not found'

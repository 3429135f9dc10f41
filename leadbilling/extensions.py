from flask import request
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_mail import Mail

db = SQLAlchemy()
migrate = Migrate()

# Key: the account being billed; otherwise client IP
def _rate_limit_key():
    account_id = (request.view_args or {}).get("account_id")
    if account_id is None and request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            account_id = body.get("accountId")
    if account_id:
        return f"account:{account_id}"
    return get_remote_address()

# Storage is configured in create_app() via limiter.init_app(...).
limiter = Limiter(key_func=_rate_limit_key)

mail = Mail()

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def _bearer_token():
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def require_internal_caller(fn):
    """
    Internal endpoints: the marketplace's request handlers present the shared
    INTERNAL_API_TOKEN as a bearer token. Open when no token is configured.
    """
    @wraps(fn)
    def _wrap(*args, **kwargs):
        expected = current_app.config.get("INTERNAL_API_TOKEN")
        if expected:
            presented = _bearer_token()
            if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
                return jsonify({"success": False, "error": "unauthorized", "code": 401}), 401
        return fn(*args, **kwargs)
    return _wrap

import secrets

from flask import Request, session


def ensure_csrf_token() -> str:
    """Return the session's CSRF token, issuing one on first use."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Accept the token from the X-CSRF-Token header or a JSON body field."""
    token = req.headers.get("X-CSRF-Token")
    if not token and req.is_json:
        body = req.get_json(silent=True)
        if isinstance(body, dict):
            token = body.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))

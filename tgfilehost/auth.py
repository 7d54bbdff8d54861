import base64
import binascii
import logging
from functools import wraps
from secrets import compare_digest
from typing import Callable, Optional

from flask import Response, current_app, request

from .config import Settings

logger = logging.getLogger("tgfilehost.lifecycle")


def basic_auth_ok(settings: Settings, authorization: Optional[str]) -> bool:
    """Check an ``Authorization`` header against the configured admin credentials.

    The gate is open when either credential is unset. Anything that cannot be
    decoded counts as a failed attempt.
    """

    if not settings.auth_enabled:
        return True
    header = authorization or ""
    if not header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return False
    user, sep, password = decoded.partition(":")
    if not sep:
        return False
    user_ok = compare_digest(user.encode("utf-8"), settings.basic_user.encode("utf-8"))
    pass_ok = compare_digest(password.encode("utf-8"), settings.basic_pass.encode("utf-8"))
    return user_ok and pass_ok


def unauthorized() -> Response:
    return Response(
        "Unauthorized",
        status=401,
        mimetype="text/plain",
        headers={"WWW-Authenticate": 'Basic realm="admin"', "Cache-Control": "no-store"},
    )


def require_basic_auth(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        settings: Settings = current_app.config["TGFILEHOST_SETTINGS"]
        if basic_auth_ok(settings, request.headers.get("Authorization")):
            return view(*args, **kwargs)
        logger.warning(
            "admin_auth_failed endpoint=%s method=%s", request.endpoint, request.method
        )
        return unauthorized()

    return wrapped

"""Bearer token helpers shared by the API blueprints."""

from typing import Optional

from flask import current_app, request

from core.exceptions import AuthenticationError


def bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None
    return header[7:].strip() or None


def current_user_id(required: bool = True) -> Optional[str]:
    """
    User id for the request's bearer token.

    Raises:
        AuthenticationError: If required and the token is missing or unknown
    """
    token = bearer_token()
    user_id = None
    if token:
        user_id = current_app.config["AUTHENTICATOR"].user_for(token)
    if user_id is None and required:
        raise AuthenticationError()
    return user_id

"""
JWT authentication decorators for the REST API.
"""
from functools import wraps
from datetime import datetime, timedelta, timezone

import jwt
from flask import request, current_app

from boxoffice.blueprints.api.helpers import api_error
from boxoffice.extensions import db
from boxoffice.models.user import User, ACCESS_HIERARCHY


def _secret():
    return current_app.config.get('JWT_SECRET_KEY') or current_app.config['SECRET_KEY']


def create_access_token(user_id):
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(user_id),
        'type': 'access',
        'iat': now,
        'exp': now + current_app.config.get('JWT_ACCESS_TOKEN_EXPIRES', timedelta(minutes=60)),
    }
    return jwt.encode(payload, _secret(), algorithm='HS256')


def create_refresh_token(user_id, expires_days=30):
    """Create a JWT refresh token (longer-lived)."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(user_id),
        'type': 'refresh',
        'iat': now,
        'exp': now + timedelta(days=expires_days),
    }
    return jwt.encode(payload, _secret(), algorithm='HS256')


def decode_token(token):
    """Decode and validate a JWT token. Returns payload or None."""
    try:
        return jwt.decode(token, _secret(), algorithms=['HS256'])
    except jwt.InvalidTokenError:
        return None


def get_current_api_user():
    """Extract user from Authorization header. Returns (user, error_response)."""
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None, api_error('missing_token', 'Authorization header with Bearer token required.', 401)

    payload = decode_token(auth_header[7:])
    if payload is None:
        return None, api_error('invalid_token', 'Token is invalid or expired.', 401)

    if payload.get('type') != 'access':
        return None, api_error('wrong_token_type', 'Access token required (not refresh token).', 401)

    try:
        user_id = int(payload['sub'])
    except (KeyError, ValueError, TypeError):
        return None, api_error('invalid_token', 'Token contains invalid user ID.', 401)

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None, api_error('user_not_found', 'User not found or deactivated.', 401)

    return user, None


def jwt_required(f):
    """Decorator: require valid JWT access token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user, error = get_current_api_user()
        if error:
            return error
        request.api_user = user
        return f(*args, **kwargs)
    return decorated


def requires_api_access(min_level):
    """Decorator: require minimum access level (RBAC).

    Usage: @requires_api_access(AccessLevel.MANAGER)
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user, error = get_current_api_user()
            if error:
                return error

            user_index = ACCESS_HIERARCHY.index(user.access_level)
            required_index = ACCESS_HIERARCHY.index(min_level)
            if user_index > required_index:
                return api_error('forbidden', 'Insufficient permissions.', 403)

            request.api_user = user
            return f(*args, **kwargs)
        return decorated
    return decorator

"""
API Authentication endpoints: JWT login, refresh, and operator info.
"""
from flask import request, current_app

from boxoffice.blueprints.api import api_bp
from boxoffice.blueprints.api.decorators import (
    create_access_token,
    create_refresh_token,
    decode_token,
    jwt_required,
)
from boxoffice.blueprints.api.helpers import api_error, api_success
from boxoffice.blueprints.api.schemas import UserSchema
from boxoffice.extensions import db, limiter
from boxoffice.models.user import User
from boxoffice.utils.audit import log_action, AuditAction


@api_bp.route('/auth/login', methods=['POST'])
@limiter.limit('10 per minute')
def api_login():
    """Authenticate an operator and return JWT tokens.

    Request body:
        {"email": "...", "password": "..."}

    Returns:
        {"data": {"access_token": "...", "refresh_token": "...", "user": {...}}}
    """
    data = request.get_json(silent=True)
    if not data:
        return api_error('invalid_json', 'Request body must be valid JSON.', 400)

    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return api_error(
            'validation_error',
            'Email and password are required.',
            422,
            details=[
                {'field': f, 'message': f'{f} is required.', 'code': 'required'}
                for f in ['email', 'password'] if not data.get(f)
            ],
        )

    user = User.query.filter_by(email=email).first()

    if user and user.is_locked:
        return api_error(
            'account_locked',
            'Account temporarily locked due to too many failed attempts. Try again later.',
            429,
        )

    if user is None or not user.check_password(password):
        if user:
            user.record_failed_login(
                max_attempts=current_app.config.get('MAX_LOGIN_ATTEMPTS', 5),
                lockout_minutes=current_app.config.get('LOCKOUT_DURATION_MINUTES', 15),
            )
            log_action(AuditAction.LOGIN_FAILED, 'User', user.id, user=user)
            db.session.commit()
        return api_error('invalid_credentials', 'Invalid email or password.', 401)

    if not user.is_active:
        return api_error('account_inactive', 'Account is deactivated. Contact an administrator.', 403)

    user.reset_failed_logins()
    log_action(AuditAction.LOGIN_SUCCESS, 'User', user.id, user=user)
    db.session.commit()

    expires = current_app.config['JWT_ACCESS_TOKEN_EXPIRES']
    return api_success({
        'access_token': create_access_token(user.id),
        'refresh_token': create_refresh_token(user.id),
        'token_type': 'Bearer',
        'expires_in': int(expires.total_seconds()),
        'user': UserSchema().dump(user),
    })


@api_bp.route('/auth/refresh', methods=['POST'])
@limiter.limit('20 per minute')
def api_refresh():
    """Exchange a refresh token for a new access token."""
    data = request.get_json(silent=True)
    if not data or not data.get('refresh_token'):
        return api_error('validation_error', 'refresh_token is required.', 422)

    payload = decode_token(data['refresh_token'])
    if payload is None:
        return api_error('invalid_token', 'Refresh token is invalid or expired.', 401)

    if payload.get('type') != 'refresh':
        return api_error('wrong_token_type', 'Refresh token required.', 401)

    user = db.session.get(User, int(payload['sub']))
    if user is None or not user.is_active:
        return api_error('user_not_found', 'User not found or deactivated.', 401)

    expires = current_app.config['JWT_ACCESS_TOKEN_EXPIRES']
    return api_success({
        'access_token': create_access_token(user.id),
        'token_type': 'Bearer',
        'expires_in': int(expires.total_seconds()),
    })


@api_bp.route('/auth/me', methods=['GET'])
@jwt_required
def api_me():
    """Current authenticated operator."""
    return api_success(UserSchema().dump(request.api_user))

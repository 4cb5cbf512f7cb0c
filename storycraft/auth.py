"""
JWT bearer authentication for the StoryCraft API
"""

import secrets
import logging
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional, Dict, Any

import jwt
from flask import Blueprint, request, jsonify, g, current_app

from storycraft import database
from storycraft.monitoring import set_user_context

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


# ==============================================================================
# JWT TOKEN MANAGEMENT
# ==============================================================================

def create_access_token(user: Dict[str, Any]) -> str:
    """Create JWT access token and record its session for revocation"""
    now = datetime.now(timezone.utc)
    jti = secrets.token_hex(16)
    expires_at = now + timedelta(seconds=current_app.config['JWT_ACCESS_TOKEN_EXPIRES'])

    payload = {
        'user_id': user['id'],
        'email': user['email'],
        'token_type': 'access',
        'exp': expires_at,
        'iat': now,
        'jti': jti,
    }
    database.create_session(user['id'], jti, expires_at)
    return jwt.encode(payload, current_app.config['JWT_SECRET_KEY'],
                      algorithm=current_app.config['JWT_ALGORITHM'])


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate JWT token; None when invalid, expired or revoked"""
    try:
        payload = jwt.decode(token, current_app.config['JWT_SECRET_KEY'],
                             algorithms=[current_app.config['JWT_ALGORITHM']])
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        return None

    if database.is_session_revoked(payload.get('jti', '')):
        return None
    return payload


def get_token_from_request() -> Optional[str]:
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[7:].strip() or None
    return None


def _auth_error(message: str, code: str):
    return jsonify({
        'success': False,
        'status': 'error',
        'error': message,
        'error_code': code,
        'request_id': g.get('request_id'),
    }), 401


def _resolve_user(token: str):
    """Returns (user, error_message, error_code)"""
    payload = decode_token(token)
    if not payload:
        return None, 'Invalid or expired token', 'INVALID_TOKEN'
    if payload.get('token_type') != 'access':
        return None, 'Invalid token type', 'INVALID_TOKEN_TYPE'

    user = database.get_user_by_id(payload['user_id'])
    if not user:
        return None, 'User not found', 'USER_NOT_FOUND'

    g.token_payload = payload
    return user, None, None


# ==============================================================================
# AUTHENTICATION DECORATORS
# ==============================================================================

def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_token_from_request()
        if not token:
            return _auth_error('Authentication required', 'AUTH_REQUIRED')

        user, message, code = _resolve_user(token)
        if not user:
            return _auth_error(message, code)

        g.current_user = user
        set_user_context(user['id'], user['email'])
        return f(*args, **kwargs)

    return decorated


def optional_auth(f):
    """Populate g.current_user when a valid token is present; anonymous otherwise"""
    @wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = None
        token = get_token_from_request()
        if token:
            user, _, _ = _resolve_user(token)
            if user:
                g.current_user = user
                set_user_context(user['id'], user['email'])
        return f(*args, **kwargs)

    return decorated


# ==============================================================================
# AUTH BLUEPRINT
# ==============================================================================

auth_bp = Blueprint('auth', __name__)


def _token_response(user: Dict[str, Any], status: int = 200):
    return jsonify({
        'success': True,
        'status': 'success',
        'data': {
            'user': user,
            'access_token': create_access_token(user),
            'expires_in': current_app.config['JWT_ACCESS_TOKEN_EXPIRES'],
        },
        'request_id': g.get('request_id'),
    }), status


def _bad_request(message: str, code: str, status: int = 400):
    return jsonify({
        'success': False,
        'status': 'error',
        'error': message,
        'error_code': code,
        'request_id': g.get('request_id'),
    }), status


def _json_body(fields=('email', 'password', 'name')):
    """Object body whose named fields, when present, are strings; None otherwise"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return None
    if any(data.get(f) is not None and not isinstance(data[f], str) for f in fields):
        return None
    return data


@auth_bp.route('/auth/register', methods=['POST'])
def register():
    data = _json_body()
    if data is None:
        return _bad_request('Request body must be a JSON object with string fields', 'INVALID_REQUEST')

    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    name = (data.get('name') or '').strip()

    if not email or not password or not name:
        return _bad_request('Email, password, and name are required', 'MISSING_FIELDS')
    if '@' not in email:
        return _bad_request('Invalid email address', 'INVALID_EMAIL')
    if len(password) < MIN_PASSWORD_LENGTH:
        return _bad_request(f"Password must be at least {MIN_PASSWORD_LENGTH} characters", 'WEAK_PASSWORD')

    user = database.create_user(email, password, name)
    if not user:
        return _bad_request('User already exists', 'USER_EXISTS', 409)

    logger.info(f"User registered: {email}")
    return _token_response(user, 201)


@auth_bp.route('/auth/login', methods=['POST'])
def login():
    data = _json_body()
    if data is None:
        return _bad_request('Request body must be a JSON object with string fields', 'INVALID_REQUEST')

    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return _bad_request('Email and password are required', 'MISSING_FIELDS')

    user = database.authenticate_user(email, password)
    if not user:
        return _auth_error('Invalid email or password', 'INVALID_CREDENTIALS')

    logger.info(f"User logged in: {email}")
    return _token_response(user)


@auth_bp.route('/auth/logout', methods=['POST'])
@require_auth
def logout():
    database.revoke_session(g.token_payload['jti'])
    return jsonify({'success': True, 'status': 'success', 'data': {'message': 'Logged out'}})


@auth_bp.route('/auth/me', methods=['GET'])
@require_auth
def me():
    return jsonify({'success': True, 'status': 'success', 'data': {'user': g.current_user}})

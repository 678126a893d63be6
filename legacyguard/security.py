"""
Security hardening module.

Provides CSRF protection, rate limiting, input sanitization, API token
and cron secret authentication, and admin session security.
"""

import re
import hmac
import hashlib
import secrets
from functools import wraps
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterable

from flask import request, session, current_app, abort, g, jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect


# Initialize extensions at module level
csrf = CSRFProtect()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per day", "200 per hour"]
)


# Security configuration defaults
DEFAULT_CONFIG = {
    'SESSION_COOKIE_SECURE': True,
    'SESSION_COOKIE_HTTPONLY': True,
    'SESSION_COOKIE_SAMESITE': 'Lax',
    'PERMANENT_SESSION_LIFETIME': timedelta(hours=1),
    'WTF_CSRF_TIME_LIMIT': 3600,  # 1 hour
    'WTF_CSRF_SSL_STRICT': True,
}


def add_security_headers(response):
    """
    Add security headers to response.
    Used as an after_request handler; the service only returns JSON and files.
    """
    response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Cache-Control'] = 'no-store'
    return response


def init_security(app):
    """Initialize security extensions with the app."""
    for key, value in DEFAULT_CONFIG.items():
        if key not in app.config:
            app.config[key] = value

    csrf.init_app(app)
    limiter.init_app(app)


# Rate limit configurations
RATE_LIMITS = {
    'register': "10 per hour",
    'generate': "10 per hour",
    'validate': "60 per hour",
    'upload': "30 per hour",
    'support': "30 per minute",
    'verify': "60 per minute",
    'admin_login': "5 per minute",
    'admin_actions': "30 per minute",
}


def rate_limit(name: str):
    """Decorator applying a named rate limit from RATE_LIMITS."""
    return limiter.limit(RATE_LIMITS[name])


# Input sanitization
HTML_TAG_PATTERN = re.compile(r'<[^>]+>')
SCRIPT_PATTERN = re.compile(r'<script[^>]*>.*?</script>', re.DOTALL | re.IGNORECASE)
EVENT_HANDLER_PATTERN = re.compile(r'on\w+\s*=', re.IGNORECASE)


def sanitize_string(value: str, max_length: int = 10000) -> str:
    """
    Sanitize a string value for safe storage and display.

    Args:
        value: Input string
        max_length: Maximum allowed length

    Returns:
        Sanitized string
    """
    if value is None:
        return ''

    if not isinstance(value, str):
        value = str(value)

    value = SCRIPT_PATTERN.sub('', value)
    value = EVENT_HANDLER_PATTERN.sub('', value)
    value = HTML_TAG_PATTERN.sub('', value)

    return value[:max_length].strip()


def sanitize_payload(payload: Any, skip_keys: Iterable[str] = ()) -> Any:
    """
    Recursively sanitize all string values in a payload.

    Values under keys listed in skip_keys (e.g. opaque encryption metadata)
    are passed through untouched.
    """
    skip = set(skip_keys)
    if isinstance(payload, dict):
        return {
            k: v if k in skip else sanitize_payload(v, skip)
            for k, v in payload.items()
        }
    elif isinstance(payload, list):
        return [sanitize_payload(item, skip) for item in payload]
    elif isinstance(payload, str):
        return sanitize_string(payload)
    return payload


# Tokens
def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """Tokens are stored as SHA-256 digests only."""
    return hashlib.sha256(token.encode()).hexdigest()


def _bearer_token() -> Optional[str]:
    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    token = auth_header[len('Bearer '):].strip()
    return token or None


def login_required(f):
    """
    Require `Authorization: Bearer <api token>`.

    The authenticated user is stored on g.current_user and the request counts
    as account activity for the dead man's switch.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from legacyguard.accounts import authenticate_token, record_activity

        token = _bearer_token()
        if not token:
            return jsonify({'ok': False, 'error': 'Authentication required'}), 401

        user = authenticate_token(token)
        if user is None:
            return jsonify({'ok': False, 'error': 'Invalid or expired token'}), 401

        record_activity(user)
        g.current_user = user
        return f(*args, **kwargs)
    return decorated_function


def guardian_required(f):
    """Require the access token issued to a guardian on accepting an invitation."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from legacyguard.guardians import authenticate_guardian

        token = _bearer_token()
        if not token:
            return jsonify({'ok': False, 'error': 'Authentication required'}), 401

        guardian = authenticate_guardian(token)
        if guardian is None:
            return jsonify({'ok': False, 'error': 'Invalid or expired token'}), 401

        g.current_guardian = guardian
        return f(*args, **kwargs)
    return decorated_function


def cron_secret_required(f):
    """Require `Authorization: Bearer <CRON_SECRET>` for scheduled jobs."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get('CRON_SECRET', '')
        if not expected:
            current_app.logger.error('CRON_SECRET is not configured')
            return jsonify({'ok': False, 'error': 'Cron access is not configured'}), 503

        token = _bearer_token()
        if not token:
            return jsonify({'ok': False, 'error': 'Missing credentials'}), 401

        if not hmac.compare_digest(token, expected):
            current_app.logger.warning(f'Invalid cron token from {get_client_ip()}')
            return jsonify({'ok': False, 'error': 'Invalid token'}), 401

        return f(*args, **kwargs)
    return decorated_function


# Admin session management
ADMIN_SESSION_DURATION = timedelta(hours=1)


def verify_admin_password(password: str, password_hash: str) -> bool:
    """Verify admin password against its SHA-256 hash."""
    if not password or not password_hash:
        return False
    hashed = hashlib.sha256(password.encode()).hexdigest()
    return hmac.compare_digest(hashed, password_hash)


def create_admin_session(username: str, ip_address: str, user_agent: str) -> str:
    """
    Create a new admin session.

    Returns:
        Session token
    """
    from legacyguard.models import AdminSession
    from legacyguard import db

    session_token = secrets.token_urlsafe(32)

    admin_session = AdminSession(
        session_token=session_token,
        admin_username=username,
        expires_at=datetime.utcnow() + ADMIN_SESSION_DURATION,
        ip_address=ip_address,
        user_agent=user_agent
    )
    db.session.add(admin_session)
    db.session.commit()

    session['admin_session_token'] = session_token
    session['admin_username'] = username
    session.permanent = True

    return session_token


def validate_admin_session(session_token: str = None) -> Optional[Any]:
    """
    Validate the current admin session.

    Returns:
        AdminSession if valid, None otherwise
    """
    from legacyguard.models import AdminSession
    from legacyguard import db

    if session_token is None:
        session_token = session.get('admin_session_token')

    if not session_token:
        return None

    admin_session = AdminSession.query.filter_by(
        session_token=session_token,
        is_active=True
    ).first()

    if not admin_session:
        return None

    if admin_session.is_expired():
        admin_session.terminate('expired')
        db.session.commit()
        return None

    admin_session.last_activity_at = datetime.utcnow()
    db.session.commit()

    return admin_session


def terminate_admin_session(reason: str = 'logout'):
    """Terminate the current admin session."""
    from legacyguard.models import AdminSession
    from legacyguard import db

    session_token = session.get('admin_session_token')

    if session_token:
        admin_session = AdminSession.query.filter_by(session_token=session_token).first()
        if admin_session:
            admin_session.terminate(reason)
            db.session.commit()

    session.pop('admin_session_token', None)
    session.pop('admin_username', None)


def admin_required(f):
    """Decorator to require valid admin session."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        admin_user = current_app.config.get('ADMIN_USERNAME', '')
        admin_pass = current_app.config.get('ADMIN_PASSWORD_HASH', '')

        if not admin_user or not admin_pass:
            abort(503, 'Admin access is not configured')

        admin_session = validate_admin_session()
        if not admin_session:
            abort(401, 'Session expired or invalid')

        g.admin_username = admin_session.admin_username
        return f(*args, **kwargs)
    return decorated_function


def get_client_ip() -> str:
    """Get the client IP address, handling proxies."""
    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()

    real_ip = request.headers.get('X-Real-Ip')
    if real_ip:
        return real_ip

    return request.remote_addr or 'unknown'


# Abuse prevention
class AbuseDetector:
    """Simple in-memory abuse detection."""

    def __init__(self, request_threshold: int = 600, block_duration_minutes: int = 60):
        self._requests: Dict[str, List[datetime]] = {}
        self._blocked: Dict[str, datetime] = {}
        self.request_threshold = request_threshold
        self.block_duration_minutes = block_duration_minutes

    def record_request(self, identifier: str):
        """Record a request and block the identifier once it reaches the threshold."""
        now = datetime.utcnow()
        self._requests.setdefault(identifier, []).append(now)
        self.cleanup_old_requests()

        if len(self._requests.get(identifier, [])) >= self.request_threshold:
            self._blocked[identifier] = now + timedelta(minutes=self.block_duration_minutes)

    def get_request_count(self, identifier: str) -> int:
        return len(self._requests.get(identifier, []))

    def is_blocked(self, identifier: str) -> bool:
        expiry = self._blocked.get(identifier)
        if expiry is None:
            return False

        if datetime.utcnow() > expiry:
            del self._blocked[identifier]
            return False

        return True

    def reset(self):
        self._requests.clear()
        self._blocked.clear()

    def cleanup_old_requests(self):
        """Remove request records older than one hour."""
        cutoff = datetime.utcnow() - timedelta(hours=1)
        for identifier in list(self._requests.keys()):
            recent = [ts for ts in self._requests[identifier] if ts > cutoff]
            if recent:
                self._requests[identifier] = recent
            else:
                del self._requests[identifier]


abuse_detector = AbuseDetector()


def check_abuse():
    """before_request hook rejecting identifiers that flood the API."""
    ip_address = get_client_ip()

    if abuse_detector.is_blocked(ip_address):
        return jsonify({
            'ok': False,
            'error': 'Access temporarily restricted due to excessive requests'
        }), 429

    abuse_detector.record_request(ip_address)
    return None

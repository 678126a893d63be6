"""
LegacyGuard Application

Backend for a digital legacy service: will generation, an encrypted
document vault, family guardians, a dead man's switch, time capsules,
support and backup/disaster recovery.

Enhanced with:
- CSRF protection (admin)
- Rate limiting
- Security headers
- Audit logging
"""

import os
from datetime import datetime
from flask import Flask, request, g
from flask_sqlalchemy import SQLAlchemy

# Initialize extensions
db = SQLAlchemy()


def create_app(test_config=None):
    """Application factory pattern."""
    app = Flask(__name__, instance_relative_config=True)

    # Default configuration
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production'),
        SQLALCHEMY_DATABASE_URI=os.environ.get('DATABASE_URL', 'sqlite:///legacyguard.db'),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        ADMIN_USERNAME=os.environ.get('ADMIN_USERNAME', ''),
        ADMIN_PASSWORD_HASH=os.environ.get('ADMIN_PASSWORD_HASH', ''),
        PERMANENT_SESSION_LIFETIME=3600,  # 1 hour

        # Scheduled jobs and signing secrets
        CRON_SECRET=os.environ.get('CRON_SECRET', ''),
        TRUST_SEAL_SECRET=os.environ.get('TRUST_SEAL_SECRET', 'dev-trust-seal-secret'),
        VERIFICATION_BASE_URL=os.environ.get('VERIFICATION_BASE_URL', 'https://legacyguard.app/verify'),
        APP_BASE_URL=os.environ.get('APP_BASE_URL', 'https://legacyguard.app'),
        SUPPORT_EMAIL=os.environ.get('SUPPORT_EMAIL', 'support@legacyguard.app'),
        DISASTER_RECOVERY_CONTACTS=os.environ.get('DISASTER_RECOVERY_CONTACTS', ''),

        # CSRF settings
        WTF_CSRF_ENABLED=True,
        WTF_CSRF_TIME_LIMIT=3600,  # 1 hour
        WTF_CSRF_SSL_STRICT=False,  # Disabled for development

        # Rate limiting settings
        RATELIMIT_STORAGE_URI=os.environ.get('REDIS_URL', 'memory://'),
        RATELIMIT_STRATEGY='fixed-window',
        RATELIMIT_DEFAULT='100 per minute',
        RATELIMIT_HEADERS_ENABLED=True,

        # Email settings
        SMTP_HOST=os.environ.get('SMTP_HOST', ''),
        SMTP_PORT=int(os.environ.get('SMTP_PORT', 587)),
        SMTP_USERNAME=os.environ.get('SMTP_USERNAME', ''),
        SMTP_PASSWORD=os.environ.get('SMTP_PASSWORD', ''),
        SMTP_USE_TLS=os.environ.get('SMTP_USE_TLS', 'true').lower() == 'true',
        EMAIL_FROM_ADDRESS=os.environ.get('EMAIL_FROM_ADDRESS', 'noreply@legacyguard.app'),
        EMAIL_FROM_NAME=os.environ.get('EMAIL_FROM_NAME', 'LegacyGuard'),
        MAIL_SUPPRESS_SEND=os.environ.get('MAIL_SUPPRESS_SEND', 'false').lower() == 'true',
        EMAIL_MAX_ATTEMPTS=int(os.environ.get('EMAIL_MAX_ATTEMPTS', 3)),
        EMAIL_RETRY_BASE_DELAY=float(os.environ.get('EMAIL_RETRY_BASE_DELAY', 1.0)),

        # Storage
        DOCUMENT_STORAGE_DIR=os.environ.get('DOCUMENT_STORAGE_DIR', ''),
        BACKUP_DIR=os.environ.get('BACKUP_DIR', ''),
        MAX_DOCUMENT_SIZE=int(os.environ.get('MAX_DOCUMENT_SIZE', 10 * 1024 * 1024)),

        # Dead man's switch thresholds (days)
        DMS_WARNING_DAYS=int(os.environ.get('DMS_WARNING_DAYS', 30)),
        DMS_CRITICAL_DAYS=int(os.environ.get('DMS_CRITICAL_DAYS', 60)),
        DMS_EMERGENCY_DAYS=int(os.environ.get('DMS_EMERGENCY_DAYS', 90)),
        DMS_MAX_INACTIVITY_DAYS=int(os.environ.get('DMS_MAX_INACTIVITY_DAYS', 120)),
        DMS_CANCELLATION_HOURS=int(os.environ.get('DMS_CANCELLATION_HOURS', 72)),

        # Reminder windows (days)
        DOCUMENT_EXPIRY_WARNING_DAYS=int(os.environ.get('DOCUMENT_EXPIRY_WARNING_DAYS', 30)),
        WILL_REVIEW_DAYS=int(os.environ.get('WILL_REVIEW_DAYS', 365)),
        GUARDIAN_REVIEW_DAYS=int(os.environ.get('GUARDIAN_REVIEW_DAYS', 365)),
    )

    if test_config is None:
        # Load instance config if it exists
        app.config.from_pyfile('config.py', silent=True)
    else:
        # Load test config
        app.config.from_mapping(test_config)

    # Ensure instance folder exists
    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass

    # Storage directories default to the instance folder
    for key, folder in (('DOCUMENT_STORAGE_DIR', 'documents'),
                        ('BACKUP_DIR', 'backups'),
                        ('WILL_STORAGE_DIR', 'wills')):
        if not app.config.get(key):
            app.config[key] = os.path.join(app.instance_path, folder)
        os.makedirs(app.config[key], exist_ok=True)

    # Initialize extensions with app
    db.init_app(app)

    # Import and initialize security (after db init to avoid circular imports)
    from legacyguard.security import add_security_headers, init_security
    init_security(app)

    # Register blueprints
    from legacyguard.routes import api_bp, verify_bp
    from legacyguard.cron_routes import cron_bp
    from legacyguard.admin_routes import admin_bp
    app.register_blueprint(api_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(verify_bp)
    app.register_blueprint(admin_bp)

    # Add security headers to all responses
    @app.after_request
    def after_request(response):
        """Add security headers to all responses."""
        return add_security_headers(response)

    # Request logging
    @app.before_request
    def before_request():
        """Log request start."""
        g.request_start_time = datetime.utcnow()

    @app.after_request
    def log_request(response):
        """Log request completion."""
        if hasattr(g, 'request_start_time'):
            duration = (datetime.utcnow() - g.request_start_time).total_seconds()
            app.logger.info(
                f'{request.method} {request.path} - {response.status_code} - {duration:.3f}s'
            )
        return response

    # Create database tables
    with app.app_context():
        db.create_all()

        from legacyguard.support import seed_knowledge_base
        seed_knowledge_base()

    # Error handlers
    @app.errorhandler(400)
    def bad_request(error):
        return {'ok': False, 'error': error.description}, 400

    @app.errorhandler(401)
    def unauthorized(error):
        return {'ok': False, 'error': error.description}, 401

    @app.errorhandler(503)
    def unavailable(error):
        return {'ok': False, 'error': error.description}, 503

    @app.errorhandler(404)
    def not_found(error):
        return {'ok': False, 'error': 'Not found'}, 404

    @app.errorhandler(429)
    def rate_limited(error):
        return {'ok': False, 'error': 'Too many requests'}, 429

    @app.errorhandler(500)
    def internal_error(error):
        """Handle internal errors."""
        db.session.rollback()
        app.logger.error(f'Internal error: {str(error)}')
        return {'ok': False, 'error': 'Internal server error'}, 500

    return app

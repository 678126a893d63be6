"""
Database models for the LegacyGuard application.

Enhanced with:
- Will versioning and locking
- Persisted emergency activations (escalation survives restarts)
- Signed trust seals
- Audit trail integration
"""

import json
import uuid
import hashlib
from datetime import datetime
from enum import Enum as PyEnum
from legacyguard import db


def generate_uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class SubscriptionTier(PyEnum):
    FREE = 'free'
    PREMIUM = 'premium'
    ENTERPRISE = 'enterprise'


class User(db.Model):
    """Account owner. Only hashes of API tokens and recovery kits are stored."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    email = db.Column(db.String(254), unique=True, nullable=False)
    full_name = db.Column(db.String(100), nullable=False)
    tier = db.Column(db.String(20), default=SubscriptionTier.FREE.value, nullable=False)
    jurisdiction = db.Column(db.String(2), default='SK', nullable=False)

    api_token_hash = db.Column(db.String(64), unique=True, nullable=True)
    recovery_kit_hash = db.Column(db.String(64), nullable=True)
    recovery_kit_created_at = db.Column(db.DateTime, nullable=True)

    # Activity tracking for the dead man's switch
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_sign_in_at = db.Column(db.DateTime, nullable=True)
    last_active_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    guardians = db.relationship('Guardian', backref='user', lazy='dynamic',
                                cascade='all, delete-orphan')
    documents = db.relationship('Document', backref='user', lazy='dynamic',
                                cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.id} {self.email}>'

    def days_inactive(self, now=None) -> int:
        """Whole days since the last activity (or account creation)."""
        now = now or datetime.utcnow()
        reference = self.last_active_at or self.last_sign_in_at or self.created_at
        return max(0, (now - reference).days)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'tier': self.tier,
            'jurisdiction': self.jurisdiction,
            'created_at': _iso(self.created_at),
            'last_sign_in_at': _iso(self.last_sign_in_at),
            'last_active_at': _iso(self.last_active_at),
            'has_recovery_kit': self.recovery_kit_hash is not None,
        }


class GuardianStatus(PyEnum):
    PENDING = 'pending'
    ACTIVE = 'active'
    DECLINED = 'declined'
    REVOKED = 'revoked'


class Guardian(db.Model):
    """A trusted person (family member, emergency contact) invited by a user."""
    __tablename__ = 'guardians'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    relationship = db.Column(db.String(50), nullable=False)

    access_level = db.Column(db.String(20), default='view', nullable=False)
    permissions_json = db.Column(db.Text, nullable=True)
    is_emergency_contact = db.Column(db.Boolean, default=False, nullable=False)
    priority_order = db.Column(db.Integer, default=1, nullable=False)
    contact_method = db.Column(db.String(10), default='email', nullable=False)

    status = db.Column(db.String(20), default=GuardianStatus.PENDING.value, nullable=False)
    invitation_token = db.Column(db.String(64), unique=True, nullable=True)
    invitation_expires_at = db.Column(db.DateTime, nullable=True)
    invitation_sent_at = db.Column(db.DateTime, nullable=True)
    access_token_hash = db.Column(db.String(64), unique=True, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    accepted_at = db.Column(db.DateTime, nullable=True)
    last_reviewed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    document_access = db.relationship('GuardianDocumentAccess', backref='guardian',
                                      lazy='dynamic', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Guardian {self.id} {self.email} - {self.status}>'

    def get_permissions(self):
        return json.loads(self.permissions_json) if self.permissions_json else {}

    def set_permissions(self, permissions):
        self.permissions_json = json.dumps(permissions, sort_keys=True)

    def invitation_expired(self) -> bool:
        return self.invitation_expires_at is not None and datetime.utcnow() > self.invitation_expires_at

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'relationship': self.relationship,
            'access_level': self.access_level,
            'permissions': self.get_permissions(),
            'is_emergency_contact': self.is_emergency_contact,
            'priority_order': self.priority_order,
            'contact_method': self.contact_method,
            'status': self.status,
            'invitation_expires_at': _iso(self.invitation_expires_at),
            'created_at': _iso(self.created_at),
            'accepted_at': _iso(self.accepted_at),
            'last_reviewed_at': _iso(self.last_reviewed_at),
        }


class Document(db.Model):
    """
    A stored document. Client-side encrypted uploads are kept as opaque
    bytes together with their encryption metadata.
    """
    __tablename__ = 'documents'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    file_name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(500), nullable=False)
    mime_type = db.Column(db.String(100), nullable=True)
    file_size = db.Column(db.Integer, nullable=False)
    sha256 = db.Column(db.String(64), nullable=False)

    title = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(50), default='other', nullable=False)
    document_type = db.Column(db.String(50), default='other', nullable=False)
    tags_json = db.Column(db.Text, nullable=True)
    legal_significance = db.Column(db.String(20), default='none', nullable=False)
    requires_witnesses = db.Column(db.Boolean, default=False, nullable=False)

    is_encrypted = db.Column(db.Boolean, default=False, nullable=False)
    encryption_metadata_json = db.Column(db.Text, nullable=True)

    expires_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    shares = db.relationship('GuardianDocumentAccess', backref='document',
                             lazy='dynamic', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Document {self.id} {self.file_name}>'

    def get_tags(self):
        return json.loads(self.tags_json) if self.tags_json else []

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'file_name': self.file_name,
            'mime_type': self.mime_type,
            'file_size': self.file_size,
            'sha256': self.sha256,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'document_type': self.document_type,
            'tags': self.get_tags(),
            'legal_significance': self.legal_significance,
            'requires_witnesses': self.requires_witnesses,
            'is_encrypted': self.is_encrypted,
            'encryption_metadata': (json.loads(self.encryption_metadata_json)
                                    if self.encryption_metadata_json else None),
            'expires_at': _iso(self.expires_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class GuardianDocumentAccess(db.Model):
    __tablename__ = 'guardian_document_access'
    __table_args__ = (db.UniqueConstraint('guardian_id', 'document_id'),)

    id = db.Column(db.Integer, primary_key=True)
    guardian_id = db.Column(db.Integer, db.ForeignKey('guardians.id'), nullable=False)
    document_id = db.Column(db.Integer, db.ForeignKey('documents.id'), nullable=False)
    granted_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    granted_by = db.Column(db.String(20), default='owner', nullable=False)  # 'owner' or 'emergency'


class WillStatus(PyEnum):
    """Will lifecycle states."""
    PENDING = 'pending'
    GENERATING = 'generating'
    COMPLETED = 'completed'
    ERROR = 'error'
    LOCKED = 'locked'  # Final state - cannot be modified


class Will(db.Model):
    """
    Stores generated wills with versioning and locking.
    """
    __tablename__ = 'wills'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    # Generation timestamp for determinism
    # This is set once at creation and used for all rendering
    generation_timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    jurisdiction = db.Column(db.String(2), nullable=False)
    will_type = db.Column(db.String(20), nullable=False)

    # Payload, rendered text and PDF
    payload_json = db.Column(db.Text, nullable=False)
    content_text = db.Column(db.Text, nullable=True)
    pdf_path = db.Column(db.String(500), nullable=True)
    pdf_sha256 = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(20), default=WillStatus.PENDING.value, nullable=False)
    error_message = db.Column(db.Text, nullable=True)

    # Locking for immutability
    is_locked = db.Column(db.Boolean, default=False, nullable=False)
    locked_at = db.Column(db.DateTime, nullable=True)
    locked_reason = db.Column(db.String(100), nullable=True)

    # Versioning for regeneration
    parent_will_id = db.Column(db.Integer, db.ForeignKey('wills.id'), nullable=True)
    version_number = db.Column(db.Integer, default=1, nullable=False)

    parent = db.relationship('Will', remote_side=[id], backref='versions')
    user = db.relationship('User', backref=db.backref('wills', lazy='dynamic'))

    def __repr__(self):
        return f'<Will {self.id} v{self.version_number} - {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'version_number': self.version_number,
            'parent_will_id': self.parent_will_id,
            'jurisdiction': self.jurisdiction,
            'will_type': self.will_type,
            'generation_timestamp': _iso(self.generation_timestamp),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
            'status': self.status,
            'is_locked': self.is_locked,
            'locked_at': _iso(self.locked_at),
            'pdf_sha256': self.pdf_sha256,
            'has_pdf': self.pdf_path is not None,
            'error_message': self.error_message,
        }

    def get_payload(self):
        """Deserialize the JSON payload."""
        return json.loads(self.payload_json)

    def set_payload(self, payload):
        """Serialize the payload to JSON with stable ordering."""
        self.payload_json = json.dumps(payload, indent=2, sort_keys=True)

    def lock(self, reason='generation_complete'):
        """Lock the will to prevent modifications."""
        self.is_locked = True
        self.locked_at = datetime.utcnow()
        self.locked_reason = reason
        self.status = WillStatus.LOCKED.value

    def can_regenerate(self):
        return self.is_locked and self.pdf_path is not None

    def create_duplicate(self):
        """Create a new version based on this will."""
        if not self.is_locked:
            raise ValueError("Cannot duplicate unlocked will")

        return Will(
            user_id=self.user_id,
            jurisdiction=self.jurisdiction,
            will_type=self.will_type,
            payload_json=self.payload_json,
            parent_will_id=self.id,
            version_number=self.version_number + 1,
            status=WillStatus.PENDING.value
        )


class TrustSeal(db.Model):
    """Signed confidence certificate issued for a generated will."""
    __tablename__ = 'trust_seals'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    will_id = db.Column(db.Integer, db.ForeignKey('wills.id'), nullable=False)

    level = db.Column(db.String(20), nullable=False)
    confidence_score = db.Column(db.Integer, nullable=False)
    validations_json = db.Column(db.Text, nullable=True)

    issued_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    valid_until = db.Column(db.DateTime, nullable=False)
    digital_signature = db.Column(db.String(100), nullable=False)

    revoked_at = db.Column(db.DateTime, nullable=True)
    revocation_reason = db.Column(db.String(200), nullable=True)

    will = db.relationship('Will', backref=db.backref('trust_seals', lazy='dynamic'))

    def __repr__(self):
        return f'<TrustSeal {self.id} {self.level}>'

    def get_validations(self):
        return json.loads(self.validations_json) if self.validations_json else {}

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'document_id': self.will_id,
            'level': self.level,
            'confidence_score': self.confidence_score,
            'validations': self.get_validations(),
            'issued_at': _iso(self.issued_at),
            'valid_until': _iso(self.valid_until),
            'digital_signature': self.digital_signature,
            'revoked_at': _iso(self.revoked_at),
        }


class ActivationStatus(PyEnum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


class EmergencyActivation(db.Model):
    """
    Dead man's switch activation for a user. Escalation progress lives here
    so a restart does not reset or repeat it.
    """
    __tablename__ = 'emergency_activations'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    trigger_type = db.Column(db.String(20), default='inactivity', nullable=False)  # inactivity, manual, test
    status = db.Column(db.String(20), default=ActivationStatus.PENDING.value, nullable=False)
    inactivity_level = db.Column(db.String(20), nullable=True)  # warning, critical, emergency
    days_inactive = db.Column(db.Integer, default=0, nullable=False)

    escalation_level = db.Column(db.Integer, default=1, nullable=False)
    max_escalation_level = db.Column(db.Integer, default=3, nullable=False)
    documents_accessible = db.Column(db.Boolean, default=False, nullable=False)

    triggered_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_escalated_at = db.Column(db.DateTime, nullable=True)
    cancellation_token = db.Column(db.String(64), unique=True, nullable=True)
    cancellation_expires_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    escalation_log_json = db.Column(db.Text, nullable=True)

    user = db.relationship('User', backref=db.backref('emergency_activations', lazy='dynamic'))
    notifications = db.relationship('EmergencyNotification', backref='activation', lazy='dynamic',
                                    cascade='all, delete-orphan')

    def __repr__(self):
        return f'<EmergencyActivation {self.id} {self.user_id} L{self.escalation_level} - {self.status}>'

    @property
    def is_open(self) -> bool:
        return self.status in (ActivationStatus.PENDING.value, ActivationStatus.CONFIRMED.value)

    def get_escalation_log(self):
        return json.loads(self.escalation_log_json) if self.escalation_log_json else []

    def append_log(self, event: str, **details):
        log = self.get_escalation_log()
        entry = {'event': event, 'at': datetime.utcnow().isoformat()}
        entry.update(details)
        log.append(entry)
        self.escalation_log_json = json.dumps(log)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'trigger_type': self.trigger_type,
            'status': self.status,
            'inactivity_level': self.inactivity_level,
            'days_inactive': self.days_inactive,
            'escalation_level': self.escalation_level,
            'max_escalation_level': self.max_escalation_level,
            'documents_accessible': self.documents_accessible,
            'triggered_at': _iso(self.triggered_at),
            'last_escalated_at': _iso(self.last_escalated_at),
            'cancellation_expires_at': _iso(self.cancellation_expires_at),
            'cancelled_at': _iso(self.cancelled_at),
            'completed_at': _iso(self.completed_at),
            'escalation_log': self.get_escalation_log(),
        }


class EmergencyNotification(db.Model):
    __tablename__ = 'emergency_notifications'

    id = db.Column(db.Integer, primary_key=True)
    activation_id = db.Column(db.Integer, db.ForeignKey('emergency_activations.id'), nullable=False)
    guardian_id = db.Column(db.Integer, db.ForeignKey('guardians.id'), nullable=True)
    recipient_email = db.Column(db.String(254), nullable=False)
    escalation_level = db.Column(db.Integer, nullable=False)
    template = db.Column(db.String(50), nullable=False)
    success = db.Column(db.Boolean, nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class TimeCapsule(db.Model):
    """A message delivered on a date or after the owner's death."""
    __tablename__ = 'time_capsules'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=True)
    message_type = db.Column(db.String(10), default='text', nullable=False)  # text, audio, video
    file_url = db.Column(db.String(500), nullable=True)

    recipient_email = db.Column(db.String(254), nullable=True)
    recipient_name = db.Column(db.String(100), nullable=True)

    delivery_condition = db.Column(db.String(20), default='on_date', nullable=False)  # on_date, on_death
    delivery_date = db.Column(db.Date, nullable=True)
    is_delivered = db.Column(db.Boolean, default=False, nullable=False)
    delivered_at = db.Column(db.DateTime, nullable=True)
    delivery_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_delivery_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship('User', backref=db.backref('time_capsules', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'message': self.message,
            'message_type': self.message_type,
            'file_url': self.file_url,
            'recipient_email': self.recipient_email,
            'recipient_name': self.recipient_name,
            'delivery_condition': self.delivery_condition,
            'delivery_date': _iso(self.delivery_date),
            'is_delivered': self.is_delivered,
            'delivered_at': _iso(self.delivered_at),
            'delivery_attempts': self.delivery_attempts,
            'created_at': _iso(self.created_at),
        }


class SupportTicket(db.Model):
    __tablename__ = 'support_tickets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(20), nullable=False)  # technical, legal, billing, feature_request
    priority = db.Column(db.String(10), default='medium', nullable=False)  # low, medium, high, urgent
    status = db.Column(db.String(20), default='open', nullable=False)  # open, in_progress, resolved, closed

    sentiment_score = db.Column(db.Float, nullable=True)
    complexity_score = db.Column(db.Float, nullable=True)
    ai_responses_count = db.Column(db.Integer, default=0, nullable=False)
    escalated_reason = db.Column(db.String(200), nullable=True)

    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution_time_minutes = db.Column(db.Integer, nullable=True)
    satisfaction_rating = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'description': self.description,
            'category': self.category,
            'priority': self.priority,
            'status': self.status,
            'sentiment_score': self.sentiment_score,
            'complexity_score': self.complexity_score,
            'ai_responses_count': self.ai_responses_count,
            'escalated_reason': self.escalated_reason,
            'resolved_at': _iso(self.resolved_at),
            'resolution_time_minutes': self.resolution_time_minutes,
            'satisfaction_rating': self.satisfaction_rating,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class SupportInteraction(db.Model):
    __tablename__ = 'support_interactions'

    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey('support_tickets.id'), nullable=True)
    user_id = db.Column(db.String(36), nullable=True)
    query = db.Column(db.Text, nullable=False)
    response_type = db.Column(db.String(20), nullable=False)  # rule_based, knowledge_base, escalation, self_help
    response_key = db.Column(db.String(100), nullable=True)
    confidence = db.Column(db.Float, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class KnowledgeArticle(db.Model):
    __tablename__ = 'knowledge_articles'

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(50), nullable=False)
    keywords_json = db.Column(db.Text, nullable=True)
    effectiveness_score = db.Column(db.Float, default=0.5, nullable=False)
    helpful_votes = db.Column(db.Integer, default=0, nullable=False)
    unhelpful_votes = db.Column(db.Integer, default=0, nullable=False)
    view_count = db.Column(db.Integer, default=0, nullable=False)
    published = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def get_keywords(self):
        return json.loads(self.keywords_json) if self.keywords_json else []

    def to_dict(self):
        return {
            'id': self.id,
            'slug': self.slug,
            'title': self.title,
            'category': self.category,
            'keywords': self.get_keywords(),
            'effectiveness_score': self.effectiveness_score,
        }


class BackupStatus(PyEnum):
    CREATING = 'creating'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CORRUPTED = 'corrupted'


class BackupRecord(db.Model):
    __tablename__ = 'backup_records'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    backup_type = db.Column(db.String(20), nullable=False)  # database, configuration, full
    status = db.Column(db.String(20), default=BackupStatus.CREATING.value, nullable=False)
    location = db.Column(db.String(500), nullable=True)
    size = db.Column(db.Integer, default=0, nullable=False)
    checksum = db.Column(db.String(64), nullable=True)
    compressed = db.Column(db.Boolean, default=True, nullable=False)
    retention_days = db.Column(db.Integer, default=30, nullable=False)
    record_counts_json = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    def get_record_counts(self):
        return json.loads(self.record_counts_json) if self.record_counts_json else {}

    def to_dict(self):
        return {
            'id': self.id,
            'backup_type': self.backup_type,
            'status': self.status,
            'location': self.location,
            'size': self.size,
            'checksum': self.checksum,
            'compressed': self.compressed,
            'retention_days': self.retention_days,
            'record_counts': self.get_record_counts(),
            'error_message': self.error_message,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
        }


class RestoreLog(db.Model):
    __tablename__ = 'restore_logs'

    id = db.Column(db.Integer, primary_key=True)
    backup_id = db.Column(db.String(36), nullable=False)
    status = db.Column(db.String(20), default='started', nullable=False)  # started, completed, failed
    dry_run = db.Column(db.Boolean, default=False, nullable=False)
    tables_json = db.Column(db.Text, nullable=True)
    restored_counts_json = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'backup_id': self.backup_id,
            'status': self.status,
            'dry_run': self.dry_run,
            'tables': json.loads(self.tables_json) if self.tables_json else None,
            'restored_counts': json.loads(self.restored_counts_json) if self.restored_counts_json else {},
            'error_message': self.error_message,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }


class AuditLog(db.Model):
    """
    Immutable audit trail for all significant actions.

    This table is append-only. Records are never modified or deleted.
    """
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    actor_type = db.Column(db.String(20), nullable=False)  # 'user', 'guardian', 'admin', 'system', 'public'
    actor_id = db.Column(db.String(100), nullable=True)

    action = db.Column(db.String(50), nullable=False)
    action_category = db.Column(db.String(20), nullable=False)

    # No foreign key: audit rows outlive the records they describe
    user_id = db.Column(db.String(36), nullable=True)
    resource_type = db.Column(db.String(50), nullable=False)
    resource_id = db.Column(db.String(100), nullable=True)

    details_json = db.Column(db.Text, nullable=True)

    success = db.Column(db.Boolean, nullable=False)
    error_message = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    # Integrity hash (prevents tampering)
    integrity_hash = db.Column(db.String(64), nullable=False)

    def __repr__(self):
        return f'<AuditLog {self.id} - {self.action} by {self.actor_type}>'

    def to_dict(self):
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'actor_type': self.actor_type,
            'actor_id': self.actor_id,
            'action': self.action,
            'action_category': self.action_category,
            'user_id': self.user_id,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'details': json.loads(self.details_json) if self.details_json else None,
            'success': self.success,
            'error_message': self.error_message
        }

    def compute_integrity_hash(self):
        """Compute hash of this record's content for tamper detection."""
        content = (f"{self.timestamp}{self.actor_type}{self.actor_id}{self.action}"
                   f"{self.user_id}{self.resource_type}{self.resource_id}{self.details_json}{self.success}")
        return hashlib.sha256(content.encode()).hexdigest()

    def verify_integrity(self):
        return self.integrity_hash == self.compute_integrity_hash()


class AdminSession(db.Model):
    """
    Tracks admin sessions for security auditing.
    """
    __tablename__ = 'admin_sessions'

    id = db.Column(db.Integer, primary_key=True)

    session_token = db.Column(db.String(64), unique=True, nullable=False)
    admin_username = db.Column(db.String(100), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    last_activity_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    terminated_at = db.Column(db.DateTime, nullable=True)
    termination_reason = db.Column(db.String(100), nullable=True)

    ip_address = db.Column(db.String(45), nullable=False)
    user_agent = db.Column(db.String(500), nullable=False)

    def __repr__(self):
        return f'<AdminSession {self.id} - {self.admin_username}>'

    def is_expired(self):
        return datetime.utcnow() > self.expires_at

    def terminate(self, reason='logout'):
        self.is_active = False
        self.terminated_at = datetime.utcnow()
        self.termination_reason = reason

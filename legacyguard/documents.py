"""
Document vault.

Files are stored on disk under DOCUMENT_STORAGE_DIR/<user_id>/ and tracked
in the documents table together with their SHA-256 digest. Uploads that
were encrypted in the browser are stored as opaque bytes; the server never
inspects their content.
"""

import os
import json
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Tuple

from flask import current_app
from werkzeug.utils import secure_filename

from legacyguard import db
from legacyguard.models import Document, Guardian, GuardianDocumentAccess
from legacyguard.utils import calculate_sha256, parse_date
from legacyguard.audit_logger import log_document_event, AuditAction

ALLOWED_EXTENSIONS = {'pdf', 'jpg', 'jpeg', 'png', 'doc', 'docx', 'txt'}

MIME_TYPES = {
    'pdf': 'application/pdf',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'doc': 'application/msword',
    'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'txt': 'text/plain',
}

# Keywords are matched against the lowercased file name, title and description.
# The first matching rule wins.
CATEGORIZATION_RULES = [
    ('medical_directive', 'medical', ['directive', 'living will']),
    ('will', 'will', ['will', 'testament', 'zaveť', 'zavet', 'závěť']),
    ('power_of_attorney', 'legal', ['power of attorney', 'power_of_attorney', 'plna moc', 'plná moc']),
    ('trust_document', 'legal', ['trust']),
    ('medical_record', 'medical', ['medical', 'health', 'doctor', 'hospital']),
    ('insurance_policy', 'insurance', ['insurance', 'policy', 'poistka', 'pojistka']),
    ('property_deed', 'property', ['deed', 'property', 'house', 'apartment', 'land']),
    ('financial_account', 'financial', ['bank', 'account', 'investment', 'savings', 'statement']),
    ('identification', 'identity', ['passport', 'identity', 'id card', 'id_card', 'license', 'licence']),
    ('contract', 'legal', ['contract', 'agreement', 'smlouva', 'zmluva']),
]

LEGAL_SIGNIFICANCE = {
    'will': 'critical',
    'trust_document': 'critical',
    'power_of_attorney': 'high',
    'medical_directive': 'high',
    'property_deed': 'high',
    'contract': 'medium',
    'insurance_policy': 'medium',
    'financial_account': 'medium',
    'medical_record': 'low',
    'identification': 'low',
}

WITNESSED_DOCUMENT_TYPES = {'will', 'power_of_attorney', 'trust_document'}

# Typical validity used to suggest an expiry date
SUGGESTED_VALIDITY_DAYS = {
    'identification': 3650,
    'insurance_policy': 365,
}

UPDATABLE_FIELDS = ('title', 'description', 'category', 'tags', 'expires_at')


class DocumentError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def file_extension(filename: str) -> str:
    if '.' not in filename:
        return ''
    return filename.rsplit('.', 1)[1].lower()


def categorize_document(file_name: str, title: Optional[str] = None,
                        description: Optional[str] = None,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Rule-based categorization from names only.

    Returns:
        Dict with category, document_type, legal_significance,
        requires_witnesses and suggested_expiry (datetime or None)
    """
    text = ' '.join(part for part in (file_name, title, description) if part).lower()
    document_type, category = 'other', 'other'

    for rule_type, rule_category, keywords in CATEGORIZATION_RULES:
        if any(keyword in text for keyword in keywords):
            document_type, category = rule_type, rule_category
            break

    suggested_expiry = None
    validity = SUGGESTED_VALIDITY_DAYS.get(document_type)
    if validity:
        suggested_expiry = (now or datetime.utcnow()) + timedelta(days=validity)

    return {
        'category': category,
        'document_type': document_type,
        'legal_significance': LEGAL_SIGNIFICANCE.get(document_type, 'none'),
        'requires_witnesses': document_type in WITNESSED_DOCUMENT_TYPES,
        'suggested_expiry': suggested_expiry,
    }


def _user_storage_dir(user_id: str) -> str:
    path = os.path.join(current_app.config['DOCUMENT_STORAGE_DIR'], user_id)
    os.makedirs(path, exist_ok=True)
    return path


def _expiry_from(value: Any) -> Optional[datetime]:
    parsed = parse_date(value)
    return datetime(parsed.year, parsed.month, parsed.day) if parsed else None


def upload_document(user_id: str, file_name: str, data: bytes,
                    metadata: Optional[Dict[str, Any]] = None) -> Document:
    """
    Store an uploaded file.

    Args:
        user_id: Owner of the document
        file_name: Original file name as sent by the client
        data: File content (ciphertext for encrypted uploads)
        metadata: Validated metadata (title, description, category, tags,
                  expires_at, is_encrypted, encryption_metadata)

    Raises:
        DocumentError: empty file, disallowed extension (400), too large (413)
    """
    metadata = metadata or {}
    safe_name = secure_filename(file_name or '')
    extension = file_extension(safe_name)

    if not safe_name or extension not in ALLOWED_EXTENSIONS:
        raise DocumentError(
            f'File type not allowed. Allowed types: {", ".join(sorted(ALLOWED_EXTENSIONS))}'
        )
    if not data:
        raise DocumentError('Uploaded file is empty')

    max_size = current_app.config['MAX_DOCUMENT_SIZE']
    if len(data) > max_size:
        raise DocumentError(f'File exceeds the maximum size of {max_size // (1024 * 1024)} MB', 413)

    classification = categorize_document(safe_name, metadata.get('title'), metadata.get('description'))
    stored_name = f'{secrets.token_hex(8)}_{safe_name}'
    file_path = os.path.join(_user_storage_dir(user_id), stored_name)
    with open(file_path, 'wb') as f:
        f.write(data)

    expires_at = _expiry_from(metadata.get('expires_at')) or classification['suggested_expiry']
    encryption_metadata = metadata.get('encryption_metadata')

    document = Document(
        user_id=user_id,
        file_name=safe_name,
        file_path=file_path,
        mime_type=MIME_TYPES.get(extension, 'application/octet-stream'),
        file_size=len(data),
        sha256=calculate_sha256(data),
        title=metadata.get('title') or safe_name,
        description=metadata.get('description'),
        category=metadata.get('category') or classification['category'],
        document_type=classification['document_type'],
        tags_json=json.dumps(metadata.get('tags') or []),
        legal_significance=classification['legal_significance'],
        requires_witnesses=classification['requires_witnesses'],
        is_encrypted=bool(metadata.get('is_encrypted')),
        encryption_metadata_json=json.dumps(encryption_metadata) if encryption_metadata else None,
        expires_at=expires_at,
    )
    db.session.add(document)
    db.session.commit()

    log_document_event(AuditAction.DOCUMENT_UPLOADED, user_id, document.id, details={
        'file_size': document.file_size,
        'category': document.category,
        'is_encrypted': document.is_encrypted,
    })
    current_app.logger.info(f'Stored document {document.id} for user {user_id} ({document.file_size} bytes)')
    return document


def list_documents(user_id: str, category: Optional[str] = None,
                   search: Optional[str] = None) -> List[Document]:
    query = Document.query.filter_by(user_id=user_id)
    if category:
        query = query.filter(Document.category == category)
    if search:
        pattern = f'%{search.strip()}%'
        query = query.filter(db.or_(
            Document.title.ilike(pattern),
            Document.description.ilike(pattern),
            Document.file_name.ilike(pattern),
        ))
    return query.order_by(Document.created_at.desc()).all()


def get_document(user_id: str, document_id: int) -> Document:
    document = Document.query.filter_by(id=document_id, user_id=user_id).first()
    if document is None:
        raise DocumentError('Document not found', 404)
    return document


def update_document(user_id: str, document_id: int, data: Dict[str, Any]) -> Document:
    document = get_document(user_id, document_id)
    changed = []
    for key in UPDATABLE_FIELDS:
        if key not in data:
            continue
        if key == 'tags':
            document.tags_json = json.dumps(data['tags'] or [])
        elif key == 'expires_at':
            document.expires_at = _expiry_from(data['expires_at'])
        else:
            setattr(document, key, data[key])
        changed.append(key)

    document.updated_at = datetime.utcnow()
    db.session.commit()
    log_document_event(AuditAction.DOCUMENT_UPDATED, user_id, document.id, details={'fields': changed})
    return document


def delete_document(user_id: str, document_id: int):
    """Delete the record, its guardian shares and the stored file."""
    document = get_document(user_id, document_id)
    file_path = document.file_path
    db.session.delete(document)
    db.session.commit()

    if file_path and os.path.exists(file_path):
        os.remove(file_path)

    log_document_event(AuditAction.DOCUMENT_DELETED, user_id, document_id)


def read_document(document: Document, actor_type: str = 'user', actor_id: Optional[str] = None) -> bytes:
    """
    Read a stored file and check it against the recorded digest.

    Raises:
        DocumentError: file missing (404) or digest mismatch (500)
    """
    if not document.file_path or not os.path.exists(document.file_path):
        raise DocumentError('Stored file is missing', 404)

    with open(document.file_path, 'rb') as f:
        data = f.read()

    if calculate_sha256(data) != document.sha256:
        current_app.logger.error(f'Integrity check failed for document {document.id}')
        raise DocumentError('Document integrity check failed', 500)

    log_document_event(AuditAction.DOCUMENT_DOWNLOADED, document.user_id, document.id,
                       details={'actor_id': actor_id}, actor_type=actor_type)
    return data


def download_document(user_id: str, document_id: int) -> Tuple[Document, bytes]:
    document = get_document(user_id, document_id)
    return document, read_document(document)


def get_document_stats(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    week_ago = now - timedelta(days=7)
    documents = Document.query.filter_by(user_id=user_id).all()

    stats = {
        'total': len(documents),
        'total_size': sum(d.file_size for d in documents),
        'by_category': {},
        'by_type': {},
        'recent_uploads': 0,
        'encrypted': 0,
        'expired': 0,
    }
    for document in documents:
        stats['by_category'][document.category] = stats['by_category'].get(document.category, 0) + 1
        stats['by_type'][document.document_type] = stats['by_type'].get(document.document_type, 0) + 1
        if document.created_at > week_ago:
            stats['recent_uploads'] += 1
        if document.is_encrypted:
            stats['encrypted'] += 1
        if document.expires_at and document.expires_at < now:
            stats['expired'] += 1
    return stats


def get_shared_document(guardian: Guardian, document_id: int) -> Document:
    """A document shared with the guardian, or DocumentError(404)."""
    document = Document.query.join(
        GuardianDocumentAccess, GuardianDocumentAccess.document_id == Document.id
    ).filter(
        GuardianDocumentAccess.guardian_id == guardian.id,
        Document.id == document_id
    ).first()
    if document is None:
        raise DocumentError('Document not found', 404)
    return document


def find_expiring_documents(within_days: int, now: Optional[datetime] = None) -> List[Document]:
    """Documents whose expiry falls between now and now + within_days."""
    now = now or datetime.utcnow()
    return Document.query.filter(
        Document.expires_at.isnot(None),
        Document.expires_at >= now,
        Document.expires_at <= now + timedelta(days=within_days)
    ).order_by(Document.expires_at.asc()).all()

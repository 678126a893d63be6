"""
Trust Seal: a confidence certificate for generated wills.

The score combines data completeness (40%), rule-based legal compliance
(40%) and a heuristic confidence in the generated text (20%). Seals are
valid for a year and carry an HMAC signature so a verifier can tell a
genuine seal from an edited database row.
"""

import re
import hmac
import json
import hashlib
from datetime import datetime, timedelta
from typing import Dict, List, Any, Optional, Tuple

from flask import current_app

from legacyguard import db
from legacyguard.models import TrustSeal, Will, AuditLog, generate_uuid
from legacyguard.audit_logger import log_action, AuditAction, AuditCategory
from legacyguard.utils import chunk_list

SEAL_VALIDITY_DAYS = 365
EXPIRY_WARNING_DAYS = 30
LOW_CONFIDENCE_THRESHOLD = 70
BATCH_SIZE = 10
SIGNATURE_PREFIX = 'ts-sig-'

LEVELS = ['Bronze', 'Silver', 'Gold', 'Platinum']

LEVEL_DESCRIPTIONS = {
    'Platinum': 'Exceptional legal compliance with professional review. Highest confidence level.',
    'Gold': 'High legal compliance with comprehensive AI validation. Very reliable.',
    'Silver': 'Good legal compliance with standard validation. Suitable for most cases.',
    'Bronze': 'Basic legal compliance. Consider adding more details for higher confidence.',
}

REQUIRED_FIELDS = ['full_name', 'birth_date', 'citizenship', 'executor']
IMPORTANT_FIELDS = [
    'spouse_name', 'children', 'alternate_executor', 'guardian',
    'funeral_wishes', 'digital_assets', 'special_instructions',
]
LEGAL_TERMS = ['hereby', 'testament', 'executor', 'beneficiary', 'assets', 'estate']

SEAL_ID_PATTERN = r'[a-f0-9-]{36}'


class TrustSealError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _filled(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, dict):
        return bool(str(value.get('name') or '').strip())
    if isinstance(value, list):
        return len(value) > 0
    return False


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def calculate_data_completeness(form: Dict[str, Any]) -> float:
    """Required fields weigh 60, important optional fields 30, assets 10."""
    required_complete = sum(1 for name in REQUIRED_FIELDS if _filled(form.get(name)))
    required_score = required_complete / len(REQUIRED_FIELDS) * 60

    has_children = bool(form.get('has_children'))
    optional_complete = 0
    for name in IMPORTANT_FIELDS:
        if name in ('children', 'guardian') and not has_children:
            optional_complete += 1
        elif _filled(form.get(name)):
            optional_complete += 1
    optional_score = optional_complete / len(IMPORTANT_FIELDS) * 30

    asset_score = 10 if _filled(form.get('assets')) else 0
    return required_score + optional_score + asset_score


def check_legal_compliance(form: Dict[str, Any], will_text: str) -> Tuple[int, List[str]]:
    """
    Rule-based compliance check.

    Returns:
        Tuple of (score 0-100, issues)
    """
    score = 100
    issues = []
    jurisdiction = form.get('jurisdiction') or 'SK'

    if not _filled(form.get('executor')):
        score -= 30
        issues.append('Missing executor')

    if jurisdiction == 'CZ' and form.get('will_type') == 'witnessed':
        if len(form.get('witnesses') or []) < 2:
            score -= 20
            issues.append('Missing witnesses for Czech witnessed will')

    if form.get('marital_status') == 'married' and not _filled(form.get('spouse_name')):
        score -= 15
        issues.append('Spouse name should be specified for married individuals')

    if form.get('has_children'):
        if not form.get('children'):
            score -= 10
            issues.append('Children information missing')
        if not _filled(form.get('guardian')):
            score -= 15
            issues.append('Guardian not specified for minor children')

    assets = form.get('assets') or []
    if not assets:
        score -= 20
        issues.append('No assets specified')
    elif any(not _filled(asset.get('beneficiary')) for asset in assets):
        score -= 10
        issues.append('Some assets lack beneficiary designation')

    if will_text:
        if not form.get('full_name') or form['full_name'] not in will_text:
            score -= 5
            issues.append('Will does not properly reference testator name')
        if 'executor' not in will_text.lower():
            score -= 10
            issues.append('Will does not properly reference executor')

    return max(0, score), issues


def calculate_content_confidence(will_text: str) -> float:
    if not will_text or len(will_text) < 100:
        return 20

    lowered = will_text.lower()
    confidence = 70.0
    found = sum(1 for term in LEGAL_TERMS if term in lowered)
    confidence += found / len(LEGAL_TERMS) * 20
    if 'ARTICLE' in will_text or 'ČLÁNOK' in will_text:
        confidence += 5
    if 'signature' in will_text or 'podpis' in will_text:
        confidence += 5
    return min(100.0, confidence)


def calculate_trust_score(form: Dict[str, Any], will_text: str) -> int:
    completeness = calculate_data_completeness(form)
    legal_score, _ = check_legal_compliance(form, will_text)
    content = calculate_content_confidence(will_text)
    return int(round(completeness * 0.4 + legal_score * 0.4 + content * 0.2))


def score_breakdown(form: Dict[str, Any], will_text: str) -> Dict[str, Any]:
    """Component scores stored with the seal."""
    legal_score, issues = check_legal_compliance(form, will_text)
    return {
        'data_completeness': round(calculate_data_completeness(form), 1),
        'legal_rules_check': {'score': legal_score, 'issues': issues},
        'content_confidence': round(calculate_content_confidence(will_text), 1),
    }


def get_trust_seal_level(score: int) -> str:
    if score >= 91:
        return 'Platinum'
    if score >= 71:
        return 'Gold'
    if score >= 41:
        return 'Silver'
    return 'Bronze'


def get_trust_seal_description(level: str) -> str:
    return LEVEL_DESCRIPTIONS[level]


def get_trust_seal_recommendations(level: str, form: Dict[str, Any]) -> List[str]:
    recommendations = []
    if level in ('Bronze', 'Silver'):
        if not _filled(form.get('alternate_executor')):
            recommendations.append('Add an alternate executor for redundancy')
        if form.get('has_children') and not _filled(form.get('guardian')):
            recommendations.append('Specify a guardian for minor children')
        if not _filled(form.get('funeral_wishes')):
            recommendations.append('Include funeral and burial preferences')
        if not _filled(form.get('digital_assets')):
            recommendations.append('Add instructions for digital assets and online accounts')
    if level != 'Platinum':
        recommendations.append('Consider professional legal review for Platinum level certification')
    return recommendations


# ---------------------------------------------------------------------------
# Signing and issuing
# ---------------------------------------------------------------------------

def compute_signature(seal_id: str, will_id: int, user_id: str, level: str, score: int) -> str:
    message = f'{seal_id}:{will_id}:{user_id}:{level}:{score}'.encode('utf-8')
    key = current_app.config['TRUST_SEAL_SECRET'].encode('utf-8')
    return SIGNATURE_PREFIX + hmac.new(key, message, hashlib.sha256).hexdigest()


def verify_signature(seal: TrustSeal) -> bool:
    if not seal.digital_signature or not seal.digital_signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(seal.id, seal.will_id, seal.user_id, seal.level, seal.confidence_score)
    return hmac.compare_digest(expected, seal.digital_signature)


def issue_trust_seal(will: Will, form: Dict[str, Any], will_text: str,
                     now: Optional[datetime] = None) -> TrustSeal:
    """Score a generated will and persist a signed seal for it."""
    now = now or datetime.utcnow()
    score = calculate_trust_score(form, will_text)
    level = get_trust_seal_level(score)

    seal = TrustSeal(
        id=generate_uuid(),
        user_id=will.user_id,
        will_id=will.id,
        level=level,
        confidence_score=score,
        validations_json=json.dumps(score_breakdown(form, will_text), sort_keys=True),
        issued_at=now,
        valid_until=now + timedelta(days=SEAL_VALIDITY_DAYS),
    )
    seal.digital_signature = compute_signature(seal.id, will.id, will.user_id, level, score)
    db.session.add(seal)
    db.session.commit()

    log_action(
        action=AuditAction.TRUST_SEAL_ISSUED,
        action_category=AuditCategory.CREATE,
        resource_type='trust_seal',
        resource_id=seal.id,
        user_id=will.user_id,
        details={'level': level, 'score': score, 'will_id': will.id}
    )
    return seal


def generate_public_verification_url(seal_id: str) -> str:
    return f"{current_app.config['VERIFICATION_BASE_URL'].rstrip('/')}/{seal_id}"


def is_valid_verification_url(url: str) -> bool:
    base = re.escape(current_app.config['VERIFICATION_BASE_URL'].rstrip('/'))
    return re.fullmatch(f'{base}/{SEAL_ID_PATTERN}', url or '') is not None


def extract_seal_id_from_url(url: str) -> Optional[str]:
    if not is_valid_verification_url(url):
        return None
    return url.rsplit('/', 1)[1]


def generate_certificate(seal: TrustSeal) -> Dict[str, Any]:
    certificate = seal.to_dict()
    certificate.update({
        'description': get_trust_seal_description(seal.level),
        'verification_url': generate_public_verification_url(seal.id),
    })
    return certificate


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def _log_verification(seal_id: str, result: str, requester: Optional[Dict[str, Any]]):
    requester = requester or {}
    log_action(
        action=AuditAction.TRUST_SEAL_VERIFIED,
        action_category=AuditCategory.READ,
        resource_type='trust_seal',
        resource_id=seal_id,
        actor_type='public' if not requester.get('user_id') else 'user',
        actor_id=requester.get('user_id') or requester.get('ip_address'),
        details={
            'verification_result': result,
            'ip_address': requester.get('ip_address'),
            'user_agent': requester.get('user_agent'),
        },
        success=result == 'valid'
    )


def verify_trust_seal(seal_id: str, include_metadata: bool = False, log_verification: bool = False,
                      requester: Optional[Dict[str, Any]] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Publicly verify a seal.

    Returns:
        Dict with 'valid' and either 'reason' or level, dates and warnings
    """
    now = now or datetime.utcnow()
    seal = db.session.get(TrustSeal, seal_id) if seal_id else None

    if seal is None or seal.revoked_at is not None:
        if log_verification:
            _log_verification(seal_id, 'revoked' if seal else 'invalid', requester)
        return {'valid': False, 'reason': 'Seal not found or has been revoked'}

    if now > seal.valid_until:
        if log_verification:
            _log_verification(seal_id, 'expired', requester)
        return {
            'valid': False,
            'reason': 'Seal has expired',
            'level': seal.level,
            'issued_at': seal.issued_at.isoformat(),
            'valid_until': seal.valid_until.isoformat(),
        }

    if not verify_signature(seal):
        current_app.logger.warning(f'Trust seal {seal_id} failed signature verification')
        if log_verification:
            _log_verification(seal_id, 'invalid', requester)
        return {
            'valid': False,
            'reason': 'Invalid digital signature',
            'warnings': ['The digital signature could not be verified. The seal may have been tampered with.'],
        }

    warnings = []
    if seal.valid_until < now + timedelta(days=EXPIRY_WARNING_DAYS):
        warnings.append(f'This Trust Seal will expire within {EXPIRY_WARNING_DAYS} days')
    if seal.confidence_score < LOW_CONFIDENCE_THRESHOLD:
        warnings.append('This Trust Seal has a lower confidence score. Consider professional review.')

    if log_verification:
        _log_verification(seal_id, 'valid', requester)

    result = {
        'valid': True,
        'level': seal.level,
        'description': get_trust_seal_description(seal.level),
        'issued_at': seal.issued_at.isoformat(),
        'valid_until': seal.valid_until.isoformat(),
        'warnings': warnings,
    }
    if include_metadata:
        will = seal.will
        result['metadata'] = {
            'confidence_score': seal.confidence_score,
            'validations': seal.get_validations(),
            'document_info': {
                'jurisdiction': will.jurisdiction,
                'will_type': will.will_type,
                'created_at': will.created_at.isoformat(),
            } if will else None,
        }
    return result


def get_verification_history(seal_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    logs = AuditLog.query.filter_by(
        action=AuditAction.TRUST_SEAL_VERIFIED, resource_id=seal_id
    ).order_by(AuditLog.timestamp.desc()).limit(limit).all()

    history = []
    for log in logs:
        details = json.loads(log.details_json) if log.details_json else {}
        history.append({
            'validation_id': log.id,
            'seal_id': log.resource_id,
            'validated_at': log.timestamp.isoformat(),
            'validated_by': log.actor_id or 'anonymous',
            'result': details.get('verification_result', 'unknown'),
            'ip_address': details.get('ip_address'),
            'user_agent': details.get('user_agent'),
        })
    return history


def batch_verify(seal_ids: List[str], now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
    results = {}
    for batch in chunk_list(list(seal_ids), BATCH_SIZE):
        for seal_id in batch:
            results[seal_id] = verify_trust_seal(seal_id, now=now)
    return results


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def _get_seal(seal_id: str) -> TrustSeal:
    seal = db.session.get(TrustSeal, seal_id)
    if seal is None:
        raise TrustSealError('Trust seal not found', 404)
    return seal


def revoke_trust_seal(seal_id: str, reason: str, revoked_by: str) -> TrustSeal:
    seal = _get_seal(seal_id)
    if seal.revoked_at is not None:
        raise TrustSealError('Trust seal is already revoked', 409)

    seal.revoked_at = datetime.utcnow()
    seal.revocation_reason = reason
    db.session.commit()

    log_action(
        action=AuditAction.TRUST_SEAL_REVOKED,
        action_category=AuditCategory.UPDATE,
        resource_type='trust_seal',
        resource_id=seal.id,
        user_id=seal.user_id,
        actor_type='admin',
        actor_id=revoked_by,
        details={'reason': reason}
    )
    return seal


def renew_trust_seal(seal_id: str, extension_days: int = SEAL_VALIDITY_DAYS,
                     renewed_by: Optional[str] = None) -> TrustSeal:
    """Extend validity from the later of now and the current expiry."""
    if extension_days <= 0:
        raise TrustSealError('Extension must be a positive number of days')

    seal = _get_seal(seal_id)
    if seal.revoked_at is not None:
        raise TrustSealError('A revoked trust seal cannot be renewed', 409)

    old_valid_until = seal.valid_until
    base = max(old_valid_until, datetime.utcnow())
    seal.valid_until = base + timedelta(days=extension_days)
    db.session.commit()

    log_action(
        action=AuditAction.TRUST_SEAL_RENEWED,
        action_category=AuditCategory.UPDATE,
        resource_type='trust_seal',
        resource_id=seal.id,
        user_id=seal.user_id,
        actor_type='admin' if renewed_by else 'system',
        actor_id=renewed_by,
        details={
            'old_valid_until': old_valid_until.isoformat(),
            'new_valid_until': seal.valid_until.isoformat(),
            'extension_days': extension_days,
        }
    )
    return seal


def get_trust_seal_statistics(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    seals = TrustSeal.query.all()

    total = len(seals)
    revoked = sum(1 for s in seals if s.revoked_at is not None)
    expired = sum(1 for s in seals if s.revoked_at is None and s.valid_until < now)
    by_level = {level: 0 for level in LEVELS}
    for seal in seals:
        by_level[seal.level] = by_level.get(seal.level, 0) + 1

    average = sum(s.confidence_score for s in seals) / total if total else 0
    return {
        'total_seals': total,
        'valid_seals': total - revoked - expired,
        'expired_seals': expired,
        'revoked_seals': revoked,
        'seals_by_level': by_level,
        'average_confidence_score': int(round(average)),
    }

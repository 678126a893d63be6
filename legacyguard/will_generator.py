"""
Will generation service.

Flow for a new will:
1. Validate the form (result written to the audit trail)
2. Persist a Will record; its generation_timestamp drives every date in
   the rendered document
3. Build the context, render the clause plan, produce text and PDF
4. Store the PDF under WILL_STORAGE_DIR/<user_id>/ with its SHA-256 and
   lock the record
5. Issue a Trust Seal and email the PDF to the owner

Locked wills are never modified; regeneration creates version n+1.
"""

import os
from datetime import datetime
from typing import Dict, List, Any, Optional, Tuple

from flask import current_app

from legacyguard import db
from legacyguard.models import User, Will, WillStatus, TrustSeal
from legacyguard.validation import validate_will_payload, ValidationResult
from legacyguard.context_builder import build_context
from legacyguard.clause_renderer import render_document_plan, plan_to_text, document_plan_to_dict, clauses_summary
from legacyguard.pdf_generator import generate_pdf_with_footer, verify_pdf_integrity
from legacyguard.jurisdictions import (
    get_framework, required_witnesses, signing_instructions, jurisdiction_recommendations
)
from legacyguard.trust_seal import (
    issue_trust_seal, calculate_trust_score, score_breakdown, get_trust_seal_level,
    get_trust_seal_recommendations, generate_public_verification_url
)
from legacyguard.audit_logger import log_validation_result, log_will_generated
from legacyguard.email_service import send_template_email
from legacyguard.utils import short_hash


class WillGenerationError(Exception):
    def __init__(self, message: str, status_code: int = 400,
                 validation: Optional[ValidationResult] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.validation = validation


def _validate(user: User, payload: Dict[str, Any]):
    result = validate_will_payload(payload)
    log_validation_result(user.id, result.is_valid, result.to_dict()['errors'])
    if not result.is_valid:
        raise WillGenerationError('Will form is invalid', 422, validation=result)
    return result


def _pdf_path(will: Will) -> str:
    directory = os.path.join(current_app.config['WILL_STORAGE_DIR'], will.user_id)
    os.makedirs(directory, exist_ok=True)
    stamp = will.generation_timestamp.strftime('%Y%m%d_%H%M%S')
    return os.path.join(directory, f'will_{will.id:08d}_v{will.version_number}_{stamp}.pdf')


def render_will(payload: Dict[str, Any], generation_timestamp: datetime) -> Tuple[str, bytes, str]:
    """
    Render a validated payload.

    Returns:
        Tuple of (plain text, PDF bytes, PDF SHA-256)
    """
    context = build_context(payload, generation_timestamp)
    plan = render_document_plan(context)
    pdf_bytes, pdf_hash = generate_pdf_with_footer(plan, generation_timestamp)
    return plan_to_text(plan), pdf_bytes, pdf_hash


def _render_and_store(will: Will, payload: Dict[str, Any], lock_reason: str) -> bytes:
    """Render the will, write its PDF and lock the record. Failures mark the will as errored."""
    will.status = WillStatus.GENERATING.value
    db.session.commit()

    try:
        text, pdf_bytes, pdf_hash = render_will(payload, will.generation_timestamp)
        path = _pdf_path(will)
        with open(path, 'wb') as f:
            f.write(pdf_bytes)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f'Will {will.id} generation failed: {e}')
        will.status = WillStatus.ERROR.value
        will.error_message = str(e)
        db.session.commit()
        raise WillGenerationError('Failed to generate will', 500) from e

    will.content_text = text
    will.pdf_path = path
    will.pdf_sha256 = pdf_hash
    will.updated_at = datetime.utcnow()
    will.lock(reason=lock_reason)
    db.session.commit()
    return pdf_bytes


def _send_will_email(user: User, will: Will, pdf_bytes: bytes):
    sent, error = send_template_email(user.email, 'will_generated', {
        'user_name': user.full_name,
        'will_type': will.will_type,
        'jurisdiction': will.jurisdiction,
        'document_hash': short_hash(will.pdf_sha256),
    }, attachments=[(f'will_v{will.version_number}.pdf', pdf_bytes)], user_id=user.id)
    if not sent:
        current_app.logger.warning(f'Will {will.id} generated but email failed: {error}')


def generate_will(user: User, payload: Dict[str, Any],
                  generation_timestamp: Optional[datetime] = None) -> Tuple[Will, TrustSeal]:
    """
    Validate, render, store and seal a new will (version 1).

    Raises:
        WillGenerationError: invalid form (422, carries the ValidationResult)
                             or rendering failure (500)
    """
    _validate(user, payload)

    will = Will(
        user_id=user.id,
        jurisdiction=payload['jurisdiction'],
        will_type=payload['will_type'],
        generation_timestamp=(generation_timestamp or datetime.utcnow()).replace(microsecond=0),
        status=WillStatus.PENDING.value,
    )
    will.set_payload(payload)
    db.session.add(will)
    db.session.commit()

    pdf_bytes = _render_and_store(will, payload, 'generation_complete')
    log_will_generated(user.id, will.id, will.pdf_sha256)

    seal = issue_trust_seal(will, payload, will.content_text)
    _send_will_email(user, will, pdf_bytes)

    current_app.logger.info(f'Generated will {will.id} for user {user.id} ({seal.level} seal)')
    return will, seal


def regenerate_will(user: User, will_id: int, payload: Optional[Dict[str, Any]] = None,
                    generation_timestamp: Optional[datetime] = None) -> Tuple[Will, TrustSeal]:
    """
    Create version n+1 of a locked will, optionally with an updated form.

    Raises:
        WillGenerationError: not found (404), not regenerable (409),
                             invalid form (422), rendering failure (500)
    """
    original = get_will(user.id, will_id)
    if not original.can_regenerate():
        raise WillGenerationError('Will cannot be regenerated (not completed or no PDF)', 409)

    if payload is not None:
        _validate(user, payload)

    new_will = original.create_duplicate()
    new_will.generation_timestamp = (generation_timestamp or datetime.utcnow()).replace(microsecond=0)
    if payload is not None:
        new_will.set_payload(payload)
        new_will.jurisdiction = payload['jurisdiction']
        new_will.will_type = payload['will_type']
    db.session.add(new_will)
    db.session.commit()

    form = new_will.get_payload()
    pdf_bytes = _render_and_store(new_will, form, 'regeneration_complete')
    log_will_generated(user.id, new_will.id, new_will.pdf_sha256, is_regeneration=True)

    seal = issue_trust_seal(new_will, form, new_will.content_text)
    _send_will_email(user, new_will, pdf_bytes)
    return new_will, seal


def preview_will(payload: Dict[str, Any], generation_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Validate and render without storing anything.

    Returns:
        Dict with validation, and for a valid form the text, plan, clause
        summary and the trust score the will would receive
    """
    result = validate_will_payload(payload)
    preview = {'validation': result.to_dict()}
    if not result.is_valid:
        return preview

    timestamp = (generation_timestamp or datetime.utcnow()).replace(microsecond=0)
    context = build_context(payload, timestamp)
    plan = render_document_plan(context)
    text = plan_to_text(plan)
    score = calculate_trust_score(payload, text)
    level = get_trust_seal_level(score)

    preview.update({
        'text': text,
        'document_plan': document_plan_to_dict(plan),
        'clauses': clauses_summary(context),
        'context': context.to_dict(),
        'trust_score': score,
        'trust_level': level,
        'score_breakdown': score_breakdown(payload, text),
        'recommendations': get_trust_seal_recommendations(level, payload),
    })
    return preview


def list_wills(user_id: str) -> List[Will]:
    return Will.query.filter_by(user_id=user_id).order_by(Will.version_number.desc(), Will.id.desc()).all()


def get_will(user_id: str, will_id: int) -> Will:
    will = Will.query.filter_by(id=will_id, user_id=user_id).first()
    if will is None:
        raise WillGenerationError('Will not found', 404)
    return will


def latest_seal(will: Will) -> Optional[TrustSeal]:
    return will.trust_seals.order_by(TrustSeal.issued_at.desc()).first()


def will_summary(will: Will) -> Dict[str, Any]:
    data = will.to_dict()
    seal = latest_seal(will)
    data['trust_seal'] = seal.to_dict() if seal else None
    data['verification_url'] = generate_public_verification_url(seal.id) if seal else None
    return data


def read_will_pdf(will: Will) -> bytes:
    """
    Read the stored PDF and verify it against the recorded hash.

    Raises:
        WillGenerationError: no PDF (404) or hash mismatch (500)
    """
    if not will.pdf_path or not os.path.exists(will.pdf_path):
        raise WillGenerationError('Will PDF not found', 404)

    with open(will.pdf_path, 'rb') as f:
        pdf_bytes = f.read()

    if not verify_pdf_integrity(pdf_bytes, will.pdf_sha256):
        current_app.logger.error(f'PDF integrity check failed for will {will.id}')
        raise WillGenerationError('Will integrity check failed', 500)
    return pdf_bytes


def get_signing_instructions(will: Will) -> Dict[str, Any]:
    """How to execute a generated will in its jurisdiction."""
    framework = get_framework(will.jurisdiction)
    return {
        'will_id': will.id,
        'jurisdiction': will.jurisdiction,
        'jurisdiction_name': framework['name'],
        'will_type': will.will_type,
        'witnesses_required': required_witnesses(will.jurisdiction, will.will_type),
        'notary_required': framework['notary_required'].get(will.will_type, False),
        'steps': signing_instructions(will.jurisdiction, will.will_type),
        'recommendations': jurisdiction_recommendations(will.jurisdiction),
    }

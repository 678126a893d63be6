"""
Flask routes for the LegacyGuard JSON API.

Blueprints:
- api: account, guardian, document, will, time capsule, emergency and
  support endpoints (token authenticated, CSRF exempt)
- verify: public Trust Seal verification

Domain exceptions raised by the service modules are translated into
{'ok': False, 'error': ...} responses with their status code.
"""

import io
import json

from flask import Blueprint, request, jsonify, send_file, current_app, g

from legacyguard.models import TrustSeal
from legacyguard.validation import (
    validate_registration, validate_will_payload, validate_guardian_payload,
    validate_document_metadata, validate_time_capsule, validate_support_ticket,
    coerce_to_bool
)
from legacyguard.security import (
    csrf, rate_limit, sanitize_payload, login_required, guardian_required,
    check_abuse, get_client_ip
)
from legacyguard.accounts import (
    AccountError, create_user, check_in, rotate_api_token,
    generate_recovery_kit, verify_recovery_kit
)
from legacyguard.guardians import (
    GuardianError, invite_guardian, get_guardians, get_guardian, update_guardian,
    get_invitation_details, accept_invitation, decline_invitation, resend_invitation,
    revoke_guardian, delete_guardian, grant_document_access, revoke_document_access,
    get_shared_documents
)
from legacyguard.documents import (
    DocumentError, upload_document, list_documents, get_document, update_document,
    delete_document, download_document, get_document_stats, get_shared_document,
    read_document, categorize_document
)
from legacyguard.will_generator import (
    WillGenerationError, generate_will, regenerate_will, preview_will, list_wills,
    get_will, will_summary, read_will_pdf, get_signing_instructions
)
from legacyguard.trust_seal import (
    TrustSealError, verify_trust_seal, batch_verify, generate_certificate,
    generate_public_verification_url
)
from legacyguard.time_capsules import (
    TimeCapsuleError, create_time_capsule, list_time_capsules, get_time_capsule,
    delete_time_capsule, get_time_capsule_analytics
)
from legacyguard.dead_mans_switch import (
    DeadMansSwitchError, get_emergency_status, trigger_activation, cancel_activation
)
from legacyguard.support import (
    SupportError, generate_support_response, create_support_ticket, list_tickets,
    get_ticket, rate_ticket, analyze_ticket_intent, search_knowledge_base, get_article,
    vote_on_article, get_knowledge_base_stats
)
from legacyguard.audit_logger import get_audit_trail_for_user

MAX_BATCH_VERIFY = 50

# Create blueprints
api_bp = Blueprint('api', __name__, url_prefix='/api')
verify_bp = Blueprint('verify', __name__, url_prefix='/verify')

# JSON API clients authenticate with bearer tokens, not cookies
csrf.exempt(api_bp)
csrf.exempt(verify_bp)

api_bp.before_request(check_abuse)
verify_bp.before_request(check_abuse)


DOMAIN_ERRORS = (
    AccountError, GuardianError, DocumentError, TimeCapsuleError,
    DeadMansSwitchError, TrustSealError, SupportError,
)


@api_bp.errorhandler(WillGenerationError)
def handle_will_error(error: WillGenerationError):
    if error.validation is not None:
        return jsonify(error.validation.to_dict()), error.status_code
    return jsonify({'ok': False, 'error': error.message}), error.status_code


def handle_domain_error(error):
    return jsonify({'ok': False, 'error': error.message}), error.status_code


for _error_class in DOMAIN_ERRORS:
    api_bp.register_error_handler(_error_class, handle_domain_error)


def _json_payload(skip_keys=()):
    """Sanitized JSON object from the request body, or None."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return None
    return sanitize_payload(payload, skip_keys)


def _missing_payload():
    return jsonify({
        'ok': False,
        'errors': [{'field': '', 'message': 'No JSON payload provided', 'code': 'missing_payload'}]
    }), 400


def _invalid(result):
    return jsonify(result.to_dict()), 422


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@api_bp.route('/users/register', methods=['POST'])
@rate_limit('register')
def register():
    """
    Create an account.

    Returns:
        201 with the user and the API token (shown only once)
    """
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_registration(payload)
    if not result.is_valid:
        return _invalid(result)

    user, api_token = create_user(
        payload['email'],
        payload['full_name'],
        tier=payload.get('tier') or 'free',
        jurisdiction=payload.get('jurisdiction') or 'SK',
    )
    return jsonify({'ok': True, 'user': user.to_dict(), 'api_token': api_token}), 201


@api_bp.route('/users/me')
@login_required
def current_user():
    user = g.current_user
    return jsonify({'ok': True, 'user': user.to_dict()}), 200


@api_bp.route('/users/me/check-in', methods=['POST'])
@login_required
def user_check_in():
    """Explicit 'I am alive' signal; cancels any open emergency activation."""
    cancelled = check_in(g.current_user)
    return jsonify({
        'ok': True,
        'cancelled_activations': cancelled,
        'last_active_at': g.current_user.last_active_at.isoformat(),
    }), 200


@api_bp.route('/users/me/token', methods=['POST'])
@login_required
def rotate_token():
    return jsonify({'ok': True, 'api_token': rotate_api_token(g.current_user)}), 200


@api_bp.route('/users/me/recovery-kit', methods=['POST'])
@login_required
def create_recovery_kit():
    kit = generate_recovery_kit(g.current_user)
    return jsonify({
        'ok': True,
        'recovery_kit': kit,
        'message': 'Store this kit offline. It is shown only once.',
    }), 201


@api_bp.route('/users/me/recovery-kit/verify', methods=['POST'])
@login_required
def check_recovery_kit():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()
    return jsonify({'ok': True, 'valid': verify_recovery_kit(g.current_user, payload.get('kit', ''))}), 200


@api_bp.route('/users/me/audit-trail')
@login_required
def user_audit_trail():
    limit = min(request.args.get('limit', 200, type=int), 500)
    return jsonify({'ok': True, 'entries': get_audit_trail_for_user(g.current_user.id, limit)}), 200


# ---------------------------------------------------------------------------
# Guardians
# ---------------------------------------------------------------------------

@api_bp.route('/guardians')
@login_required
def guardians_index():
    include_inactive = coerce_to_bool(request.args.get('include_inactive')) or False
    guardians = get_guardians(g.current_user.id, include_inactive=include_inactive)
    return jsonify({'ok': True, 'guardians': [guardian.to_dict() for guardian in guardians]}), 200


@api_bp.route('/guardians', methods=['POST'])
@login_required
def guardians_create():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_guardian_payload(payload)
    if not result.is_valid:
        return _invalid(result)

    guardian = invite_guardian(g.current_user, payload)
    return jsonify({'ok': True, 'guardian': guardian.to_dict()}), 201


@api_bp.route('/guardians/<int:guardian_id>')
@login_required
def guardians_show(guardian_id: int):
    guardian = get_guardian(g.current_user.id, guardian_id)
    return jsonify({'ok': True, 'guardian': guardian.to_dict()}), 200


@api_bp.route('/guardians/<int:guardian_id>', methods=['PATCH'])
@login_required
def guardians_update(guardian_id: int):
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_guardian_payload(payload, partial=True)
    if not result.is_valid:
        return _invalid(result)

    guardian = update_guardian(g.current_user.id, guardian_id, payload)
    return jsonify({'ok': True, 'guardian': guardian.to_dict()}), 200


@api_bp.route('/guardians/<int:guardian_id>', methods=['DELETE'])
@login_required
def guardians_delete(guardian_id: int):
    delete_guardian(g.current_user.id, guardian_id)
    return jsonify({'ok': True}), 200


@api_bp.route('/guardians/<int:guardian_id>/resend', methods=['POST'])
@login_required
def guardians_resend(guardian_id: int):
    guardian = resend_invitation(g.current_user, guardian_id)
    return jsonify({'ok': True, 'guardian': guardian.to_dict()}), 200


@api_bp.route('/guardians/<int:guardian_id>/revoke', methods=['POST'])
@login_required
def guardians_revoke(guardian_id: int):
    guardian = revoke_guardian(g.current_user.id, guardian_id)
    return jsonify({'ok': True, 'guardian': guardian.to_dict()}), 200


@api_bp.route('/guardians/<int:guardian_id>/documents/<int:document_id>', methods=['POST'])
@login_required
def guardians_grant_document(guardian_id: int, document_id: int):
    grant_document_access(g.current_user.id, guardian_id, document_id)
    return jsonify({'ok': True}), 201


@api_bp.route('/guardians/<int:guardian_id>/documents/<int:document_id>', methods=['DELETE'])
@login_required
def guardians_revoke_document(guardian_id: int, document_id: int):
    removed = revoke_document_access(g.current_user.id, guardian_id, document_id)
    return jsonify({'ok': True, 'removed': removed}), 200


@api_bp.route('/invitations/<token>')
@rate_limit('verify')
def invitation_show(token: str):
    return jsonify({'ok': True, 'invitation': get_invitation_details(token)}), 200


@api_bp.route('/invitations/<token>/accept', methods=['POST'])
@rate_limit('verify')
def invitation_accept(token: str):
    guardian, access_token = accept_invitation(token)
    return jsonify({'ok': True, 'guardian': guardian.to_dict(), 'access_token': access_token}), 200


@api_bp.route('/invitations/<token>/decline', methods=['POST'])
@rate_limit('verify')
def invitation_decline(token: str):
    guardian = decline_invitation(token)
    return jsonify({'ok': True, 'status': guardian.status}), 200


@api_bp.route('/guardian/documents')
@guardian_required
def guardian_documents():
    documents = get_shared_documents(g.current_guardian)
    return jsonify({'ok': True, 'documents': [doc.to_dict() for doc in documents]}), 200


@api_bp.route('/guardian/documents/<int:document_id>/download')
@guardian_required
def guardian_document_download(document_id: int):
    guardian = g.current_guardian
    document = get_shared_document(guardian, document_id)
    data = read_document(document, actor_type='guardian', actor_id=str(guardian.id))
    return send_file(
        io.BytesIO(data),
        mimetype=document.mime_type or 'application/octet-stream',
        as_attachment=True,
        download_name=document.file_name
    )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def _form_metadata():
    """Document metadata sent as multipart form fields next to the file."""
    form = request.form
    metadata = {key: form[key] for key in ('title', 'description', 'category', 'expires_at') if form.get(key)}

    tags = form.get('tags')
    if tags:
        try:
            metadata['tags'] = json.loads(tags)
        except ValueError:
            metadata['tags'] = [tag.strip() for tag in tags.split(',') if tag.strip()]

    metadata = sanitize_payload(metadata)
    metadata['is_encrypted'] = coerce_to_bool(form.get('is_encrypted')) or False

    raw_encryption = form.get('encryption_metadata')
    if raw_encryption:
        metadata['encryption_metadata'] = json.loads(raw_encryption)
    return metadata


@api_bp.route('/documents')
@login_required
def documents_index():
    documents = list_documents(
        g.current_user.id,
        category=request.args.get('category'),
        search=request.args.get('search'),
    )
    return jsonify({'ok': True, 'documents': [doc.to_dict() for doc in documents]}), 200


@api_bp.route('/documents', methods=['POST'])
@login_required
@rate_limit('upload')
def documents_upload():
    """
    Upload a document (multipart/form-data).

    The file goes in the 'file' field; title, description, category,
    expires_at, tags, is_encrypted and encryption_metadata are optional
    form fields.
    """
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return jsonify({'ok': False, 'error': 'No file uploaded'}), 400

    try:
        metadata = _form_metadata()
    except ValueError:
        return jsonify({'ok': False, 'error': 'encryption_metadata must be valid JSON'}), 400

    result = validate_document_metadata(metadata)
    if not result.is_valid:
        return _invalid(result)

    document = upload_document(g.current_user.id, upload.filename, upload.read(), metadata)
    return jsonify({'ok': True, 'document': document.to_dict()}), 201


@api_bp.route('/documents/stats')
@login_required
def documents_stats():
    return jsonify({'ok': True, 'stats': get_document_stats(g.current_user.id)}), 200


@api_bp.route('/documents/categorize', methods=['POST'])
@login_required
def documents_categorize():
    """Suggest a category for a file before it is uploaded."""
    payload = _json_payload()
    if payload is None or not payload.get('file_name'):
        return jsonify({'ok': False, 'error': 'file_name is required'}), 400

    suggestion = categorize_document(payload['file_name'], payload.get('title'), payload.get('description'))
    expiry = suggestion['suggested_expiry']
    suggestion['suggested_expiry'] = expiry.isoformat() if expiry else None
    return jsonify({'ok': True, 'suggestion': suggestion}), 200


@api_bp.route('/documents/<int:document_id>')
@login_required
def documents_show(document_id: int):
    document = get_document(g.current_user.id, document_id)
    return jsonify({'ok': True, 'document': document.to_dict()}), 200


@api_bp.route('/documents/<int:document_id>', methods=['PATCH'])
@login_required
def documents_update(document_id: int):
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_document_metadata(payload)
    if not result.is_valid:
        return _invalid(result)

    document = update_document(g.current_user.id, document_id, payload)
    return jsonify({'ok': True, 'document': document.to_dict()}), 200


@api_bp.route('/documents/<int:document_id>', methods=['DELETE'])
@login_required
def documents_delete(document_id: int):
    delete_document(g.current_user.id, document_id)
    return jsonify({'ok': True}), 200


@api_bp.route('/documents/<int:document_id>/download')
@login_required
def documents_download(document_id: int):
    document, data = download_document(g.current_user.id, document_id)
    return send_file(
        io.BytesIO(data),
        mimetype=document.mime_type or 'application/octet-stream',
        as_attachment=True,
        download_name=document.file_name
    )


# ---------------------------------------------------------------------------
# Wills
# ---------------------------------------------------------------------------

@api_bp.route('/wills/validate', methods=['POST'])
@login_required
@rate_limit('validate')
def wills_validate():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_will_payload(payload)
    return jsonify(result.to_dict()), 200 if result.is_valid else 422


@api_bp.route('/wills/preview', methods=['POST'])
@login_required
@rate_limit('validate')
def wills_preview():
    """Render the will text and its Trust Seal score without storing anything."""
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    preview = preview_will(payload)
    if not preview['validation']['ok']:
        return jsonify(preview['validation']), 422
    return jsonify({'ok': True, **preview}), 200


@api_bp.route('/wills', methods=['POST'])
@login_required
@rate_limit('generate')
def wills_generate():
    """
    Generate a will.

    Returns:
        201 with the will, its Trust Seal and the public verification URL
    """
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    will, seal = generate_will(g.current_user, payload)
    return jsonify({
        'ok': True,
        'will': will.to_dict(),
        'trust_seal': seal.to_dict(),
        'verification_url': generate_public_verification_url(seal.id),
        'download_url': f'/api/wills/{will.id}/download',
    }), 201


@api_bp.route('/wills')
@login_required
def wills_index():
    wills = list_wills(g.current_user.id)
    return jsonify({'ok': True, 'wills': [will.to_dict() for will in wills]}), 200


@api_bp.route('/wills/<int:will_id>')
@login_required
def wills_show(will_id: int):
    will = get_will(g.current_user.id, will_id)
    return jsonify({'ok': True, 'will': will_summary(will)}), 200


@api_bp.route('/wills/<int:will_id>/download')
@login_required
def wills_download(will_id: int):
    will = get_will(g.current_user.id, will_id)
    pdf_bytes = read_will_pdf(will)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f'Last_Will_and_Testament_v{will.version_number}.pdf'
    )


@api_bp.route('/wills/<int:will_id>/regenerate', methods=['POST'])
@login_required
@rate_limit('generate')
def wills_regenerate(will_id: int):
    """
    Create a new version of a will. An optional JSON body replaces the
    form; without one the original form is rendered again.
    """
    payload = _json_payload()
    new_will, seal = regenerate_will(g.current_user, will_id, payload or None)
    return jsonify({
        'ok': True,
        'original_will_id': will_id,
        'will': new_will.to_dict(),
        'trust_seal': seal.to_dict(),
        'verification_url': generate_public_verification_url(seal.id),
    }), 201


@api_bp.route('/wills/<int:will_id>/signing-instructions')
@login_required
def wills_signing_instructions(will_id: int):
    will = get_will(g.current_user.id, will_id)
    return jsonify({'ok': True, 'instructions': get_signing_instructions(will)}), 200


@api_bp.route('/trust-seals/<seal_id>/certificate')
@login_required
def trust_seal_certificate(seal_id: str):
    seal = TrustSeal.query.filter_by(id=seal_id, user_id=g.current_user.id).first()
    if seal is None:
        return jsonify({'ok': False, 'error': 'Trust seal not found'}), 404
    return jsonify({'ok': True, 'certificate': generate_certificate(seal)}), 200


# ---------------------------------------------------------------------------
# Time capsules
# ---------------------------------------------------------------------------

@api_bp.route('/time-capsules')
@login_required
def time_capsules_index():
    delivered = coerce_to_bool(request.args.get('delivered'))
    capsules = list_time_capsules(g.current_user.id, delivered=delivered)
    return jsonify({'ok': True, 'time_capsules': [c.to_dict() for c in capsules]}), 200


@api_bp.route('/time-capsules', methods=['POST'])
@login_required
def time_capsules_create():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_time_capsule(payload)
    if not result.is_valid:
        return _invalid(result)

    capsule = create_time_capsule(g.current_user, payload)
    return jsonify({'ok': True, 'time_capsule': capsule.to_dict()}), 201


@api_bp.route('/time-capsules/analytics')
@login_required
def time_capsules_analytics():
    return jsonify({'ok': True, 'analytics': get_time_capsule_analytics(g.current_user.id)}), 200


@api_bp.route('/time-capsules/<int:capsule_id>')
@login_required
def time_capsules_show(capsule_id: int):
    capsule = get_time_capsule(g.current_user.id, capsule_id)
    return jsonify({'ok': True, 'time_capsule': capsule.to_dict()}), 200


@api_bp.route('/time-capsules/<int:capsule_id>', methods=['DELETE'])
@login_required
def time_capsules_delete(capsule_id: int):
    delete_time_capsule(g.current_user.id, capsule_id)
    return jsonify({'ok': True}), 200


# ---------------------------------------------------------------------------
# Emergency (dead man's switch)
# ---------------------------------------------------------------------------

@api_bp.route('/emergency/status')
@login_required
def emergency_status():
    return jsonify({'ok': True, 'status': get_emergency_status(g.current_user)}), 200


@api_bp.route('/emergency/trigger', methods=['POST'])
@login_required
def emergency_trigger():
    payload = _json_payload() or {}
    activation = trigger_activation(g.current_user, payload.get('type') or 'manual')
    return jsonify({'ok': True, 'activation': activation.to_dict()}), 201


@api_bp.route('/emergency/cancel/<token>', methods=['GET', 'POST'])
@rate_limit('verify')
def emergency_cancel(token: str):
    """Cancellation link sent with every emergency notice."""
    activation = cancel_activation(token)
    current_app.logger.info(f'Emergency activation {activation.id} cancelled by link')
    return jsonify({
        'ok': True,
        'message': 'Emergency activation cancelled. Welcome back.',
        'activation_id': activation.id,
    }), 200


# ---------------------------------------------------------------------------
# Support
# ---------------------------------------------------------------------------

@api_bp.route('/support/chat', methods=['POST'])
@login_required
@rate_limit('support')
def support_chat():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    response = generate_support_response(payload.get('query', ''), g.current_user)
    return jsonify({'ok': True, 'response': response.to_dict()}), 200


@api_bp.route('/support/analyze', methods=['POST'])
@login_required
@rate_limit('support')
def support_analyze():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    analysis = analyze_ticket_intent(payload.get('title') or '', payload.get('description') or '')
    return jsonify({'ok': True, 'analysis': analysis}), 200


@api_bp.route('/support/tickets')
@login_required
def support_tickets_index():
    tickets = list_tickets(g.current_user.id, status=request.args.get('status'))
    return jsonify({'ok': True, 'tickets': [t.to_dict() for t in tickets]}), 200


@api_bp.route('/support/tickets', methods=['POST'])
@login_required
@rate_limit('support')
def support_tickets_create():
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    result = validate_support_ticket(payload)
    if not result.is_valid:
        return _invalid(result)

    ticket = create_support_ticket(g.current_user, payload)
    return jsonify({'ok': True, 'ticket': ticket.to_dict()}), 201


@api_bp.route('/support/tickets/<int:ticket_id>')
@login_required
def support_tickets_show(ticket_id: int):
    ticket = get_ticket(ticket_id, g.current_user.id)
    return jsonify({'ok': True, 'ticket': ticket.to_dict()}), 200


@api_bp.route('/support/tickets/<int:ticket_id>/rating', methods=['POST'])
@login_required
def support_tickets_rate(ticket_id: int):
    payload = _json_payload()
    if payload is None:
        return _missing_payload()

    ticket = rate_ticket(g.current_user, ticket_id, payload.get('rating'))
    return jsonify({'ok': True, 'ticket': ticket.to_dict()}), 200


@api_bp.route('/support/kb/search')
@rate_limit('support')
def support_kb_search():
    query = request.args.get('q', '')
    limit = min(request.args.get('limit', 10, type=int), 50)
    results = search_knowledge_base(query, category=request.args.get('category'), limit=limit)
    return jsonify({'ok': True, 'query': query, 'results': results}), 200


@api_bp.route('/support/kb/stats')
def support_kb_stats():
    return jsonify({'ok': True, 'stats': get_knowledge_base_stats()}), 200


@api_bp.route('/support/kb/<slug>')
def support_kb_article(slug: str):
    article = get_article(slug)
    data = article.to_dict()
    data['content'] = article.content
    return jsonify({'ok': True, 'article': data}), 200


@api_bp.route('/support/kb/<slug>/vote', methods=['POST'])
@rate_limit('support')
def support_kb_vote(slug: str):
    payload = _json_payload()
    if payload is None or coerce_to_bool(payload.get('helpful')) is None:
        return jsonify({'ok': False, 'error': 'helpful must be true or false'}), 400

    article = vote_on_article(slug, coerce_to_bool(payload['helpful']))
    return jsonify({'ok': True, 'article': article.to_dict()}), 200


# ---------------------------------------------------------------------------
# Public Trust Seal verification
# ---------------------------------------------------------------------------

@verify_bp.route('/<seal_id>')
@rate_limit('verify')
def verify_seal(seal_id: str):
    """
    Public verification of a Trust Seal.

    Query parameters:
        metadata: include the score, validations and document info
    """
    include_metadata = coerce_to_bool(request.args.get('metadata')) or False
    result = verify_trust_seal(
        seal_id,
        include_metadata=include_metadata,
        log_verification=True,
        requester={'ip_address': get_client_ip(), 'user_agent': request.headers.get('User-Agent')},
    )
    return jsonify({'ok': True, 'seal_id': seal_id, **result}), 200


@verify_bp.route('/batch', methods=['POST'])
@rate_limit('verify')
def verify_batch():
    payload = _json_payload()
    seal_ids = payload.get('seal_ids') if payload else None
    if not isinstance(seal_ids, list) or not seal_ids:
        return jsonify({'ok': False, 'error': 'seal_ids must be a non-empty list'}), 400
    if len(seal_ids) > MAX_BATCH_VERIFY:
        return jsonify({'ok': False, 'error': f'At most {MAX_BATCH_VERIFY} seals per request'}), 400

    return jsonify({'ok': True, 'results': batch_verify([str(s) for s in seal_ids])}), 200

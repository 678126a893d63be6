"""
Strict JSON validation for LegacyGuard payloads.

Validation Rules Documentation:
===============================

1. WILL FORM
   - full_name: required, max 100 chars, no HTML
   - birth_date: required, valid date (YYYY-MM-DD or DD.MM.YYYY), testator 18+
   - address, citizenship: required
   - jurisdiction: SK, CZ, AT, DE or PL
   - will_type: holographic, witnessed or notarized
   - marital_status: required enum; spouse_name required when married
   - has_children: if true, at least 1 child with name and birth_date
   - executor: name required; alternate_executor optional but validated
   - guardian: required when any child is a minor
   - assets: each needs description and beneficiary; percentages 0-100,
     total of percentages must not exceed 100
   - witnesses: witnessed wills need the jurisdiction minimum;
     a witness may not also be a beneficiary
   - notarized wills may carry notary details (warning if missing)

2. GUARDIAN INVITATION
   - name, email, relationship required; phone optional
   - access_level: view, emergency or full
   - contact_method: email, sms or both (sms requires phone)
   - priority_order: 1-10

3. DOCUMENT METADATA
   - title max 200, description max 2000
   - category from the document category list
   - expires_at valid date

4. TIME CAPSULE
   - title required, message_type text/audio/video
   - text needs message, audio/video need file_url
   - delivery_condition on_date (future delivery_date) or on_death
   - recipient_email optional but validated

5. SUPPORT TICKET
   - title max 200, description max 5000
   - category optional enum
"""

import re
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime

from legacyguard.jurisdictions import SUPPORTED_JURISDICTIONS, WILL_TYPES, required_witnesses
from legacyguard.utils import parse_date, age_on, is_minor


@dataclass
class ValidationError:
    """Represents a single validation error with precise field path."""
    field: str
    message: str
    code: str
    section: str = ''  # For grouping errors by section


@dataclass
class ValidationResult:
    """Container for validation results."""
    errors: List[ValidationError] = field(default_factory=list)
    is_valid: bool = True
    warnings: List[ValidationError] = field(default_factory=list)  # Non-blocking issues

    def add_error(self, field: str, message: str, code: str = 'invalid', section: str = ''):
        """Add a validation error."""
        self.errors.append(ValidationError(field, message, code, section))
        self.is_valid = False

    def add_warning(self, field: str, message: str, code: str = 'warning', section: str = ''):
        """Add a non-blocking warning."""
        self.warnings.append(ValidationError(field, message, code, section))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            'ok': self.is_valid,
            'errors': [
                {'field': e.field, 'message': e.message, 'code': e.code, 'section': e.section}
                for e in self.errors
            ],
            'warnings': [
                {'field': w.field, 'message': w.message, 'code': w.code, 'section': w.section}
                for w in self.warnings
            ]
        }


# Constants for validation
MAX_NAME_LENGTH = 100
MAX_TEXT_LENGTH = 500
MAX_ADDRESS_LENGTH = 200
MAX_LONG_TEXT_LENGTH = 5000
MAX_CHILDREN = 20
MAX_ASSETS = 100
MAX_WITNESSES = 5

# Regex patterns
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^[0-9\s\-+()]{8,20}$')
URL_PATTERN = re.compile(r'^https?://\S+$')
HTML_TAG_PATTERN = re.compile(r'<[^>]+>')

# Enums - strictly enforced
MARITAL_STATUSES = ['single', 'married', 'divorced', 'widowed', 'partnership']
SUBSCRIPTION_TIERS = ['free', 'premium', 'enterprise']
ACCESS_LEVELS = ['view', 'emergency', 'full']
CONTACT_METHODS = ['email', 'sms', 'both']
RELATIONSHIPS = ['spouse', 'partner', 'child', 'parent', 'sibling', 'relative', 'friend', 'lawyer', 'other']
DOCUMENT_CATEGORIES = [
    'personal', 'legal', 'financial', 'medical', 'insurance',
    'property', 'identity', 'will', 'other'
]
MESSAGE_TYPES = ['text', 'audio', 'video']
DELIVERY_CONDITIONS = ['on_date', 'on_death']
TICKET_CATEGORIES = ['technical', 'legal', 'billing', 'feature_request']
TICKET_PRIORITIES = ['low', 'medium', 'high', 'urgent']
TICKET_STATUSES = ['open', 'in_progress', 'resolved', 'closed']


def coerce_to_bool(value: Any) -> Optional[bool]:
    """Coerce various inputs to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')
    if isinstance(value, int):
        return value == 1
    return None


def validate_string(value: Any, field_name: str, result: ValidationResult,
                    required: bool = True, max_length: int = MAX_NAME_LENGTH,
                    allow_html: bool = False, section: str = '') -> bool:
    """Validate a string field."""
    if value is None or str(value).strip() == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    str_value = str(value).strip()

    if len(str_value) > max_length:
        result.add_error(field_name, f'Maximum {max_length} characters allowed', 'max_length', section)
        return False

    if not allow_html and HTML_TAG_PATTERN.search(str_value):
        result.add_error(field_name, 'HTML tags are not allowed', 'invalid_chars', section)
        return False

    return True


def validate_email(value: Any, field_name: str, result: ValidationResult,
                   required: bool = True, section: str = '') -> bool:
    """Validate an email address."""
    if value is None or str(value).strip() == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    str_value = str(value).strip()

    if len(str_value) > 254:
        result.add_error(field_name, 'Email address is too long', 'max_length', section)
        return False

    if not EMAIL_PATTERN.match(str_value):
        result.add_error(field_name, 'Please enter a valid email address', 'format', section)
        return False

    return True


def validate_phone(value: Any, field_name: str, result: ValidationResult,
                   required: bool = True, section: str = '') -> bool:
    """Validate a phone number."""
    if value is None or str(value).strip() == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    if not PHONE_PATTERN.match(str(value).strip()):
        result.add_error(field_name, 'Please enter a valid phone number', 'format', section)
        return False

    return True


def validate_date(value: Any, field_name: str, result: ValidationResult,
                  required: bool = True, section: str = '', min_age: int = None,
                  future_only: bool = False) -> bool:
    """Validate a date field (YYYY-MM-DD or DD.MM.YYYY)."""
    if value is None or str(value).strip() == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    parsed_date = parse_date(value)
    if parsed_date is None:
        result.add_error(field_name, 'Please enter a valid date (YYYY-MM-DD)', 'format', section)
        return False

    if min_age is not None:
        age = age_on(parsed_date)
        if age < min_age:
            result.add_error(field_name, f'Must be at least {min_age} years old', 'min_age', section)
            return False

    if future_only and parsed_date <= datetime.utcnow().date():
        result.add_error(field_name, 'Date must be in the future', 'future_date', section)
        return False

    return True


def validate_enum(value: Any, field_name: str, allowed: List[str],
                  result: ValidationResult, required: bool = True, section: str = '') -> bool:
    """Validate an enum field with strict matching."""
    if value is None or str(value).strip() == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    if str(value).strip() not in allowed:
        result.add_error(field_name, f'Must be one of: {", ".join(allowed)}', 'enum', section)
        return False

    return True


def validate_percentage(value: Any, field_name: str, result: ValidationResult,
                        required: bool = True, section: str = '') -> bool:
    """Validate a percentage value (0-100)."""
    if value is None or value == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    try:
        num = float(value)
    except (ValueError, TypeError):
        result.add_error(field_name, 'Must be a valid percentage', 'type', section)
        return False

    if num < 0 or num > 100:
        result.add_error(field_name, 'Percentage must be between 0 and 100', 'range', section)
        return False

    return True


def validate_integer_range(value: Any, field_name: str, result: ValidationResult,
                           minimum: int, maximum: int, required: bool = True,
                           section: str = '') -> bool:
    if value is None or value == '':
        if required:
            result.add_error(field_name, 'This field is required', 'required', section)
        return False

    if isinstance(value, bool):
        result.add_error(field_name, 'Must be a whole number', 'type', section)
        return False

    try:
        num = int(value)
    except (ValueError, TypeError):
        result.add_error(field_name, 'Must be a whole number', 'type', section)
        return False

    if num < minimum or num > maximum:
        result.add_error(field_name, f'Must be between {minimum} and {maximum}', 'range', section)
        return False

    return True


def _require_object(payload: Any, result: ValidationResult) -> bool:
    if not isinstance(payload, dict):
        result.add_error('', 'Payload must be a JSON object', 'type', 'general')
        return False
    return True


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

def validate_registration(payload: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    validate_email(payload.get('email'), 'email', result, section='account')
    validate_string(payload.get('full_name'), 'full_name', result, section='account')
    validate_enum(payload.get('tier'), 'tier', SUBSCRIPTION_TIERS, result, required=False, section='account')
    validate_enum(payload.get('jurisdiction'), 'jurisdiction', SUPPORTED_JURISDICTIONS, result,
                  required=False, section='account')
    return result


# ---------------------------------------------------------------------------
# Will form
# ---------------------------------------------------------------------------

def validate_will_payload(payload: Dict[str, Any]) -> ValidationResult:
    """
    Main validation entry point for the will form.

    Args:
        payload: The will form data

    Returns:
        ValidationResult with errors if any
    """
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    jurisdiction_ok = validate_enum(payload.get('jurisdiction'), 'jurisdiction',
                                    SUPPORTED_JURISDICTIONS, result, section='testator')
    will_type_ok = validate_enum(payload.get('will_type'), 'will_type', WILL_TYPES, result, section='testator')

    _validate_testator(payload, result)
    children = _validate_family(payload, result)
    _validate_executors(payload, result)
    _validate_guardian(payload, result, children)
    beneficiaries = _validate_assets(payload, result)

    if jurisdiction_ok and will_type_ok:
        _validate_formalities(payload, result, beneficiaries)

    validate_string(payload.get('funeral_wishes'), 'funeral_wishes', result, required=False,
                    max_length=MAX_TEXT_LENGTH, section='wishes')
    validate_string(payload.get('special_instructions'), 'special_instructions', result, required=False,
                    max_length=MAX_LONG_TEXT_LENGTH, section='wishes')

    digital_assets = payload.get('digital_assets')
    if digital_assets is not None and not isinstance(digital_assets, list):
        result.add_error('digital_assets', 'Must be a list', 'type', 'wishes')

    return result


def _validate_testator(payload: Dict[str, Any], result: ValidationResult):
    section = 'testator'
    validate_string(payload.get('full_name'), 'full_name', result, section=section)
    validate_date(payload.get('birth_date'), 'birth_date', result, section=section, min_age=18)
    validate_string(payload.get('birth_place'), 'birth_place', result, required=False, section=section)
    validate_string(payload.get('address'), 'address', result, max_length=MAX_ADDRESS_LENGTH, section=section)
    validate_string(payload.get('citizenship'), 'citizenship', result, max_length=50, section=section)

    if validate_enum(payload.get('marital_status'), 'marital_status', MARITAL_STATUSES, result, section=section):
        if payload.get('marital_status') == 'married':
            validate_string(payload.get('spouse_name'), 'spouse_name', result, section=section)


def _validate_family(payload: Dict[str, Any], result: ValidationResult) -> List[Dict[str, Any]]:
    section = 'family'
    has_children = coerce_to_bool(payload.get('has_children', False))
    children = payload.get('children') or []

    if not has_children:
        return []

    if not isinstance(children, list) or len(children) == 0:
        result.add_error('children', 'At least one child is required', 'min_items', section)
        return []

    if len(children) > MAX_CHILDREN:
        result.add_error('children', f'Maximum {MAX_CHILDREN} children allowed', 'max_items', section)
        return []

    for index, child in enumerate(children):
        path = f'children[{index}]'
        if not isinstance(child, dict):
            result.add_error(path, 'Must be an object', 'type', section)
            continue
        validate_string(child.get('name'), f'{path}.name', result, section=section)
        validate_date(child.get('birth_date'), f'{path}.birth_date', result, section=section)

    return [c for c in children if isinstance(c, dict)]


def _validate_person(person: Any, path: str, result: ValidationResult, required: bool, section: str) -> bool:
    if person is None or person == {}:
        if required:
            result.add_error(f'{path}.name', 'This field is required', 'required', section)
        return False

    if not isinstance(person, dict):
        result.add_error(path, 'Must be an object', 'type', section)
        return False

    ok = validate_string(person.get('name'), f'{path}.name', result, section=section)
    validate_string(person.get('address'), f'{path}.address', result, required=False,
                    max_length=MAX_ADDRESS_LENGTH, section=section)
    validate_string(person.get('relationship'), f'{path}.relationship', result, required=False,
                    max_length=50, section=section)
    return ok


def _validate_executors(payload: Dict[str, Any], result: ValidationResult):
    section = 'executors'
    executor_ok = _validate_person(payload.get('executor'), 'executor', result, required=True, section=section)
    alternate_ok = _validate_person(payload.get('alternate_executor'), 'alternate_executor', result,
                                    required=False, section=section)

    if executor_ok and alternate_ok:
        primary = payload['executor']['name'].strip().lower()
        alternate = payload['alternate_executor']['name'].strip().lower()
        if primary == alternate:
            result.add_error('alternate_executor.name',
                             'Alternate executor must be a different person', 'duplicate', section)


def _validate_guardian(payload: Dict[str, Any], result: ValidationResult, children: List[Dict[str, Any]]):
    section = 'guardianship'
    has_minor = any(is_minor(child.get('birth_date')) for child in children)
    guardian = payload.get('guardian')

    if has_minor:
        _validate_person(guardian, 'guardian', result, required=True, section=section)
    elif guardian:
        if _validate_person(guardian, 'guardian', result, required=False, section=section):
            result.add_warning('guardian', 'A guardian only takes effect for minor children',
                               'guardian_without_minors', section)


def _validate_assets(payload: Dict[str, Any], result: ValidationResult) -> List[str]:
    """Validate assets and return the lower-cased beneficiary names."""
    section = 'assets'
    assets = payload.get('assets') or []
    beneficiaries = []

    if not isinstance(assets, list):
        result.add_error('assets', 'Must be a list', 'type', section)
        return beneficiaries

    if len(assets) > MAX_ASSETS:
        result.add_error('assets', f'Maximum {MAX_ASSETS} assets allowed', 'max_items', section)
        return beneficiaries

    if not assets:
        result.add_warning('assets', 'No assets listed; the estate passes by statutory succession',
                           'no_assets', section)

    total_percentage = 0.0
    for index, asset in enumerate(assets):
        path = f'assets[{index}]'
        if not isinstance(asset, dict):
            result.add_error(path, 'Must be an object', 'type', section)
            continue

        validate_string(asset.get('description'), f'{path}.description', result,
                        max_length=MAX_TEXT_LENGTH, section=section)
        if validate_string(asset.get('beneficiary'), f'{path}.beneficiary', result, section=section):
            beneficiaries.append(asset['beneficiary'].strip().lower())

        if asset.get('percentage') not in (None, ''):
            if validate_percentage(asset.get('percentage'), f'{path}.percentage', result, section=section):
                total_percentage += float(asset['percentage'])

    if total_percentage > 100:
        result.add_error('assets', f'Asset percentages total {total_percentage:g}%, maximum is 100%',
                         'percentage_total', section)

    return beneficiaries


def _validate_formalities(payload: Dict[str, Any], result: ValidationResult, beneficiaries: List[str]):
    section = 'formalities'
    jurisdiction = payload['jurisdiction']
    will_type = payload['will_type']
    witnesses = payload.get('witnesses') or []

    if not isinstance(witnesses, list):
        result.add_error('witnesses', 'Must be a list', 'type', section)
        return

    minimum = required_witnesses(jurisdiction, will_type)
    if len(witnesses) < minimum:
        result.add_error('witnesses', f'A {will_type} will in {jurisdiction} requires {minimum} witnesses',
                         'min_witnesses', section)

    if len(witnesses) > MAX_WITNESSES:
        result.add_error('witnesses', f'Maximum {MAX_WITNESSES} witnesses allowed', 'max_items', section)

    for index, witness in enumerate(witnesses):
        path = f'witnesses[{index}]'
        if not _validate_person(witness, path, result, required=True, section=section):
            continue
        if witness['name'].strip().lower() in beneficiaries:
            result.add_error(f'{path}.name', 'A witness cannot also be a beneficiary',
                             'witness_is_beneficiary', section)

    if will_type == 'notarized' and not payload.get('notary'):
        result.add_warning('notary', 'Add the notary office so the signing appointment can be prepared',
                           'notary_missing', section)


# ---------------------------------------------------------------------------
# Guardians
# ---------------------------------------------------------------------------

def validate_guardian_payload(payload: Dict[str, Any], partial: bool = False) -> ValidationResult:
    """Validate a guardian invitation (or an update when partial=True)."""
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    section = 'guardian'

    def present(key):
        return not partial or key in payload

    if present('name'):
        validate_string(payload.get('name'), 'name', result, section=section)
    if present('email'):
        validate_email(payload.get('email'), 'email', result, section=section)
    if present('relationship'):
        validate_enum(payload.get('relationship'), 'relationship', RELATIONSHIPS, result, section=section)

    validate_phone(payload.get('phone'), 'phone', result, required=False, section=section)
    validate_enum(payload.get('access_level'), 'access_level', ACCESS_LEVELS, result,
                  required=False, section=section)

    if validate_enum(payload.get('contact_method'), 'contact_method', CONTACT_METHODS, result,
                     required=False, section=section):
        if payload['contact_method'] in ('sms', 'both') and not payload.get('phone'):
            result.add_error('phone', 'A phone number is required for SMS contact', 'required', section)

    validate_integer_range(payload.get('priority_order'), 'priority_order', result, 1, 10,
                           required=False, section=section)
    return result


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def validate_document_metadata(payload: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    section = 'document'
    validate_string(payload.get('title'), 'title', result, required=False, max_length=200, section=section)
    validate_string(payload.get('description'), 'description', result, required=False,
                    max_length=2000, section=section)
    validate_enum(payload.get('category'), 'category', DOCUMENT_CATEGORIES, result,
                  required=False, section=section)
    validate_date(payload.get('expires_at'), 'expires_at', result, required=False, section=section)

    tags = payload.get('tags')
    if tags is not None:
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            result.add_error('tags', 'Tags must be a list of strings', 'type', section)
    return result


# ---------------------------------------------------------------------------
# Time capsules
# ---------------------------------------------------------------------------

def validate_time_capsule(payload: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    section = 'time_capsule'
    validate_string(payload.get('title'), 'title', result, max_length=200, section=section)

    message_type = payload.get('message_type', 'text')
    if validate_enum(message_type, 'message_type', MESSAGE_TYPES, result, section=section):
        if message_type == 'text':
            validate_string(payload.get('message'), 'message', result, max_length=20000, section=section)
        else:
            file_url = payload.get('file_url')
            if not file_url:
                result.add_error('file_url', f'A {message_type} message needs a file_url', 'required', section)
            elif not URL_PATTERN.match(str(file_url)):
                result.add_error('file_url', 'Must be an http(s) URL', 'format', section)

    condition = payload.get('delivery_condition', 'on_date')
    if validate_enum(condition, 'delivery_condition', DELIVERY_CONDITIONS, result, section=section):
        if condition == 'on_date':
            validate_date(payload.get('delivery_date'), 'delivery_date', result,
                          section=section, future_only=True)

    validate_email(payload.get('recipient_email'), 'recipient_email', result, required=False, section=section)
    validate_string(payload.get('recipient_name'), 'recipient_name', result, required=False, section=section)
    return result


# ---------------------------------------------------------------------------
# Support
# ---------------------------------------------------------------------------

def validate_support_ticket(payload: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    if not _require_object(payload, result):
        return result

    validate_string(payload.get('title'), 'title', result, max_length=200, section='ticket')
    validate_string(payload.get('description'), 'description', result,
                    max_length=MAX_LONG_TEXT_LENGTH, section='ticket')
    validate_enum(payload.get('category'), 'category', TICKET_CATEGORIES, result,
                  required=False, section='ticket')
    return result

"""
Jurisdiction rules for will generation.

Each framework lists the formal requirements of a will type and the
signing steps a testator must follow before the document is valid.
"""

from typing import Dict, List, Any

WILL_TYPES = ['holographic', 'witnessed', 'notarized']

LEGAL_FRAMEWORKS: Dict[str, Dict[str, Any]] = {
    'SK': {
        'code': 'SK',
        'name': 'Slovak Republic',
        'statute': 'Civil Code No. 40/1964 Coll., Sections 476-480',
        'min_age': 18,
        'required_fields': ['full_name', 'birth_date', 'executor'],
        'witness_requirements': {
            'holographic': 0,
            'witnessed': 2,
            'notarized': 0,
        },
        'notary_required': {'notarized': True},
        'forced_heirship': True,
        'date_format': 'DD.MM.YYYY',
    },
    'CZ': {
        'code': 'CZ',
        'name': 'Czech Republic',
        'statute': 'Civil Code No. 89/2012 Coll., Sections 1494-1544',
        'min_age': 18,
        'required_fields': ['full_name', 'birth_date', 'citizenship', 'executor'],
        'witness_requirements': {
            'holographic': 0,
            'witnessed': 2,
            'notarized': 0,
        },
        'notary_required': {'notarized': True},
        'forced_heirship': True,
        'date_format': 'DD.MM.YYYY',
    },
    'AT': {
        'code': 'AT',
        'name': 'Austria',
        'statute': 'ABGB Sections 577-583',
        'min_age': 18,
        'required_fields': ['full_name', 'birth_date', 'citizenship', 'executor'],
        'witness_requirements': {
            'holographic': 0,
            'witnessed': 3,
            'notarized': 0,
        },
        'notary_required': {'notarized': True},
        'forced_heirship': True,
        'date_format': 'DD.MM.YYYY',
    },
    'DE': {
        'code': 'DE',
        'name': 'Germany',
        'statute': 'BGB Sections 2229-2264',
        'min_age': 18,
        'required_fields': ['full_name', 'birth_date', 'citizenship', 'executor'],
        'witness_requirements': {
            'holographic': 0,
            'witnessed': 2,
            'notarized': 0,
        },
        'notary_required': {'notarized': True},
        'forced_heirship': True,
        'date_format': 'DD.MM.YYYY',
    },
    'PL': {
        'code': 'PL',
        'name': 'Poland',
        'statute': 'Civil Code Articles 949-958',
        'min_age': 18,
        'required_fields': ['full_name', 'birth_date', 'citizenship', 'executor'],
        'witness_requirements': {
            'holographic': 0,
            'witnessed': 3,
            'notarized': 0,
        },
        'notary_required': {'notarized': True},
        'forced_heirship': True,
        'date_format': 'DD.MM.YYYY',
    },
}

SUPPORTED_JURISDICTIONS = sorted(LEGAL_FRAMEWORKS.keys())


def get_framework(jurisdiction: str) -> Dict[str, Any]:
    """Framework for a jurisdiction code; raises KeyError for unknown codes."""
    return LEGAL_FRAMEWORKS[jurisdiction]


def required_witnesses(jurisdiction: str, will_type: str) -> int:
    framework = LEGAL_FRAMEWORKS.get(jurisdiction)
    if framework is None:
        return 0
    return framework['witness_requirements'].get(will_type, 0)


def signing_instructions(jurisdiction: str, will_type: str) -> List[str]:
    """Ordered steps the testator follows to execute the will."""
    framework = get_framework(jurisdiction)
    steps = ['Read the whole document carefully and check every name and date.']

    if will_type == 'holographic':
        steps.extend([
            'Copy the entire text by hand. A printed or typed holographic will is not valid.',
            'Write the place and date of signing at the end of the handwritten text.',
            'Sign the handwritten will with your usual signature.',
        ])
    elif will_type == 'witnessed':
        count = framework['witness_requirements']['witnessed']
        steps.extend([
            f'Arrange {count} witnesses who are present at the same time.',
            'Witnesses must be adults with full legal capacity and must not be '
            'beneficiaries, their spouses or close relatives.',
            'Declare in front of the witnesses that the document is your will, then sign it.',
            'Each witness signs the will and writes their full name and address.',
        ])
    elif will_type == 'notarized':
        steps.extend([
            'Book an appointment with a notary and bring a valid identity document.',
            'The notary records the will as a notarial deed; do not sign the printout beforehand.',
            'Ask the notary to register the will in the central register of wills.',
        ])

    steps.append('Store the original in a safe place and tell your executor where to find it.')
    steps.append(f'Requirements follow {framework["name"]} law ({framework["statute"]}).')
    return steps


def jurisdiction_recommendations(jurisdiction: str) -> List[str]:
    framework = LEGAL_FRAMEWORKS.get(jurisdiction)
    if framework is None:
        return ['Unknown jurisdiction - consider consulting a local legal expert']

    recommendations = []
    if framework['forced_heirship']:
        recommendations.append(
            'This jurisdiction has forced heirship rules - descendants may claim a '
            'mandatory share regardless of the will'
        )
    if jurisdiction == 'SK':
        recommendations.append('Slovak law allows holographic wills - handwritten wills are valid')
    if jurisdiction == 'CZ':
        recommendations.append('Czech law requires specific formalities - ensure compliance with the Civil Code')
    return recommendations

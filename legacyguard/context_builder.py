"""
Context Builder Module

Transforms a validated will form into a normalized context object with
derived flags. All derived flags are computed in one place only.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional
from datetime import datetime

from legacyguard.jurisdictions import LEGAL_FRAMEWORKS, required_witnesses
from legacyguard.utils import format_date, is_minor


@dataclass
class Person:
    """A named person with optional address and relationship."""
    name: str = ''
    address: str = ''
    relationship: str = ''
    birth_date: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Person']:
        if not data or not isinstance(data, dict) or not data.get('name'):
            return None
        return cls(
            name=data['name'].strip(),
            address=(data.get('address') or '').strip(),
            relationship=(data.get('relationship') or '').strip(),
            birth_date=format_date(data.get('birth_date')) or None,
        )


@dataclass
class Child:
    name: str = ''
    birth_date: str = ''
    relationship: str = ''
    is_minor: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], reference=None) -> 'Child':
        return cls(
            name=(data.get('name') or '').strip(),
            birth_date=format_date(data.get('birth_date')),
            relationship=(data.get('relationship') or '').strip(),
            is_minor=is_minor(data.get('birth_date'), reference),
        )


@dataclass
class Asset:
    description: str = ''
    beneficiary: str = ''
    asset_type: str = ''
    percentage: Optional[float] = None
    value: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Asset':
        percentage = data.get('percentage')
        value = data.get('value')
        return cls(
            description=(data.get('description') or '').strip(),
            beneficiary=(data.get('beneficiary') or '').strip(),
            asset_type=(data.get('type') or '').strip(),
            percentage=float(percentage) if percentage not in (None, '') else None,
            value=float(value) if value not in (None, '') else None,
        )

    @property
    def share_text(self) -> str:
        if self.percentage is None:
            return ''
        return f'{self.percentage:g}%'


@dataclass
class DigitalAsset:
    platform: str = ''
    instructions: str = ''

    @classmethod
    def from_dict(cls, data: Any) -> 'DigitalAsset':
        if isinstance(data, str):
            return cls(platform=data.strip())
        return cls(
            platform=(data.get('platform') or '').strip(),
            instructions=(data.get('instructions') or '').strip(),
        )


@dataclass
class WillContext:
    """
    Complete context object for will generation.
    Contains all normalized entities and derived flags.
    """
    # Testator
    full_name: str = ''
    birth_date: str = ''
    birth_place: str = ''
    address: str = ''
    citizenship: str = ''
    marital_status: str = ''
    spouse_name: str = ''

    # Legal framework
    jurisdiction: str = ''
    jurisdiction_name: str = ''
    statute: str = ''
    will_type: str = ''
    forced_heirship: bool = False
    witnesses_required: int = 0

    # Entities
    children: List[Child] = field(default_factory=list)
    executor: Optional[Person] = None
    alternate_executor: Optional[Person] = None
    guardian: Optional[Person] = None
    assets: List[Asset] = field(default_factory=list)
    digital_assets: List[DigitalAsset] = field(default_factory=list)
    witnesses: List[Person] = field(default_factory=list)
    notary: str = ''

    funeral_wishes: str = ''
    special_instructions: str = ''

    # Stored timestamp, never the wall clock
    generation_date: str = ''

    # Derived flags (computed in build_context)
    is_married: bool = False
    has_children: bool = False
    has_minor_children: bool = False
    has_guardianship: bool = False
    has_alternate_executor: bool = False
    has_assets: bool = False
    has_percentages: bool = False
    has_digital_assets: bool = False
    has_funeral_wishes: bool = False
    has_special_instructions: bool = False
    requires_witnesses: bool = False
    is_holographic: bool = False
    is_notarized: bool = False

    # Derived values
    percentage_sum: float = 0.0
    residue_beneficiaries: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Summary of the context for previews and debugging."""
        return {
            'testator': {
                'full_name': self.full_name,
                'marital_status': self.marital_status,
                'jurisdiction': self.jurisdiction,
                'will_type': self.will_type,
            },
            'derived_flags': {
                'is_married': self.is_married,
                'has_children': self.has_children,
                'has_minor_children': self.has_minor_children,
                'has_guardianship': self.has_guardianship,
                'has_alternate_executor': self.has_alternate_executor,
                'has_assets': self.has_assets,
                'has_percentages': self.has_percentages,
                'has_digital_assets': self.has_digital_assets,
                'has_funeral_wishes': self.has_funeral_wishes,
                'has_special_instructions': self.has_special_instructions,
                'requires_witnesses': self.requires_witnesses,
            },
            'counts': {
                'children': len(self.children),
                'assets': len(self.assets),
                'witnesses': len(self.witnesses),
                'percentage_sum': self.percentage_sum,
            },
            'residue_beneficiaries': list(self.residue_beneficiaries),
        }


def build_context(payload: Dict[str, Any], generation_timestamp: Optional[datetime] = None) -> WillContext:
    """
    Build the complete will context from a validated payload.

    This is the single source of truth for all derived flags.

    Args:
        payload: Validated will form
        generation_timestamp: Stored timestamp; minority of children and the
                              date printed in the document are taken from it

    Returns:
        WillContext with all entities and derived flags
    """
    context = WillContext()
    reference = generation_timestamp.date() if generation_timestamp else None

    context.full_name = (payload.get('full_name') or '').strip()
    context.birth_date = format_date(payload.get('birth_date'))
    context.birth_place = (payload.get('birth_place') or '').strip()
    context.address = (payload.get('address') or '').strip()
    context.citizenship = (payload.get('citizenship') or '').strip()
    context.marital_status = payload.get('marital_status') or ''
    context.generation_date = format_date(generation_timestamp) if generation_timestamp else ''

    # Legal framework
    context.jurisdiction = payload.get('jurisdiction') or ''
    context.will_type = payload.get('will_type') or ''
    framework = LEGAL_FRAMEWORKS.get(context.jurisdiction, {})
    context.jurisdiction_name = framework.get('name', context.jurisdiction)
    context.statute = framework.get('statute', '')
    context.forced_heirship = bool(framework.get('forced_heirship'))
    context.witnesses_required = required_witnesses(context.jurisdiction, context.will_type)
    context.requires_witnesses = context.witnesses_required > 0
    context.is_holographic = context.will_type == 'holographic'
    context.is_notarized = context.will_type == 'notarized'

    # Family
    context.is_married = context.marital_status == 'married'
    if context.is_married:
        context.spouse_name = (payload.get('spouse_name') or '').strip()

    if payload.get('has_children'):
        context.children = [
            Child.from_dict(c, reference) for c in payload.get('children') or [] if isinstance(c, dict)
        ]
    context.has_children = len(context.children) > 0
    context.has_minor_children = any(child.is_minor for child in context.children)

    # Executors and guardian
    context.executor = Person.from_dict(payload.get('executor'))
    context.alternate_executor = Person.from_dict(payload.get('alternate_executor'))
    context.has_alternate_executor = context.alternate_executor is not None

    guardian = Person.from_dict(payload.get('guardian'))
    if context.has_minor_children and guardian:
        context.guardian = guardian
        context.has_guardianship = True

    # Assets
    context.assets = [Asset.from_dict(a) for a in payload.get('assets') or [] if isinstance(a, dict)]
    context.has_assets = len(context.assets) > 0
    context.has_percentages = any(a.percentage is not None for a in context.assets)
    context.percentage_sum = sum(a.percentage or 0.0 for a in context.assets)

    context.digital_assets = [
        DigitalAsset.from_dict(d) for d in payload.get('digital_assets') or []
        if isinstance(d, (dict, str)) and d
    ]
    context.has_digital_assets = len(context.digital_assets) > 0

    # Formalities
    if context.requires_witnesses:
        context.witnesses = [
            person for person in (Person.from_dict(w) for w in payload.get('witnesses') or [])
            if person is not None
        ]
    if context.is_notarized:
        context.notary = (payload.get('notary') or '').strip()

    context.funeral_wishes = (payload.get('funeral_wishes') or '').strip()
    context.has_funeral_wishes = bool(context.funeral_wishes)
    context.special_instructions = (payload.get('special_instructions') or '').strip()
    context.has_special_instructions = bool(context.special_instructions)

    context.residue_beneficiaries = _residue_beneficiaries(context)
    return context


def _residue_beneficiaries(context: WillContext) -> List[str]:
    """Spouse first, then children in equal shares; empty means statutory heirs."""
    if context.is_married and context.spouse_name:
        return [context.spouse_name]
    if context.has_children:
        return [child.name for child in context.children]
    return []


"""
Clause Renderer Module

Selects the articles of a will and renders them into a document plan.
Each article is a Jinja2 template producing plain text; blank lines
separate paragraphs and lines starting with "- " become list items.

Clause selection rules:
- PREAMBLE, REVOCATION, EXECUTOR, DISTRIBUTION, RESIDUE, SIGNATURE: always
- FAMILY: is_married or has_children
- GUARDIANSHIP: has_guardianship (requires minor children)
- MANDATORY_SHARES: forced_heirship and has_children
- DIGITAL_ASSETS, FUNERAL_WISHES, SPECIAL_INSTRUCTIONS: when provided

The clause order is fixed so the same context always yields the same plan.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any

from jinja2 import Environment, DictLoader, StrictUndefined

from legacyguard.context_builder import WillContext


class ClauseId(str, Enum):
    """Stable clause identifiers."""
    PREAMBLE = 'preamble'
    REVOCATION = 'revocation'
    FAMILY = 'family'
    EXECUTOR = 'executor'
    GUARDIANSHIP = 'guardianship'
    DISTRIBUTION = 'distribution'
    RESIDUE = 'residue'
    MANDATORY_SHARES = 'mandatory_shares'
    DIGITAL_ASSETS = 'digital_assets'
    FUNERAL_WISHES = 'funeral_wishes'
    SPECIAL_INSTRUCTIONS = 'special_instructions'
    SIGNATURE = 'signature'


CLAUSE_ORDER: List[ClauseId] = list(ClauseId)

# All listed flags must be True; an empty list means always included
CLAUSE_TRIGGERS: Dict[ClauseId, List[List[str]]] = {
    ClauseId.FAMILY: [['is_married'], ['has_children']],
    ClauseId.GUARDIANSHIP: [['has_guardianship', 'has_minor_children']],
    ClauseId.MANDATORY_SHARES: [['forced_heirship', 'has_children']],
    ClauseId.DIGITAL_ASSETS: [['has_digital_assets']],
    ClauseId.FUNERAL_WISHES: [['has_funeral_wishes']],
    ClauseId.SPECIAL_INSTRUCTIONS: [['has_special_instructions']],
}

CLAUSE_TITLES: Dict[ClauseId, str] = {
    ClauseId.PREAMBLE: 'LAST WILL AND TESTAMENT',
    ClauseId.REVOCATION: 'REVOCATION OF PREVIOUS WILLS',
    ClauseId.FAMILY: 'FAMILY',
    ClauseId.EXECUTOR: 'APPOINTMENT OF EXECUTOR',
    ClauseId.GUARDIANSHIP: 'GUARDIAN OF MINOR CHILDREN',
    ClauseId.DISTRIBUTION: 'DISTRIBUTION OF ASSETS',
    ClauseId.RESIDUE: 'RESIDUE OF THE ESTATE',
    ClauseId.MANDATORY_SHARES: 'MANDATORY SHARES',
    ClauseId.DIGITAL_ASSETS: 'DIGITAL ASSETS',
    ClauseId.FUNERAL_WISHES: 'FUNERAL WISHES',
    ClauseId.SPECIAL_INSTRUCTIONS: 'SPECIAL INSTRUCTIONS',
    ClauseId.SIGNATURE: 'SIGNATURE',
}

CLAUSE_TEMPLATES: Dict[str, str] = {
    'preamble': (
        'I, {{ c.full_name }}, born on {{ c.birth_date }}'
        '{% if c.birth_place %} in {{ c.birth_place }}{% endif %}, '
        'residing at {{ c.address }}, citizen of {{ c.citizenship }}, being of sound mind and acting '
        'freely and without coercion, hereby declare this document to be my last will and testament.\n'
    ),
    'revocation': (
        'I hereby revoke all wills, codicils and other testamentary dispositions previously made by me.\n'
    ),
    'family': (
        '{% if c.is_married %}\n'
        'I am married to {{ c.spouse_name }}.\n'
        '\n'
        '{% endif %}\n'
        '{% if c.has_children %}\n'
        'I have the following {{ "child" if c.children|length == 1 else "children" }}:\n'
        '\n'
        '{% for child in c.children %}\n'
        '- {{ child.name }}, born on {{ child.birth_date }}\n'
        '{% endfor %}\n'
        '{% endif %}\n'
    ),
    'executor': (
        'I appoint {{ c.executor.name }}'
        '{% if c.executor.address %}, residing at {{ c.executor.address }}{% endif %}, '
        'as the executor of this will and of my estate.\n'
        '{% if c.alternate_executor %}\n'
        '\n'
        'If {{ c.executor.name }} is unable or unwilling to act, I appoint {{ c.alternate_executor.name }}'
        '{% if c.alternate_executor.address %}, residing at {{ c.alternate_executor.address }}{% endif %}, '
        'as substitute executor.\n'
        '{% endif %}\n'
        '\n'
        'The executor shall collect my assets, pay my debts and the costs of administration, '
        'and distribute my estate in accordance with this will.\n'
    ),
    'guardianship': (
        'If at the time of my death any of my children is a minor, I appoint {{ c.guardian.name }}'
        '{% if c.guardian.address %}, residing at {{ c.guardian.address }}{% endif %}, '
        'as guardian of my minor children.\n'
    ),
    'distribution': (
        '{% if c.has_assets %}\n'
        'I leave the following assets to the beneficiary named for each of them:\n'
        '\n'
        '{% for asset in c.assets %}\n'
        '- {{ asset.description }} to {{ asset.beneficiary }}'
        '{% if asset.share_text %} ({{ asset.share_text }} share){% endif %}\n'
        '{% endfor %}\n'
        '{% else %}\n'
        'I make no specific gifts. My estate passes as set out in the following article.\n'
        '{% endif %}\n'
    ),
    'residue': (
        '{% if c.residue_beneficiaries %}\n'
        'The residue of my estate, being everything not otherwise disposed of by this will, '
        'I leave to {{ c.residue_beneficiaries|join(", ") }}'
        '{% if c.residue_beneficiaries|length > 1 %} in equal shares{% endif %}.\n'
        '{% else %}\n'
        'The residue of my estate, being everything not otherwise disposed of by this will, '
        'passes to my heirs by statutory succession.\n'
        '{% endif %}\n'
        '\n'
        'If any beneficiary named in this will does not survive me, the gift to that beneficiary '
        'forms part of the residue of my estate.\n'
    ),
    'mandatory_shares': (
        'I acknowledge that under the law of {{ c.jurisdiction_name }} my descendants are entitled to a '
        'mandatory share of my estate. Nothing in this will is intended to reduce that share below '
        'the statutory minimum.\n'
    ),
    'digital_assets': (
        'I direct my executor to deal with my digital assets and online accounts as follows:\n'
        '\n'
        '{% for item in c.digital_assets %}\n'
        '- {{ item.platform }}{% if item.instructions %}: {{ item.instructions }}{% endif %}\n'
        '{% endfor %}\n'
    ),
    'funeral_wishes': (
        'I express the following wishes for my funeral: {{ c.funeral_wishes }}\n'
    ),
    'special_instructions': (
        '{{ c.special_instructions }}\n'
    ),
    'signature': (
        '{% if c.is_holographic %}\n'
        'This will is written entirely in my own hand and signed by me.\n'
        '{% elif c.is_notarized %}\n'
        'This will is to be executed before a notary{% if c.notary %} ({{ c.notary }}){% endif %} '
        'in the form of a notarial deed.\n'
        '{% else %}\n'
        'I declare this document to be my will in the presence of the {{ c.witnesses_required }} witnesses '
        'named below, who are present at the same time and sign it in my presence.\n'
        '{% endif %}\n'
        '\n'
        'This will is made under the law of {{ c.jurisdiction_name }}'
        '{% if c.statute %} ({{ c.statute }}){% endif %}.\n'
        '\n'
        'Place and date of signature: ______________________\n'
    ),
}

jinja_env = Environment(
    loader=DictLoader(CLAUSE_TEMPLATES),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


@dataclass
class ContentBlock:
    """A block of content within a clause."""
    type: str  # 'heading1', 'paragraph', 'bullet_item', 'signature_block'
    content: Any
    style: str = 'normal'
    indent_level: int = 0


@dataclass
class DocumentPlanItem:
    """A clause in the document plan."""
    id: str
    title: str
    numbering_level: int  # 0 for the unnumbered preamble, 1 for articles
    content_blocks: List[ContentBlock] = field(default_factory=list)
    clause_number: int = 0


def to_roman(number: int) -> str:
    numerals = [(10, 'X'), (9, 'IX'), (5, 'V'), (4, 'IV'), (1, 'I')]
    result = ''
    for value, numeral in numerals:
        while number >= value:
            result += numeral
            number -= value
    return result


def is_clause_triggered(clause_id: ClauseId, context: WillContext) -> bool:
    alternatives = CLAUSE_TRIGGERS.get(clause_id)
    if not alternatives:
        return True
    return any(all(getattr(context, flag) for flag in flags) for flags in alternatives)


def select_clauses(context: WillContext) -> List[ClauseId]:
    """Clauses to include, in their fixed order."""
    return [clause_id for clause_id in CLAUSE_ORDER if is_clause_triggered(clause_id, context)]


def _text_to_blocks(text: str) -> List[ContentBlock]:
    blocks = []
    for chunk in text.split('\n\n'):
        lines = [line.strip() for line in chunk.strip().splitlines() if line.strip()]
        if not lines:
            continue
        if all(line.startswith('- ') for line in lines):
            blocks.extend(
                ContentBlock(type='bullet_item', content=line[2:], indent_level=1) for line in lines
            )
        else:
            blocks.append(ContentBlock(type='paragraph', content=' '.join(lines)))
    return blocks


def _signature_blocks(context: WillContext) -> List[ContentBlock]:
    blocks = [ContentBlock(
        type='signature_block',
        content={
            'label': 'Signature of the testator',
            'name': context.full_name,
            'date_label': 'Date',
            'lines': 3,
        },
        style='signature',
    )]

    if not context.requires_witnesses:
        return blocks

    for index in range(context.witnesses_required):
        witness = context.witnesses[index] if index < len(context.witnesses) else None
        blocks.append(ContentBlock(
            type='signature_block',
            content={
                'label': f'Signature of witness {index + 1}',
                'name_label': 'Name (print)',
                'name': witness.name if witness else '',
                'address_label': 'Address',
                'date_label': 'Date',
                'lines': 4,
            },
            style='signature',
        ))
    return blocks


def _render_clause(clause_id: ClauseId, context: WillContext, clause_number: int) -> DocumentPlanItem:
    text = jinja_env.get_template(clause_id.value).render(c=context)
    blocks = _text_to_blocks(text)

    if clause_id == ClauseId.PREAMBLE:
        blocks.insert(0, ContentBlock(type='heading1', content=CLAUSE_TITLES[clause_id], style='title'))
    elif clause_id == ClauseId.SIGNATURE:
        blocks.extend(_signature_blocks(context))

    return DocumentPlanItem(
        id=clause_id.value,
        title=CLAUSE_TITLES[clause_id],
        numbering_level=0 if clause_id == ClauseId.PREAMBLE else 1,
        content_blocks=blocks,
        clause_number=clause_number,
    )


def render_document_plan(context: WillContext) -> List[DocumentPlanItem]:
    """
    Render the complete document plan from context.

    The preamble is unnumbered; the following articles are numbered from 1.
    """
    plan = []
    article = 0
    for clause_id in select_clauses(context):
        if clause_id != ClauseId.PREAMBLE:
            article += 1
        plan.append(_render_clause(clause_id, context, article))
    return plan


def article_heading(item: DocumentPlanItem) -> str:
    return f'ARTICLE {to_roman(item.clause_number)} - {item.title}'


def plan_to_text(document_plan: List[DocumentPlanItem]) -> str:
    """Plain-text rendition of the plan, stored with the will and scored by the trust seal."""
    sections = []
    for item in document_plan:
        lines = []
        if item.numbering_level > 0:
            lines.append(article_heading(item))
        for block in item.content_blocks:
            if block.type == 'heading1':
                lines.append(block.content)
            elif block.type == 'paragraph':
                lines.append(block.content)
            elif block.type == 'bullet_item':
                lines.append(f'- {block.content}')
            elif block.type == 'signature_block':
                lines.append('')
                lines.append('_________________________')
                name = block.content.get('name')
                if name:
                    lines.append(name)
                lines.append(block.content['label'])
        sections.append('\n'.join(lines))
    return '\n\n'.join(sections) + '\n'


def document_plan_to_dict(document_plan: List[DocumentPlanItem]) -> List[Dict[str, Any]]:
    """Convert document plan to dictionaries for JSON previews."""
    return [
        {
            'id': item.id,
            'title': item.title,
            'clause_number': item.clause_number,
            'numbering_level': item.numbering_level,
            'content_blocks': [
                {
                    'type': block.type,
                    'content': block.content,
                    'style': block.style,
                    'indent_level': block.indent_level,
                }
                for block in item.content_blocks
            ],
        }
        for item in document_plan
    ]


def clauses_summary(context: WillContext) -> Dict[str, Any]:
    selected = select_clauses(context)
    return {
        'included': [clause.value for clause in selected],
        'excluded': [clause.value for clause in CLAUSE_ORDER if clause not in selected],
        'article_count': len([clause for clause in selected if clause != ClauseId.PREAMBLE]),
    }

"""
PDF Generator Module

Renders a will's document plan to PDF with ReportLab.

Two-pass rendering:
1. First pass renders the content with a page-number-only footer and
   hashes the result.
2. Second pass repeats the render with a footer carrying the stored
   generation timestamp and the short hash of the first pass.

All dates come from the stored generation timestamp and ReportLab runs in
invariant mode, so the same plan and timestamp give identical bytes.
"""

import io
import hashlib
from typing import List, Dict, Any, Tuple
from datetime import datetime

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Flowable
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab import rl_config

from legacyguard.clause_renderer import DocumentPlanItem, ContentBlock, article_heading
from legacyguard.utils import short_hash

# Invariant mode keeps ReportLab from embedding the wall clock and random ids
rl_config.invariant = 1

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN_LEFT = 25 * mm
MARGIN_RIGHT = 25 * mm
MARGIN_TOP = 20 * mm
MARGIN_BOTTOM = 30 * mm

PDF_TITLE = 'Last Will and Testament'
PDF_AUTHOR = 'LegacyGuard'


class SignatureBlock(Flowable):
    """Labelled lines for a signature, a printed name, an address and a date."""

    def __init__(self, content: Dict[str, Any], width: float = 400):
        super().__init__()
        self.content = content
        self.block_width = width
        self.line_height = 22

    def wrap(self, availWidth, availHeight):
        lines = self.content.get('lines', 3)
        self.height = lines * self.line_height + 50
        return (min(self.block_width, availWidth), self.height)

    def _line(self, label: str, y: float, value: str = '', end: float = None):
        canvas = self.canv
        canvas.setFont('Times-Roman', 10)
        canvas.drawString(0, y, f'{label}:')
        if value:
            canvas.setFont('Times-Bold', 10)
            canvas.drawString(100, y, value)
        canvas.line(100, y - 2, end or self.block_width, y - 2)

    def draw(self):
        y = self.height - 25

        label = self.content.get('label', '')
        if label:
            self.canv.setFont('Times-Bold', 11)
            self.canv.drawString(0, y, label)
            y -= self.line_height

        self._line(self.content.get('name_label', 'Name'), y, self.content.get('name', ''))
        y -= self.line_height

        if 'address_label' in self.content:
            self._line(self.content['address_label'], y)
            y -= self.line_height

        self._line('Signature', y)
        y -= self.line_height

        self._line(self.content.get('date_label', 'Date'), y, end=220)


def create_styles() -> Dict[str, ParagraphStyle]:
    """Paragraph styles for the will document."""
    styles = getSampleStyleSheet()

    return {
        'title': ParagraphStyle(
            'WillTitle',
            parent=styles['Heading1'],
            fontSize=18,
            leading=26,
            alignment=TA_CENTER,
            spaceAfter=30,
            fontName='Times-Bold',
        ),
        'clause_heading': ParagraphStyle(
            'ClauseHeading',
            parent=styles['Heading2'],
            fontSize=12,
            leading=18,
            spaceBefore=20,
            spaceAfter=10,
            fontName='Times-Bold',
            textColor=colors.HexColor('#1a1a1a'),
        ),
        'normal': ParagraphStyle(
            'WillNormal',
            parent=styles['Normal'],
            fontSize=11,
            leading=17,
            alignment=TA_JUSTIFY,
            spaceAfter=10,
            fontName='Times-Roman',
        ),
        'bullet_item': ParagraphStyle(
            'BulletItem',
            parent=styles['Normal'],
            fontSize=11,
            leading=17,
            leftIndent=40,
            firstLineIndent=-20,
            spaceAfter=6,
            fontName='Times-Roman',
        ),
    }


def format_timestamp_for_footer(timestamp: datetime) -> str:
    """Footer form of the stored (naive UTC) generation timestamp."""
    if timestamp is None:
        return ''
    return timestamp.strftime('%d.%m.%Y %H:%M UTC')


def _build(document_plan: List[DocumentPlanItem], generation_timestamp: datetime, footer) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=MARGIN_LEFT,
        rightMargin=MARGIN_RIGHT,
        topMargin=MARGIN_TOP,
        bottomMargin=MARGIN_BOTTOM,
        title=PDF_TITLE,
        author=PDF_AUTHOR,
        creator=PDF_AUTHOR,
        creationDate=generation_timestamp,
        modDate=generation_timestamp,
    )

    styles = create_styles()
    story = []
    for item in document_plan:
        story.extend(_render_clause_to_elements(item, styles))

    doc.build(story, onFirstPage=footer, onLaterPages=footer)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes


def generate_pdf_with_footer(document_plan: List[DocumentPlanItem],
                             generation_timestamp: datetime) -> Tuple[bytes, str]:
    """
    Generate the will PDF.

    Args:
        document_plan: The rendered document plan
        generation_timestamp: Stored timestamp of the will record

    Returns:
        Tuple of (PDF bytes, SHA256 hash of those bytes)
    """
    first_pass = _build(document_plan, generation_timestamp, _simple_footer)
    content_hash = hashlib.sha256(first_pass).hexdigest()

    footer = _create_full_footer_callback(generation_timestamp, content_hash)
    pdf_bytes = _build(document_plan, generation_timestamp, footer)

    return pdf_bytes, hashlib.sha256(pdf_bytes).hexdigest()


def _render_clause_to_elements(item: DocumentPlanItem, styles: Dict[str, ParagraphStyle]) -> List:
    elements = []

    if item.numbering_level > 0:
        elements.append(Paragraph(_escape_text(article_heading(item)), styles['clause_heading']))

    for block in item.content_blocks:
        element = _render_content_block(block, styles)
        if element is not None:
            elements.append(element)

    elements.append(Spacer(1, 8))
    return elements


def _render_content_block(block: ContentBlock, styles: Dict[str, ParagraphStyle]):
    if block.type == 'heading1':
        return Paragraph(_escape_text(block.content), styles['title'])

    if block.type == 'paragraph':
        return Paragraph(_escape_text(block.content), styles['normal'])

    if block.type == 'bullet_item':
        return Paragraph(_escape_text(f'• {block.content}'), styles['bullet_item'])

    if block.type == 'signature_block':
        return SignatureBlock(block.content)

    return None


def _escape_text(text: str) -> str:
    """XML-escape text for a ReportLab Paragraph."""
    if not text:
        return ''

    result = text
    for old, new in (('&', '&amp;'), ('<', '&lt;'), ('>', '&gt;'), ('"', '&quot;')):
        result = result.replace(old, new)
    return result


def _simple_footer(canvas, doc):
    canvas.saveState()
    canvas.setFont('Times-Roman', 8)
    canvas.setFillColor(colors.grey)
    canvas.drawRightString(PAGE_WIDTH - MARGIN_RIGHT, 15 * mm, f'Page {doc.page}')
    canvas.restoreState()


def _create_full_footer_callback(generation_timestamp: datetime, content_hash: str):
    """Footer with the generation timestamp, the short content hash and the page number."""
    footer_text = (
        f'Generated: {format_timestamp_for_footer(generation_timestamp)} | '
        f'Hash: {short_hash(content_hash, 16)}'
    )

    def footer(canvas, doc):
        canvas.saveState()
        canvas.setFont('Times-Roman', 8)
        canvas.setFillColor(colors.HexColor('#666666'))
        canvas.drawString(MARGIN_LEFT, 15 * mm, footer_text)
        canvas.drawRightString(PAGE_WIDTH - MARGIN_RIGHT, 15 * mm, f'Page {doc.page}')
        canvas.restoreState()

    return footer


def verify_pdf_integrity(pdf_bytes: bytes, expected_hash: str) -> bool:
    return hashlib.sha256(pdf_bytes).hexdigest() == expected_hash

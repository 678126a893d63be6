"""
Support assistant and ticketing.

A query is answered by the first layer that can handle it:
1. Rule-based answers for the common questions (keyword matched)
2. Knowledge base articles, when the best match scores above 0.7
3. Escalation to a human when a trigger fires (a ticket is opened)
4. Self-help fallback

Every answer is recorded as a SupportInteraction.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Dict, List, Any, Optional, Tuple

from flask import current_app

from legacyguard import db
from legacyguard.models import User, SupportTicket, SupportInteraction, KnowledgeArticle
from legacyguard.email_service import send_template_email
from legacyguard.audit_logger import log_action, AuditAction, AuditCategory
from legacyguard.validation import TICKET_STATUSES

KB_CONFIDENCE_THRESHOLD = 0.7
ESCALATION_COMPLEXITY_THRESHOLD = 0.8

NEGATIVE_WORDS = ['frustrated', 'angry', 'broken', 'terrible', 'awful', 'hate']
HUMAN_REQUIRED_TERMS = ['refund', 'cancel subscription', 'legal advice', 'court', 'lawsuit']


class SupportError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class SupportResponse:
    content: str
    confidence: float
    response_type: str
    response_key: Optional[str] = None
    follow_up_questions: List[str] = field(default_factory=list)
    suggested_articles: List[Dict[str, Any]] = field(default_factory=list)
    escalation_recommended: bool = False
    requires_human: bool = False
    resolution_probability: float = 0.0
    ticket_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EscalationTrigger:
    sentiment_negative: bool = False
    complexity_score: float = 0.0
    requires_human: bool = False
    legal_sensitive: bool = False
    billing_related: bool = False
    user_tier_escalation: bool = False

    @property
    def should_escalate(self) -> bool:
        return (self.sentiment_negative or self.requires_human or self.legal_sensitive
                or self.billing_related or self.user_tier_escalation
                or self.complexity_score >= ESCALATION_COMPLEXITY_THRESHOLD)

    @property
    def reason(self) -> str:
        if self.legal_sensitive:
            return 'legal'
        if self.billing_related:
            return 'billing'
        if self.user_tier_escalation:
            return 'enterprise'
        if self.requires_human:
            return 'human_required'
        if self.sentiment_negative:
            return 'negative_sentiment'
        return 'complexity'


# ---------------------------------------------------------------------------
# Rule-based answers
# ---------------------------------------------------------------------------

RULE_BASED_RESPONSES = {
    'password_reset': {
        'content': (
            'To reset your password:\n'
            '1. Open the sign-in page and choose "Forgot password".\n'
            '2. Enter the email address of your account.\n'
            '3. Follow the link in the email we send you.\n\n'
            'Your encrypted documents can only be opened again with your Recovery Kit. '
            'Keep it somewhere safe.'
        ),
        'confidence': 0.95,
        'follow_up_questions': [
            'Did the reset email arrive?',
            'Do you have your Recovery Kit?',
        ],
        'resolution_probability': 0.9,
    },
    'will_validity': {
        'content': (
            'A will is legally valid when it follows one of the recognised forms:\n'
            '- Holographic: written and signed entirely in your own hand.\n'
            '- Witnessed: signed in front of 2 witnesses who are not beneficiaries.\n'
            '- Notarial: executed as a notarial deed.\n\n'
            'Every generated will includes signing instructions for its jurisdiction.'
        ),
        'confidence': 0.98,
        'follow_up_questions': [
            'Which form of will are you planning to use?',
            'Would you like the signing instructions for your will?',
        ],
        'resolution_probability': 0.85,
    },
    'document_security': {
        'content': (
            'Your documents are encrypted in your browser before upload. '
            'We operate on a zero-knowledge basis: we store only encrypted data and '
            'never hold the keys needed to read it.'
        ),
        'confidence': 0.99,
        'follow_up_questions': [
            'Would you like to know how guardians get access in an emergency?',
        ],
        'resolution_probability': 0.9,
    },
    'hard_refresh': {
        'content': (
            'Please try the following:\n'
            '1. Hard refresh the page (Ctrl+Shift+R, or Cmd+Shift+R on a Mac).\n'
            '2. Clear your browser cache.\n'
            '3. Try a different browser.\n'
            '4. Check your internet connection.'
        ),
        'confidence': 0.92,
        'follow_up_questions': [
            'Did the problem go away after the refresh?',
            'Which browser are you using?',
        ],
        'resolution_probability': 0.7,
    },
    'subscription_tiers': {
        'content': (
            'We offer three plans:\n'
            '- Free: 1 guardian, 1 time capsule and basic document storage.\n'
            '- Premium: up to 5 guardians, 10 time capsules and will generation for every jurisdiction.\n'
            '- Enterprise: unlimited guardians and time capsules with priority support.'
        ),
        'confidence': 0.97,
        'follow_up_questions': [
            'Would you like help choosing a plan?',
        ],
        'resolution_probability': 0.85,
    },
}


def _match_rule(query: str) -> Optional[str]:
    q = query.lower()
    if 'password' in q or 'heslo' in q:
        return 'password_reset'
    if 'will' in q and ('valid' in q or 'legal' in q):
        return 'will_validity'
    if 'security' in q or 'secure' in q or 'privacy' in q:
        return 'document_security'
    if 'error' in q or 'not working' in q or 'loading' in q:
        return 'hard_refresh'
    if any(term in q for term in ('price', 'pricing', 'subscription', 'plan', 'tier')):
        return 'subscription_tiers'
    return None


def check_rule_based_response(query: str) -> Optional[SupportResponse]:
    key = _match_rule(query)
    if key is None:
        return None

    rule = RULE_BASED_RESPONSES[key]
    return SupportResponse(
        content=rule['content'],
        confidence=rule['confidence'],
        response_type='rule_based',
        response_key=key,
        follow_up_questions=list(rule['follow_up_questions']),
        resolution_probability=rule['resolution_probability'],
    )


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

SEED_ARTICLES = [
    {
        'slug': 'getting-started',
        'title': 'Getting started with LegacyGuard',
        'category': 'getting_started',
        'effectiveness_score': 0.8,
        'keywords': ['getting started', 'onboarding', 'setup', 'first steps'],
        'content': (
            'Start by uploading your most important documents, then invite a guardian '
            'you trust. Download your Recovery Kit and keep it offline. When you are ready, '
            'generate your will and check in regularly so the Dead Man\'s Switch knows you are active.'
        ),
    },
    {
        'slug': 'security-and-encryption',
        'title': 'Security and encryption',
        'category': 'account_security',
        'effectiveness_score': 0.9,
        'keywords': ['security', 'encryption', 'privacy', 'recovery kit'],
        'content': (
            'Documents are encrypted in your browser before they reach our servers. '
            'We never see your keys. If you lose your password, the Recovery Kit is the only '
            'way to decrypt your documents again.'
        ),
    },
    {
        'slug': 'will-validity-slovakia',
        'title': 'Legal validity of a will in Slovakia',
        'category': 'legal_compliance',
        'effectiveness_score': 0.85,
        'keywords': ['will', 'slovakia', 'legal validity', 'notary'],
        'content': (
            'Under the Slovak Civil Code a will can be handwritten and signed by the testator, '
            'typed and signed in front of two witnesses, or executed as a notarial deed. '
            'Descendants are entitled to a mandatory share of the estate.'
        ),
    },
    {
        'slug': 'pricing-plans',
        'title': 'Pricing plans',
        'category': 'billing_subscription',
        'effectiveness_score': 0.88,
        'keywords': ['pricing', 'subscription', 'upgrade', 'premium', 'enterprise'],
        'content': (
            'The free plan covers one guardian and one time capsule. Premium raises the limits '
            'to five guardians and ten time capsules. Enterprise removes the limits and adds '
            'priority support. You can upgrade at any time from your account settings.'
        ),
    },
]


def seed_knowledge_base() -> int:
    """Insert the built-in articles that are missing. Returns the number added."""
    added = 0
    for data in SEED_ARTICLES:
        if KnowledgeArticle.query.filter_by(slug=data['slug']).first():
            continue
        db.session.add(KnowledgeArticle(
            slug=data['slug'],
            title=data['title'],
            content=data['content'],
            category=data['category'],
            keywords_json=json.dumps(data['keywords']),
            effectiveness_score=data['effectiveness_score'],
        ))
        added += 1

    if added:
        db.session.commit()
        current_app.logger.info(f'Seeded {added} knowledge base article(s)')
    return added


STOP_WORDS = {
    'and', 'the', 'for', 'with', 'you', 'your', 'are', 'how', 'what', 'can',
    'not', 'does', 'this', 'that', 'have', 'want', 'need', 'about',
}


def _query_words(query: str) -> List[str]:
    words = (w.strip('.,!?:;"()') for w in query.lower().split())
    return [w for w in words if len(w) >= 3 and w not in STOP_WORDS]


def _snippet(content: str, length: int = 160) -> str:
    if len(content) <= length:
        return content
    return content[:length].rsplit(' ', 1)[0] + '...'


def _relevance(article: KnowledgeArticle, query: str, words: List[str]) -> Tuple[float, List[str]]:
    keywords = article.get_keywords()
    matching = [kw for kw in keywords if any(word in kw.lower() for word in words)]

    score = article.effectiveness_score
    if keywords:
        score += (len(matching) / len(keywords)) * 0.3
    if query.lower() in article.title.lower():
        score += 0.2
    return min(score, 1.0), matching


def search_knowledge_base(query: str, category: Optional[str] = None,
                          limit: int = 10) -> List[Dict[str, Any]]:
    """
    Search published articles.

    An article matches when a query word appears in its keywords or title.
    Results are ordered by relevance, highest first.
    """
    words = _query_words(query)
    if not words:
        return []

    articles = KnowledgeArticle.query.filter_by(published=True)
    if category:
        articles = articles.filter_by(category=category)

    results = []
    for article in articles.all():
        relevance, matching = _relevance(article, query, words)
        title_words = set(article.title.lower().split())
        if not matching and not any(word in title_words for word in words):
            continue
        results.append({
            'article': article.to_dict(),
            'relevance': round(relevance, 3),
            'matching_keywords': matching,
            'snippet': _snippet(article.content),
        })

    results.sort(key=lambda r: (-r['relevance'], r['article']['id']))
    return results[:limit]


def knowledge_base_response(query: str) -> Optional[SupportResponse]:
    results = search_knowledge_base(query, limit=4)
    if not results or results[0]['relevance'] <= KB_CONFIDENCE_THRESHOLD:
        return None

    best = results[0]
    article = db.session.get(KnowledgeArticle, best['article']['id'])
    return SupportResponse(
        content=article.content,
        confidence=best['relevance'],
        response_type='knowledge_base',
        response_key=article.slug,
        suggested_articles=[r['article'] for r in results[1:]],
        follow_up_questions=['Did this article answer your question?'],
        resolution_probability=article.effectiveness_score,
    )


def get_article(slug: str) -> KnowledgeArticle:
    article = KnowledgeArticle.query.filter_by(slug=slug, published=True).first()
    if article is None:
        raise SupportError('Article not found', 404)
    article.view_count += 1
    db.session.commit()
    return article


def vote_on_article(slug: str, helpful: bool) -> KnowledgeArticle:
    """
    Record a helpful/unhelpful vote. The effectiveness score becomes the
    Laplace-smoothed share of helpful votes.
    """
    article = KnowledgeArticle.query.filter_by(slug=slug, published=True).first()
    if article is None:
        raise SupportError('Article not found', 404)

    if helpful:
        article.helpful_votes += 1
    else:
        article.unhelpful_votes += 1
    total = article.helpful_votes + article.unhelpful_votes
    article.effectiveness_score = round((article.helpful_votes + 1) / (total + 2), 3)
    db.session.commit()
    return article


def get_knowledge_base_stats() -> Dict[str, Any]:
    articles = KnowledgeArticle.query.filter_by(published=True).all()
    by_category: Dict[str, int] = {}
    for article in articles:
        by_category[article.category] = by_category.get(article.category, 0) + 1

    top = sorted(articles, key=lambda a: (-a.effectiveness_score, a.id))[:5]
    return {
        'total_articles': len(articles),
        'by_category': by_category,
        'total_views': sum(a.view_count for a in articles),
        'average_effectiveness': (
            round(sum(a.effectiveness_score for a in articles) / len(articles), 3) if articles else 0.0
        ),
        'top_articles': [a.to_dict() for a in top],
    }


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def detect_negative_sentiment(text: str) -> bool:
    t = text.lower()
    return any(word in t for word in NEGATIVE_WORDS)


def calculate_complexity_score(query: str) -> float:
    score = 0.3
    if len(query) > 200:
        score += 0.2
    if len(query.split('?')) > 2:
        score += 0.2
    q = query.lower()
    if 'legal' in q:
        score += 0.3
    if 'technical' in q:
        score += 0.2
    return min(round(score, 2), 1.0)


def requires_human_expertise(query: str) -> bool:
    q = query.lower()
    return any(term in q for term in HUMAN_REQUIRED_TERMS)


def check_escalation_triggers(query: str, user: Optional[User] = None) -> EscalationTrigger:
    q = query.lower()
    return EscalationTrigger(
        sentiment_negative=detect_negative_sentiment(query),
        complexity_score=calculate_complexity_score(query),
        requires_human=requires_human_expertise(query),
        legal_sensitive='lawyer' in q or 'court' in q,
        billing_related='billing' in q or 'payment' in q,
        user_tier_escalation=user is not None and user.tier == 'enterprise',
    )


ESCALATION_MESSAGES = {
    'legal': (
        'Your question needs a legal specialist. We have passed it to our legal team, '
        'who will reply within 24 hours.'
    ),
    'billing': (
        'Our billing team will look into this for you and reply within one business day.'
    ),
    'enterprise': (
        'As an Enterprise customer your request goes straight to your dedicated support '
        'specialist, who will contact you shortly.'
    ),
    'default': (
        'We have passed your question to a member of our support team, who will get back '
        'to you as soon as possible.'
    ),
}


def create_escalation_response(trigger: EscalationTrigger) -> SupportResponse:
    message = ESCALATION_MESSAGES.get(trigger.reason, ESCALATION_MESSAGES['default'])
    return SupportResponse(
        content=message,
        confidence=1.0,
        response_type='escalation',
        response_key=trigger.reason,
        follow_up_questions=['Is there anything else we should know before we contact you?'],
        escalation_recommended=True,
        requires_human=True,
        resolution_probability=0.95,
    )


def create_self_help_response(query: str) -> SupportResponse:
    results = search_knowledge_base(query, limit=3)
    return SupportResponse(
        content=(
            'We could not find an exact answer. The articles below may help, or you can open '
            'a support ticket and our team will reply.'
        ),
        confidence=0.3,
        response_type='self_help',
        suggested_articles=[r['article'] for r in results],
        follow_up_questions=['Would you like to open a support ticket?'],
        escalation_recommended=True,
        resolution_probability=0.2,
    )


def _record_interaction(query: str, response: SupportResponse, user: Optional[User]):
    db.session.add(SupportInteraction(
        ticket_id=response.ticket_id,
        user_id=user.id if user else None,
        query=query,
        response_type=response.response_type,
        response_key=response.response_key,
        confidence=response.confidence,
    ))
    db.session.commit()


def generate_support_response(query: str, user: Optional[User] = None) -> SupportResponse:
    """
    Answer a support query.

    Escalations for a known user open a ticket whose id is returned with
    the response.
    """
    query = (query or '').strip()
    if not query:
        raise SupportError('Query is required')

    response = check_rule_based_response(query) or knowledge_base_response(query)

    if response is None:
        trigger = check_escalation_triggers(query, user)
        if trigger.should_escalate:
            response = create_escalation_response(trigger)
            if user is not None:
                ticket = create_support_ticket(user, {
                    'title': query[:80],
                    'description': query,
                }, escalated_reason=trigger.reason)
                ticket.ai_responses_count = 1
                db.session.commit()
                response.ticket_id = ticket.id
        else:
            response = create_self_help_response(query)

    _record_interaction(query, response, user)
    current_app.logger.info(
        f'Support query answered ({response.response_type}, confidence {response.confidence})'
    )
    return response


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------

def categorize_query(text: str) -> str:
    t = text.lower()
    if 'payment' in t or 'billing' in t:
        return 'billing'
    if 'legal' in t or 'will' in t:
        return 'legal'
    if 'error' in t or 'bug' in t:
        return 'technical'
    return 'feature_request'


def determine_priority(text: str, user: User) -> str:
    if user.tier == 'enterprise':
        return 'high'
    if 'urgent' in text.lower():
        return 'high'
    return 'medium'


def _notify_support_inbox(ticket: SupportTicket, user: User):
    sent, error = send_template_email(current_app.config['SUPPORT_EMAIL'], 'support_ticket_created', {
        'priority': ticket.priority,
        'ticket_id': ticket.id,
        'title': ticket.title,
        'category': ticket.category,
        'user_email': user.email,
        'description': ticket.description,
        'escalated_reason': ticket.escalated_reason or '',
    })
    if not sent:
        current_app.logger.warning(f'Support inbox notification for ticket {ticket.id} failed: {error}')


def create_support_ticket(user: User, data: Dict[str, Any],
                          escalated_reason: Optional[str] = None) -> SupportTicket:
    """
    Open a ticket from a validated payload. Category and priority are
    derived from the text unless a category is given.
    """
    title = data['title'].strip()
    description = data['description'].strip()
    text = f'{title} {description}'

    ticket = SupportTicket(
        user_id=user.id,
        title=title,
        description=description,
        category=data.get('category') or categorize_query(text),
        priority=determine_priority(text, user),
        sentiment_score=0.2 if detect_negative_sentiment(text) else 0.7,
        complexity_score=calculate_complexity_score(description),
        escalated_reason=escalated_reason,
    )
    db.session.add(ticket)
    db.session.commit()

    log_action(
        action=AuditAction.SUPPORT_TICKET_CREATED,
        action_category=AuditCategory.CREATE,
        resource_type='support_ticket',
        resource_id=ticket.id,
        user_id=user.id,
        actor_type='user',
        actor_id=user.id,
        details={'category': ticket.category, 'priority': ticket.priority,
                 'escalated_reason': escalated_reason}
    )

    if ticket.priority in ('high', 'urgent'):
        _notify_support_inbox(ticket, user)
    return ticket


def list_tickets(user_id: Optional[str] = None, status: Optional[str] = None) -> List[SupportTicket]:
    query = SupportTicket.query
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(SupportTicket.created_at.desc(), SupportTicket.id.desc()).all()


def get_ticket(ticket_id: int, user_id: Optional[str] = None) -> SupportTicket:
    query = SupportTicket.query.filter_by(id=ticket_id)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    ticket = query.first()
    if ticket is None:
        raise SupportError('Ticket not found', 404)
    return ticket


def update_ticket_status(ticket_id: int, status: str, now: Optional[datetime] = None) -> SupportTicket:
    """Move a ticket to a new status. Resolving records the resolution time."""
    if status not in TICKET_STATUSES:
        raise SupportError(f'Invalid status: {status}')

    ticket = get_ticket(ticket_id)
    now = now or datetime.utcnow()
    ticket.status = status
    ticket.updated_at = now
    if status == 'resolved' and ticket.resolved_at is None:
        ticket.resolved_at = now
        ticket.resolution_time_minutes = int((now - ticket.created_at).total_seconds() // 60)
    db.session.commit()
    return ticket


def rate_ticket(user: User, ticket_id: int, rating: Any) -> SupportTicket:
    ticket = get_ticket(ticket_id, user.id)
    if ticket.status not in ('resolved', 'closed'):
        raise SupportError('Only resolved tickets can be rated', 409)
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise SupportError('Rating must be an integer between 1 and 5')

    ticket.satisfaction_rating = rating
    ticket.updated_at = datetime.utcnow()
    db.session.commit()
    return ticket


QUICK_FIXES = {
    'password': 'Use "Forgot password" on the sign-in page to reset your password.',
    'loading': 'Hard refresh the page (Ctrl+Shift+R) and clear your browser cache.',
    'upload': 'Check that the file is under the size limit and in a supported format, then try again.',
}


def analyze_ticket_intent(title: str, description: str) -> Dict[str, Any]:
    """
    Classify a ticket before it is submitted.

    Returns:
        Dict with category, priority, quick_fixes, escalation_reason
        (None when no escalation is needed) and an overall confidence
    """
    text = f'{title} {description}'.lower()

    if 'payment' in text or 'billing' in text or 'refund' in text:
        category, category_confidence = 'billing', 0.9
    elif any(term in text for term in ('legal', 'will', 'notary', 'court')):
        category, category_confidence = 'legal', 0.9
    elif 'feature' in text or 'improvement' in text:
        category, category_confidence = 'feature_request', 0.8
    elif 'error' in text or 'bug' in text:
        category, category_confidence = 'technical', 0.9
    else:
        category, category_confidence = 'technical', 0.5

    if 'not urgent' in text or 'can wait' in text:
        priority, priority_confidence = 'low', 0.8
    elif 'urgent' in text or 'critical' in text:
        priority, priority_confidence = 'urgent', 0.9
    elif 'important' in text or 'asap' in text:
        priority, priority_confidence = 'high', 0.8
    else:
        priority, priority_confidence = 'medium', 0.6

    quick_fixes = []
    if 'password' in text:
        quick_fixes.append(QUICK_FIXES['password'])
    if 'loading' in text or 'slow' in text:
        quick_fixes.append(QUICK_FIXES['loading'])
    if 'upload' in text or 'document' in text:
        quick_fixes.append(QUICK_FIXES['upload'])

    escalation_reason = None
    if category == 'legal':
        escalation_reason = 'Legal question requires a specialist'
    elif category == 'billing':
        escalation_reason = 'Billing question requires account access'
    elif priority == 'urgent':
        escalation_reason = 'Urgent request'
    elif detect_negative_sentiment(text):
        escalation_reason = 'Negative sentiment detected'
    elif len(description) > 500:
        escalation_reason = 'Detailed request needs human review'

    return {
        'category': category,
        'priority': priority,
        'quick_fixes': quick_fixes,
        'escalation_reason': escalation_reason,
        'confidence': round((category_confidence + priority_confidence) / 2, 2),
    }


def get_support_statistics() -> Dict[str, Any]:
    """Ticket and assistant figures for the admin dashboard."""
    tickets = SupportTicket.query.all()
    by_status: Dict[str, int] = {}
    by_category: Dict[str, int] = {}
    for ticket in tickets:
        by_status[ticket.status] = by_status.get(ticket.status, 0) + 1
        by_category[ticket.category] = by_category.get(ticket.category, 0) + 1

    resolution_times = [t.resolution_time_minutes for t in tickets if t.resolution_time_minutes is not None]
    ratings = [t.satisfaction_rating for t in tickets if t.satisfaction_rating is not None]

    interactions = SupportInteraction.query.all()
    by_response_type: Dict[str, int] = {}
    for interaction in interactions:
        by_response_type[interaction.response_type] = by_response_type.get(interaction.response_type, 0) + 1
    automated = sum(n for kind, n in by_response_type.items() if kind in ('rule_based', 'knowledge_base'))

    return {
        'total_tickets': len(tickets),
        'by_status': by_status,
        'by_category': by_category,
        'average_resolution_minutes': (
            round(sum(resolution_times) / len(resolution_times), 1) if resolution_times else None
        ),
        'average_satisfaction': round(sum(ratings) / len(ratings), 2) if ratings else None,
        'interactions': len(interactions),
        'by_response_type': by_response_type,
        'automation_rate': round(automated / len(interactions), 3) if interactions else 0.0,
    }

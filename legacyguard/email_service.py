"""
Email Service Module

SMTP delivery for every outbound message (invitations, reminders, crisis
notifications, time capsules). Sends are retried with exponential backoff.
"""

import time
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.mime.application import MIMEApplication
from typing import Optional, List, Dict, Any, Tuple

from flask import current_app, render_template_string

from legacyguard.audit_logger import log_email_sent


HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <style>
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background: #1e293b; color: white; padding: 20px; text-align: center; }
        .content { padding: 20px; background: #f9f9f9; }
        .footer { padding: 20px; font-size: 12px; color: #666; text-align: center; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{{ title }}</h1></div>
        <div class="content">
            {% for paragraph in paragraphs %}<p>{{ paragraph }}</p>
            {% endfor %}
        </div>
        <div class="footer">
            <p>This message was sent by LegacyGuard.</p>
        </div>
    </div>
</body>
</html>
"""

# Subjects and plain-text bodies, rendered with Jinja2.
EMAIL_TEMPLATES: Dict[str, Dict[str, str]] = {
    'document_expiration': {
        'subject': 'Document expiring in {{ days }} days: {{ document_name }}',
        'text': (
            'Hello {{ user_name }},\n\n'
            'Your document "{{ document_name }}" expires on {{ expires_on }} '
            '({{ days }} days from now).\n\n'
            'Renew it in time and upload the new version to keep your vault current.'
        ),
    },
    'will_update_reminder': {
        'subject': 'Time to review your will',
        'text': (
            'Hello {{ user_name }},\n\n'
            'Your will was last updated {{ days }} days ago. Life changes such as marriage, '
            'children or new property can make an old will incomplete.\n\n'
            'Please review it and generate a new version if anything has changed.'
        ),
    },
    'guardian_expiration': {
        'subject': 'Please review your guardian {{ guardian_name }}',
        'text': (
            'Hello {{ user_name }},\n\n'
            '{{ guardian_name }} has been your guardian for {{ days }} days without a review.\n\n'
            'Confirm that their contact details and access level are still correct.'
        ),
    },
    'crisis_warning': {
        'subject': 'LegacyGuard: {{ user_name }} has been inactive for {{ days }} days',
        'text': (
            'Hello {{ guardian_name }},\n\n'
            'You are a trusted guardian of {{ user_name }} ({{ user_email }}). '
            'Their account has been inactive for {{ days }} days.\n\n'
            'Please try to contact them. No action is required from you yet.'
        ),
    },
    'crisis_critical': {
        'subject': 'URGENT: {{ user_name }} inactive for {{ days }} days',
        'text': (
            'Hello {{ guardian_name }},\n\n'
            '{{ user_name }} ({{ user_email }}) has not used LegacyGuard for {{ days }} days. '
            'This is the second escalation level.\n\n'
            'Please check on them as soon as possible. If they are unable to respond, '
            'emergency access will be prepared at the next level.'
        ),
    },
    'crisis_emergency': {
        'subject': 'EMERGENCY: access to the legacy of {{ user_name }}',
        'text': (
            'Hello {{ guardian_name }},\n\n'
            '{{ user_name }} ({{ user_email }}) has been inactive for {{ days }} days. '
            'Emergency protocol has been activated.\n\n'
            'As an emergency guardian you now have access to the documents they shared '
            'for this situation. Sign in to LegacyGuard to view them.'
        ),
    },
    'user_inactivity_warning': {
        'subject': 'Are you OK? Your LegacyGuard account has been inactive for {{ days }} days',
        'text': (
            'Hello {{ user_name }},\n\n'
            'We have not seen you for {{ days }} days, so your guardians are being notified '
            '(level {{ level }} of 3).\n\n'
            'If you are fine, confirm it here to stop the process: {{ cancel_url }}\n\n'
            'The link is valid until {{ expires_at }}.'
        ),
    },
    'guardian_invitation': {
        'subject': '{{ user_name }} invited you to be a guardian on LegacyGuard',
        'text': (
            'Hello {{ guardian_name }},\n\n'
            '{{ user_name }} would like you to be their {{ access_level }} guardian.\n\n'
            'Accept the invitation: {{ accept_url }}\n'
            'Decline the invitation: {{ decline_url }}\n\n'
            'The invitation expires on {{ expires_at }}.'
        ),
    },
    'guardian_accepted': {
        'subject': '{{ guardian_name }} accepted your invitation',
        'text': (
            'Hello {{ user_name }},\n\n'
            '{{ guardian_name }} is now your guardian with {{ access_level }} access.'
        ),
    },
    'time_capsule_delivery': {
        'subject': 'A time capsule from {{ sender_name }}: {{ title }}',
        'text': (
            'Hello {{ recipient_name }},\n\n'
            '{{ sender_name }} left you a message to be delivered today.\n\n'
            '{{ message }}'
            '{% if file_url %}\n\nAttached {{ message_type }} message: {{ file_url }}{% endif %}'
        ),
    },
    'support_ticket_created': {
        'subject': '[{{ priority }}] Support ticket #{{ ticket_id }}: {{ title }}',
        'text': (
            'A {{ priority }} priority {{ category }} ticket was opened by {{ user_email }}.\n\n'
            '{{ description }}'
            '{% if escalated_reason %}\n\nEscalation reason: {{ escalated_reason }}{% endif %}'
        ),
    },
    'disaster_recovery_alert': {
        'subject': 'Disaster recovery {{ stage }}',
        'text': (
            'Disaster recovery {{ stage }} at {{ timestamp }}.\n\n'
            '{{ message }}'
        ),
    },
    'will_generated': {
        'subject': 'Your will is ready',
        'text': (
            'Hello {{ user_name }},\n\n'
            'Your {{ will_type }} will ({{ jurisdiction }}) has been generated. '
            'Document hash: {{ document_hash }}.\n\n'
            'It is not legally valid until it is signed as described in the signing instructions.'
        ),
    },
}


class EmailError(Exception):
    pass


def get_outbox() -> List[Dict[str, Any]]:
    """Messages captured while MAIL_SUPPRESS_SEND is on (per application)."""
    return current_app.extensions.setdefault('legacyguard_outbox', [])


def render_email(template_name: str, context: Dict[str, Any]) -> Tuple[str, str, str]:
    """
    Render a named template.

    Returns:
        Tuple of (subject, text body, html body)
    """
    if template_name not in EMAIL_TEMPLATES:
        raise EmailError(f'Unknown email template: {template_name}')

    template = EMAIL_TEMPLATES[template_name]
    subject = render_template_string(template['subject'], **context).strip()
    text_content = render_template_string(template['text'], **context)
    html_content = render_template_string(
        HTML_LAYOUT,
        title=subject,
        paragraphs=[p for p in text_content.split('\n\n') if p.strip()]
    )
    return subject, text_content, html_content


class EmailService:
    """SMTP sender configured from the application config."""

    @property
    def config(self):
        return current_app.config

    def is_configured(self) -> bool:
        return all([
            self.config.get('SMTP_HOST'),
            self.config.get('SMTP_USERNAME'),
            self.config.get('SMTP_PASSWORD'),
        ])

    def _build_message(self, recipient: str, subject: str, text_content: str,
                       html_content: Optional[str],
                       attachments: Optional[List[Tuple[str, bytes]]]) -> MIMEMultipart:
        msg = MIMEMultipart('mixed')
        msg['Subject'] = subject
        msg['From'] = f"{self.config['EMAIL_FROM_NAME']} <{self.config['EMAIL_FROM_ADDRESS']}>"
        msg['To'] = recipient

        body = MIMEMultipart('alternative')
        body.attach(MIMEText(text_content, 'plain'))
        if html_content:
            body.attach(MIMEText(html_content, 'html'))
        msg.attach(body)

        for filename, content in attachments or []:
            attachment = MIMEApplication(content, _subtype='pdf' if filename.endswith('.pdf') else 'octet-stream')
            attachment.add_header('Content-Disposition', 'attachment', filename=filename)
            msg.attach(attachment)

        return msg

    def _deliver(self, msg: MIMEMultipart):
        with smtplib.SMTP(self.config['SMTP_HOST'], self.config['SMTP_PORT'], timeout=30) as server:
            if self.config.get('SMTP_USE_TLS', True):
                server.starttls()
            server.login(self.config['SMTP_USERNAME'], self.config['SMTP_PASSWORD'])
            server.send_message(msg)

    def send(
        self,
        recipient: str,
        subject: str,
        text_content: str,
        html_content: Optional[str] = None,
        attachments: Optional[List[Tuple[str, bytes]]] = None,
        template: str = 'custom',
        user_id: Optional[str] = None
    ) -> tuple:
        """
        Send one message, retrying transient SMTP failures.

        Returns:
            Tuple of (success: bool, error_message: str or None)
        """
        if self.config.get('MAIL_SUPPRESS_SEND'):
            get_outbox().append({
                'recipient': recipient,
                'subject': subject,
                'text': text_content,
                'template': template,
                'attachments': [name for name, _ in attachments or []],
            })
            log_email_sent(recipient, template, True, user_id=user_id)
            return True, None

        if not self.is_configured():
            log_email_sent(recipient, template, False, 'Email service not configured', user_id=user_id)
            return False, 'Email service not configured'

        msg = self._build_message(recipient, subject, text_content, html_content, attachments)
        max_attempts = max(1, int(self.config.get('EMAIL_MAX_ATTEMPTS', 3)))
        base_delay = float(self.config.get('EMAIL_RETRY_BASE_DELAY', 1.0))
        error_msg = None

        for attempt in range(1, max_attempts + 1):
            try:
                self._deliver(msg)
                log_email_sent(recipient, template, True, user_id=user_id)
                return True, None
            except (smtplib.SMTPException, OSError) as e:
                error_msg = str(e)
                current_app.logger.warning(
                    f'Email to {recipient} failed (attempt {attempt}/{max_attempts}): {error_msg}'
                )
                if attempt < max_attempts:
                    time.sleep(base_delay * (2 ** (attempt - 1)))

        current_app.logger.error(f'Failed to send email to {recipient}: {error_msg}')
        log_email_sent(recipient, template, False, error_msg, user_id=user_id)
        return False, error_msg

    def send_template(
        self,
        recipient: str,
        template_name: str,
        context: Dict[str, Any],
        attachments: Optional[List[Tuple[str, bytes]]] = None,
        user_id: Optional[str] = None
    ) -> tuple:
        subject, text_content, html_content = render_email(template_name, context)
        return self.send(recipient, subject, text_content, html_content,
                         attachments=attachments, template=template_name, user_id=user_id)


# Global instance
email_service = EmailService()


def send_template_email(recipient: str, template_name: str, context: Dict[str, Any],
                        attachments: Optional[List[Tuple[str, bytes]]] = None,
                        user_id: Optional[str] = None) -> tuple:
    """
    Convenience function to send a templated email.

    Returns:
        Tuple of (success, error_message)
    """
    return email_service.send_template(recipient, template_name, context,
                                       attachments=attachments, user_id=user_id)

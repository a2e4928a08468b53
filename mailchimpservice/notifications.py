#!/usr/bin/env python3
"""
notifications.py

Notifications of the sync service:

- emails to the data owner of a configuration when a human has to fix
  something (contact added directly in Mailchimp, address rejected as fake)
- Teams alerts summarizing the warnings and errors of a run
"""

import json
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

import requests

from . import config

logger = logging.getLogger(__name__)

# =============================================================================
# 📧 DATA OWNER EMAILS
# =============================================================================

TEMPLATE_WRONG_SUBSCRIPTION = "wrong_subscription"
TEMPLATE_INVALID_EMAIL = "invalid_email"

TEMPLATES = {
    TEMPLATE_WRONG_SUBSCRIPTION: {
        "subject": "Mailchimp CRM Sync Error",
        "body": """Salut {data_owner_name},

--- Français ci-dessous ---

Wir haben soeben festgestellt, dass ein Kontakt direkt in Mailchimp hinzugefügt wurde. Dies führt zu Synchronisationsproblemen.
Bitte füge neue Kontakte immer nur im CRM ein, sie werden innert 24 Stunden zu Mailchimp synchronisiert.

Betroffener Kontakt: {contact_first_name} {contact_last_name} ({contact_email})

Bitte füge den betroffenen Kontakt nun noch im CRM hinzu. Achte darauf, dass die Emailadresse mit obiger übereinstimmt. Danke.

Für Fragen sind wir gerne unter {admin_email} erreichbar.
Herzliche Grüsse,
Deine Mailchimp-CRM Anbindung ({config_name})

--- Deutsch oben ---

Nous venons de découvrir qu'un contact a été ajouté directement à Mailchimp. Cela entraîne des problèmes de synchronisation.
Veuillez n'ajouter de nouveaux contacts que dans le CRM, ils seront synchronisés avec Mailchimp dans les prochaines 24 heures.

Contact affecté : {contact_first_name} {contact_last_name} ({contact_email})

Veuillez ajouter maintenant le contact concerné au CRM. Assurez-vous que l'adresse e-mail correspond à ce qui précède. Je vous remercie.

Si vous avez des questions, veuillez nous contacter sous {admin_email}.
Meilleures salutations,
Votre connexion Mailchimp-CRM ({config_name})
""",
    },
    TEMPLATE_INVALID_EMAIL: {
        "subject": "Mailchimp: Invalid Email in CRM",
        "body": """Salut {data_owner_name},

--- Français ci-dessous ---

Mailchimp hat die folgende Emailadresse als ungültig oder gefälscht abgelehnt. Der Kontakt wird deshalb nicht zu Mailchimp synchronisiert.

Betroffener Kontakt: {contact_first_name} {contact_last_name} ({contact_email})

Bitte korrigiere die Emailadresse im CRM. Danke.

Für Fragen sind wir gerne unter {admin_email} erreichbar.
Herzliche Grüsse,
Deine Mailchimp-CRM Anbindung ({config_name})

--- Deutsch oben ---

Mailchimp a refusé l'adresse e-mail suivante comme invalide ou fausse. Le contact ne sera donc pas synchronisé avec Mailchimp.

Contact affecté : {contact_first_name} {contact_last_name} ({contact_email})

Veuillez corriger l'adresse e-mail dans le CRM. Je vous remercie.

Si vous avez des questions, veuillez nous contacter sous {admin_email}.
Meilleures salutations,
Votre connexion Mailchimp-CRM ({config_name})
""",
    },
}


def render_template(template: str, **data) -> Dict[str, str]:
    if template not in TEMPLATES:
        raise ValueError(f"Unknown notification template: {template}")
    return {
        "subject": TEMPLATES[template]["subject"],
        "body": TEMPLATES[template]["body"].format(**data),
    }


def send_data_owner_notification(recipient: str, template: str, data_owner_name: str,
                                 contact_first_name: str, contact_last_name: str,
                                 contact_email: str, config_name: str,
                                 admin_email: Optional[str] = None) -> bool:
    """
    Email the data owner. Failures are logged and reported as ``False``;
    a notification must never break a sync.
    """
    admin_email = admin_email if admin_email is not None else config.ADMIN_EMAIL
    rendered = render_template(
        template,
        data_owner_name=data_owner_name,
        contact_first_name=contact_first_name or "",
        contact_last_name=contact_last_name or "",
        contact_email=contact_email,
        admin_email=admin_email,
        config_name=config_name,
    )

    message = EmailMessage()
    message["Subject"] = rendered["subject"]
    message["From"] = config.SMTP_FROM or admin_email
    message["To"] = recipient
    if admin_email:
        message["Reply-To"] = admin_email
    message.set_content(rendered["body"])

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.REQUEST_TIMEOUT) as smtp:
            if config.SMTP_USE_TLS:
                smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as e:
        notify_error(f"❌ Failed to send '{template}' notification to {recipient}: {e}")
        return False

    logger.info(f"📧 Sent '{template}' notification to {recipient} (contact {contact_email})")
    return True



# =============================================================================
# 📨 TEAMS RUN ALERTS
# =============================================================================

class Severity(Enum):
    INFO = 1
    WARNING = 2
    ERROR = 3


SEVERITY_COLORS = {Severity.INFO: "2E8B57", Severity.WARNING: "FFA500", Severity.ERROR: "FF0000"}
SEVERITY_TITLES = {Severity.WARNING: "⚠️ Warnings", Severity.ERROR: "❌ Errors"}


class RunIssue(NamedTuple):
    severity: Severity
    message: str
    details: Dict
    timestamp: str


class TeamsNotifier:
    """
    Collects what happened during one command (a sync run, an endpoint
    change) and posts warnings and errors as a single card to a Teams
    incoming webhook. Runs without issues stay silent.
    """

    MAX_LISTED = 5

    def __init__(self, webhook_url: str, service_name: str = "Mailchimp ↔ CRM Sync"):
        self.webhook_url = webhook_url
        self.service_name = service_name
        self.issues: List[RunIssue] = []

    def track(self, severity: Severity, message: str, details: Optional[Dict] = None):
        self.issues.append(RunIssue(severity, message, details or {},
                                    datetime.now(timezone.utc).strftime("%H:%M:%S")))

    def issues_of(self, severity: Severity) -> List[RunIssue]:
        return [issue for issue in self.issues if issue.severity == severity]

    @property
    def has_issues(self) -> bool:
        return any(issue.severity != Severity.INFO for issue in self.issues)

    @property
    def severity(self) -> Severity:
        return max((issue.severity for issue in self.issues), key=lambda s: s.value, default=Severity.INFO)

    def _issue_section(self, severity: Severity) -> Optional[Dict]:
        issues = self.issues_of(severity)
        if not issues:
            return None

        lines = []
        for issue in issues[-self.MAX_LISTED:]:
            line = f"- `{issue.timestamp}` {issue.message}"
            if issue.details:
                line += f" ({json.dumps(issue.details, default=str)})"
            lines.append(line)
        if len(issues) > self.MAX_LISTED:
            lines.insert(0, f"_{len(issues) - self.MAX_LISTED} earlier entries omitted_")
        return {"activityTitle": SEVERITY_TITLES[severity], "text": "\n".join(lines)[:2000]}

    def build_card(self, title: str) -> Dict:
        """Teams MessageCard summarizing the tracked issues."""
        summary = {
            "activityTitle": title,
            "activitySubtitle": self.service_name,
            "facts": [
                {"name": "Severity", "value": self.severity.name},
                {"name": "Errors", "value": str(len(self.issues_of(Severity.ERROR)))},
                {"name": "Warnings", "value": str(len(self.issues_of(Severity.WARNING)))},
                {"name": "Sent", "value": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")},
            ],
        }
        sections = [summary]
        for severity in (Severity.ERROR, Severity.WARNING):
            section = self._issue_section(severity)
            if section:
                sections.append(section)

        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "themeColor": SEVERITY_COLORS[self.severity],
            "summary": f"{self.service_name}: {title}",
            "sections": sections,
        }

    def send(self, title: str, force: bool = False) -> bool:
        if not (force or self.has_issues):
            logger.debug("Run without warnings or errors, no Teams alert sent")
            return True

        try:
            response = requests.post(self.webhook_url, json=self.build_card(title), timeout=config.REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ Teams alert could not be delivered: {e}")
            return False

        # Teams answers 200 or 202 depending on the connector
        if response.status_code not in (200, 202):
            logger.error(f"❌ Teams alert rejected ({response.status_code}): {response.text}")
            return False

        logger.info(f"📨 Teams alert sent ({self.severity.name})")
        return True

    def clear(self):
        self.issues = []


_notifier: Optional[TeamsNotifier] = None


def initialize_notifier(webhook_url: str) -> TeamsNotifier:
    global _notifier
    _notifier = TeamsNotifier(webhook_url)
    logger.debug("Teams alerts enabled")
    return _notifier


def get_notifier() -> Optional[TeamsNotifier]:
    return _notifier


def _notify(severity: Severity, log_level: int, message: str, details: Optional[Dict]):
    logger.log(log_level, message)
    if _notifier:
        _notifier.track(severity, message, details)


def notify_info(message: str, details: Optional[Dict] = None):
    _notify(Severity.INFO, logging.INFO, message, details)


def notify_warning(message: str, details: Optional[Dict] = None):
    _notify(Severity.WARNING, logging.WARNING, message, details)


def notify_error(message: str, details: Optional[Dict] = None):
    _notify(Severity.ERROR, logging.ERROR, message, details)


def send_final_notification(title: str) -> bool:
    """Post the collected issues of this command, if alerts are enabled."""
    if _notifier is None:
        return False
    return _notifier.send(title)


def reset_session():
    if _notifier:
        _notifier.clear()

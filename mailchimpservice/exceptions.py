"""
Exceptions raised by the sync service.

Configuration and parse errors abort a run. Remote call errors are raised by
the CRM and Mailchimp clients; the Mailchimp specific subclasses classify a
rejected subscriber upsert so the synchronizers can decide per record.
"""

from typing import Optional


class SyncError(Exception):
    """Base class of all errors raised by this package."""


class ConfigError(SyncError):
    """Invalid or incomplete configuration."""


class ParseError(SyncError):
    """A record is missing data a field map depends on."""


class ParseCrmDataError(ParseError):
    pass


class ParseMailchimpDataError(ParseError):
    pass


class RemoteCallError(SyncError):
    """A call to the CRM or Mailchimp failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(RemoteCallError):
    """The remote resource does not exist (HTTP 404)."""

    def __init__(self, message: str, body: Optional[str] = None):
        super().__init__(message, 404, body)


class CrmClientError(RemoteCallError):
    pass


class MailchimpClientError(RemoteCallError):
    pass


# ── classified mailchimp upsert rejections ────────────────────────────────

class InvalidEmailError(MailchimpClientError):
    pass


class FakeEmailError(MailchimpClientError):
    pass


class EmailComplianceError(MailchimpClientError):
    pass


class UnsubscribedEmailError(MailchimpClientError):
    pass


class CleanedEmailError(MailchimpClientError):
    pass


class AlreadyInListError(MailchimpClientError):
    pass


class MergeFieldError(MailchimpClientError):
    pass


class ArchivedEmailError(MailchimpClientError):
    pass


class TooManySignupsError(MailchimpClientError):
    pass

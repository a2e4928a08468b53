"""
Filter: decides which CRM records are eligible to be pushed to Mailchimp.
"""

import logging
from typing import Any, Dict, Iterable, List

from email_validator import validate_email, EmailNotValidError

from .config import Config, CRM_EMAIL_STATUS_KEY, CRM_RECORD_STATUS_KEY

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"


def is_valid_email(email: Any) -> bool:
    """Syntax check only, no DNS lookups."""
    if not email or not isinstance(email, str):
        return False
    try:
        validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


class Filter:
    """
    A record passes if the record and its email are active, the email is
    syntactically valid and, unless the configuration syncs everyone, at
    least one group evaluates to true.
    """

    def __init__(self, config: Config):
        self.email_key = config.get_crm_email_key()
        self.group_field_maps = config.get_group_field_maps()
        self.sync_all = config.get_sync_all()

    def filter(self, records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [record for record in records if self.filter_single(record)]

    def filter_single(self, record: Dict[str, Any]) -> bool:
        if record.get(CRM_RECORD_STATUS_KEY) != STATUS_ACTIVE:
            return False

        if not is_valid_email(record.get(self.email_key)):
            logger.debug(f"Skipping record with invalid email: {record.get(self.email_key)!r}")
            return False

        if record.get(CRM_EMAIL_STATUS_KEY) != STATUS_ACTIVE:
            return False

        if self.sync_all:
            return True

        return self._in_any_group(record)

    def _in_any_group(self, record: Dict[str, Any]) -> bool:
        for field_map in self.group_field_maps:
            if field_map.crm_key not in record:
                continue
            if field_map.is_member(record):
                return True
        return False

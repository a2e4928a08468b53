"""
Shared setup of the Mailchimp → CRM synchronizers (webhook and cron).
"""

import logging
from typing import Any, Dict, Optional, Union

from .config import Config, load_config
from .crm_client import CrmClient
from .log import SyncLogger
from .mailchimp_client import MailchimpClient, calculate_subscriber_id
from .mapper import Mapper

logger = logging.getLogger(__name__)


class MailchimpToCrmSynchronizer:
    def __init__(self, config: Union[str, Config],
                 crm_client: Optional[CrmClient] = None,
                 mailchimp_client: Optional[MailchimpClient] = None):
        self.config = load_config(config)
        self.log = SyncLogger(logging.getLogger(type(self).__module__), self.config.name)

        if crm_client is None:
            credentials = self.config.get_crm_credentials()
            crm_client = CrmClient(credentials["client_id"], credentials["client_secret"], credentials["url"])
        if mailchimp_client is None:
            mailchimp_client = MailchimpClient(
                self.config.get_mailchimp_credentials()["api_key"],
                self.config.get_mailchimp_list_id()
            )

        self.crm_client = crm_client
        self.mailchimp_client = mailchimp_client
        self.mapper = Mapper(self.config.get_field_maps())
        self.crm_id_key = self.config.get_mailchimp_key_of_crm_id()

    def linked_crm_id(self, mailchimp_record: Dict[str, Any]) -> Optional[Any]:
        """CRM id stored in the member's merge fields, ``None`` if the member is not linked."""
        merge_fields = mailchimp_record.get("merges") or mailchimp_record.get("merge_fields") or {}
        crm_id = merge_fields.get(self.crm_id_key)
        return crm_id if crm_id not in (None, "") else None

    def log_webhook(self, level: int, call_type: str, email: str, message: str, crm_id: Optional[Any] = None):
        self.log.log(level, f'type="{call_type}" {message}',
                     mailchimp_id=calculate_subscriber_id(email) if email else None, crm_id=crm_id)

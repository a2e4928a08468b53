"""
Website → Mailchimp Sync

Pushes a signup from a website form straight into the Mailchimp audience,
without a CRM record. The form data uses the CRM keys of the configuration's
field maps; keys the form does not send are treated as empty.

The new member is tagged with the configuration's "new" tag (if Mailchimp →
CRM import is configured), the value of its notes field and the mapped tags,
so the regular import later picks it up and creates the CRM record.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .config import Config, load_config
from .exceptions import InvalidEmailError
from .filter import is_valid_email
from .log import SyncLogger
from .mailchimp_client import MailchimpClient, calculate_subscriber_id
from .mapper import Mapper

logger = logging.getLogger(__name__)


class WebsiteToMailchimpSynchronizer:
    def __init__(self, config: Union[str, Config], mailchimp_client: Optional[MailchimpClient] = None):
        self.config = load_config(config)
        self.log = SyncLogger(logger, self.config.name)

        if mailchimp_client is None:
            mailchimp_client = MailchimpClient(
                self.config.get_mailchimp_credentials()["api_key"],
                self.config.get_mailchimp_list_id()
            )

        self.mailchimp_client = mailchimp_client
        self.mapper = Mapper(self.config.get_field_maps())
        self.email_key = self.config.get_crm_email_key()

    def sync_single(self, website_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Subscribe the person of one website form submission.

        :return: the member as returned by Mailchimp
        :raises InvalidEmailError: the form has no or no valid email address
        """
        email = str(website_data.get(self.email_key) or "").strip().lower()
        if not email:
            raise InvalidEmailError("Email address is required")
        if not is_valid_email(email):
            raise InvalidEmailError(f"Invalid email format: {email}")

        data = self.fill_missing_keys(website_data)
        data[self.email_key] = email

        mailchimp_data = self.mapper.crm_to_mailchimp(data)
        mailchimp_data["email_address"] = email
        mailchimp_data["status"] = "subscribed"
        tags = self._tags_of(data, mailchimp_data.pop("tags", []))

        member = self.mailchimp_client.put_subscriber(mailchimp_data, sync_tags=False)
        subscriber_id = member.get("id") or calculate_subscriber_id(email)
        self.mailchimp_client.add_tags(subscriber_id, tags)

        self.log.info(f"Website signup subscribed with tags {tags}.", email=email, mailchimp_id=subscriber_id)
        return member

    def fill_missing_keys(self, website_data: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of the form data with every CRM key of the field maps present."""
        data = dict(website_data)
        for field_map in self.config.get_field_maps():
            data.setdefault(field_map.crm_key, None)
        return data

    def _tags_of(self, data: Dict[str, Any], mapped_tags: List[str]) -> List[str]:
        tags = []
        if self.config.is_upsert_to_crm_enabled():
            tags.append(self.config.get_new_tag())

        notes = data.get(self.config.get_notes_key())
        if notes:
            tags.append(str(notes))

        for tag in mapped_tags:
            if tag not in tags:
                tags.append(tag)
        return tags

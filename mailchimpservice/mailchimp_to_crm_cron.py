#!/usr/bin/env python3
"""
Mailchimp → CRM: periodic import of new members.

Members who signed up directly in Mailchimp (tagged with the configured
"new" tag, not yet linked to a CRM record, subscribed to one of the
configured interests) are created in the CRM. The new CRM id is written
back into the member's merge fields and the "new" tag is removed, so each
member is imported once.

Example member as returned by the list members endpoint::

    {"email_address": "hugo@grassroots.ch",
     "id": "55502f40dc8b7c769880b10874abc9d0",
     "status": "subscribed",
     "merge_fields": {"FNAME": "Hugo", "LNAME": "Muster", "WEBLINGID": ""},
     "interests": {"55f5ee2ed2": true},
     "tags": [{"id": 6289607, "name": "new"}, {"id": 6289608, "name": "Deutsch"}]}
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dateutil.relativedelta import relativedelta
from tqdm import tqdm

from .config import (
    Config, CRM_ID_KEY, CRM_ENTRY_CHANNEL_KEY, CRM_GROUPS_KEY, CRM_LANGUAGE_KEY, MAILCHIMP_PAGE_SIZE,
)
from .crm_client import CrmClient
from .crm_value import CrmValue, MODE_APPEND, MODE_REPLACE_EMPTY
from .exceptions import ConfigError, CrmClientError
from .mailchimp_client import MailchimpClient, calculate_subscriber_id
from .mailchimp_to_crm import MailchimpToCrmSynchronizer

CALL_TYPE = "daily_sync"

MEMBER_FIELDS = [
    "members.email_address",
    "members.merge_fields",
    "members.status",
    "members.tags",
    "members.id",
    "members.interests",
]


class MailchimpToCrmCronSynchronizer(MailchimpToCrmSynchronizer):
    def __init__(self, config: Union[str, Config],
                 crm_client: Optional[CrmClient] = None,
                 mailchimp_client: Optional[MailchimpClient] = None):
        super().__init__(config, crm_client, mailchimp_client)
        if not self.config.is_upsert_to_crm_enabled():
            raise ConfigError("Upsert to CRM is disabled. Please enable it in the config file.")

        self.new_tag = self.config.get_new_tag()
        self.interests_to_sync = self.config.get_interests_to_sync()
        self.group_for_new_members = self.config.get_group_for_new_members()
        self.language_tags = self.config.get_language_tags()
        self.sync_criteria = self.config.get_sync_criteria()

    def sync_all(self, batch_size: int = MAILCHIMP_PAGE_SIZE, limit: int = 0) -> Dict[str, int]:
        """
        Import all eligible members.

        :param batch_size: members requested per page
        :param limit: stop after this many members (0 = no limit)
        :return: counts of processed, successfully imported and failed
            (including filtered out) members
        """
        self.log.info("Starting Mailchimp to CRM synchronization")
        stats = {"processed": 0, "success": 0, "failed": 0}
        filters = self.get_request_filters()
        offset = 0

        while limit == 0 or stats["processed"] < limit:
            fetch_count = min(batch_size, limit - stats["processed"]) if limit else batch_size
            members = self.mailchimp_client.get_subscribers_page(fetch_count, offset, filters)
            if not members:
                break

            self.log.info(f"Processing batch of {len(members)} members (offset: {offset})")
            with tqdm(members, desc="Mailchimp → CRM", unit="contact", ncols=80, leave=False,
                      mininterval=2.0) as bar:
                for member in bar:
                    stats["processed"] += 1
                    try:
                        if self.filter_single(member) and self.sync_single(member):
                            stats["success"] += 1
                        else:
                            stats["failed"] += 1
                    except Exception as e:
                        self.log.error(f"Error processing member: {e}", email=member.get("email_address"))
                        stats["failed"] += 1

                    if limit and stats["processed"] >= limit:
                        break

            offset += len(members)
            if len(members) < fetch_count:
                break

        self.log.info(
            f"Completed Mailchimp to CRM synchronization: {stats['processed']} processed, "
            f"{stats['success']} successful, {stats['failed']} failed"
        )
        return stats

    def get_request_filters(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        changed_since = now - relativedelta(months=self.config.get_changed_within_months())
        opt_in_before = now - relativedelta(months=self.config.get_opt_in_older_than_months())

        fields = list(MEMBER_FIELDS)
        if self.sync_criteria:
            fields.append(f"members.{self.sync_criteria['field']}")

        return {
            "status": "subscribed",
            "since_last_changed": changed_since.isoformat(timespec="seconds"),
            "before_timestamp_opt": opt_in_before.isoformat(timespec="seconds"),
            "fields": fields,
        }

    def filter_single(self, member: Dict[str, Any]) -> bool:
        email = member.get("email_address")
        if not email:
            self.log.error("Missing email in member data")
            return False

        if self.linked_crm_id(member) is not None:
            self.log.debug("Member has a CRM ID. Skipping.", email=email)
            return False

        interests = member.get("interests") or {}
        if not any(interests.get(interest_id) for interest_id in self.interests_to_sync):
            self.log.debug("Member is not subscribed to any interest to sync. Skipping.", email=email)
            return False

        if self.sync_criteria:
            value = member.get(self.sync_criteria["field"]) or 0
            if value <= self.sync_criteria["threshold"]:
                self.log.debug(f"Member does not meet the sync criteria: {value}. Skipping.", email=email)
                return False

        if self.new_tag not in self._tag_names(member):
            self.log.debug("Member does not have the configured new tag. Skipping.", email=email)
            return False

        return True

    def sync_single(self, member: Dict[str, Any]) -> bool:
        """Create the member in the CRM and link it. Returns False if the CRM did not return an id."""
        email = member["email_address"]
        mailchimp_id = calculate_subscriber_id(email)
        crm_data = self.build_crm_data(member)

        try:
            response = self.crm_client.post("member", crm_data)
        except CrmClientError as e:
            self.log_webhook(logging.ERROR, CALL_TYPE, email, f"Error upserting to CRM: {e}")
            return False

        crm_id = response.get(CRM_ID_KEY) if isinstance(response, dict) else response
        if crm_id in (None, "", False):
            self.log_webhook(logging.ERROR, CALL_TYPE, email, "Failed to get CRM ID from upsert response.")
            return False

        self.mailchimp_client.update_merge_fields(mailchimp_id, {self.crm_id_key: crm_id})
        self.mailchimp_client.remove_tag(mailchimp_id, self.new_tag)
        self.log_webhook(logging.DEBUG, CALL_TYPE, email,
                         "Successfully upserted to CRM and updated Mailchimp with CRM ID.", crm_id)
        return True

    def build_crm_data(self, member: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """CRM payload for a new record: mapped fields plus entry channel, group and language."""
        now = now or datetime.now()
        crm_data = self.mapper.mailchimp_to_crm(member)
        crm_data.pop(CRM_ID_KEY, None)

        extra = [
            CrmValue(CRM_ENTRY_CHANNEL_KEY, f"Mailchimp import {now.strftime('%Y-%m-%d %H:%M:%S')}", MODE_REPLACE_EMPTY),
            CrmValue(CRM_GROUPS_KEY, self.group_for_new_members, MODE_APPEND),
        ]
        language = self.determine_language(member)
        if language:
            extra.append(CrmValue(CRM_LANGUAGE_KEY, language, MODE_REPLACE_EMPTY))

        for crm_value in extra:
            crm_data.setdefault(crm_value.key, []).append(crm_value.to_dict())
        return crm_data

    def determine_language(self, member: Dict[str, Any]) -> Optional[str]:
        """First letter (lower-cased) of the first language tag of the member, e.g. ``d`` for ``Deutsch``."""
        for tag_name in self._tag_names(member):
            if tag_name in self.language_tags:
                return tag_name[0].lower()
        return None

    @staticmethod
    def _tag_names(member: Dict[str, Any]) -> List[str]:
        return [
            tag["name"] if isinstance(tag, dict) else tag
            for tag in member.get("tags") or []
            if not isinstance(tag, dict) or "name" in tag
        ]

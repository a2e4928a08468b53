"""
Mailchimp → CRM: webhook events.

Mailchimp calls the webhook on subscribe, unsubscribe, cleaned (bounced),
profile and upemail (email changed) events. Each event is translated into at
most one CRM update of the linked record.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .config import CRM_EMAIL_STATUS_KEY, CRM_ID_KEY
from .crm_value import CrmValue, MODE_APPEND, MODE_REPLACE
from .exceptions import NotFoundError
from .mailchimp_to_crm import MailchimpToCrmSynchronizer
from .notifications import send_data_owner_notification, TEMPLATE_WRONG_SUBSCRIPTION

EVENT_SUBSCRIBE = "subscribe"
EVENT_UNSUBSCRIBE = "unsubscribe"
EVENT_CLEANED = "cleaned"
EVENT_PROFILE = "profile"
EVENT_UPEMAIL = "upemail"

EMAIL_STATUS_INVALID = "invalid"


class MailchimpToCrmWebhookSynchronizer(MailchimpToCrmSynchronizer):

    def handle_mailchimp_event(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply one webhook event to the CRM.

        :param payload: ``{'type': ..., 'data': {...}}`` as posted by Mailchimp
        :return: the data written to the CRM, ``None`` if nothing was written
        """
        call_type = payload.get("type")
        data = payload.get("data") or {}
        email = data.get("new_email") or data.get("email") or ""

        self.log_webhook(logging.DEBUG, call_type, email, "Sync single record from Mailchimp to CRM.")

        handlers = {
            EVENT_SUBSCRIBE: self._handle_subscribe,
            EVENT_UNSUBSCRIBE: self._handle_unsubscribe,
            EVENT_CLEANED: self._handle_cleaned,
            EVENT_PROFILE: self._handle_profile,
            EVENT_UPEMAIL: self._handle_upemail,
        }
        handler = handlers.get(call_type)
        if handler is None:
            self.log_webhook(logging.ERROR, call_type, email, "Called with an undefined webhook event.")
            return None

        result = handler(data, email)
        if result is None:
            return None

        crm_id, crm_data = result
        try:
            self.crm_client.put(f"member/{crm_id}", crm_data)
        except NotFoundError:
            self.log_webhook(logging.INFO, call_type, email,
                             f"Member not found in crm. Action could not be executed: {call_type}", crm_id)
            return None

        self.log_webhook(logging.DEBUG, call_type, email, "Sync successful", crm_id)
        return crm_data

    # ── events ────────────────────────────────────────────────────────────
    def _handle_subscribe(self, data: Dict[str, Any], email: str):
        if self.config.get_ignore_subscribe_through_mailchimp():
            self.log_webhook(logging.DEBUG, EVENT_SUBSCRIBE, email, "Subscriptions through Mailchimp are ignored.")
            return None

        subscriber = self.mailchimp_client.get_subscriber(email)
        if self.linked_crm_id(subscriber) is None:
            self._notify_wrong_subscription(subscriber)
            self.log_webhook(logging.INFO, EVENT_SUBSCRIBE, email, "Member not linked to crm. Notified data owner.")
        return None

    def _handle_unsubscribe(self, data: Dict[str, Any], email: str):
        crm_id = self.linked_crm_id(data)
        if crm_id is None:
            self.log_webhook(logging.DEBUG, EVENT_UNSUBSCRIBE, email, "Record not linked to crm. No action taken.")
            return None

        try:
            crm_record = self.crm_client.get(f"member/{crm_id}")
        except NotFoundError:
            self.log_webhook(logging.DEBUG, EVENT_UNSUBSCRIBE, email,
                             "Member not found in crm. Nothing to unsubscribe. No action taken.", crm_id)
            return None

        crm_record.setdefault(CRM_ID_KEY, crm_id)
        self.log_webhook(logging.DEBUG, EVENT_UNSUBSCRIBE, email, "Unsubscribe member in crm.", crm_id)
        return crm_id, self.unsubscribe_all(crm_record)

    def _handle_cleaned(self, data: Dict[str, Any], email: str):
        if data.get("reason") != "hard":
            self.log_webhook(logging.DEBUG, EVENT_CLEANED, email, "Bounce not hard. No action taken.")
            return None

        subscriber = self.mailchimp_client.get_subscriber(email)
        crm_id = self.linked_crm_id(subscriber)
        if crm_id is None:
            self.log_webhook(logging.DEBUG, EVENT_CLEANED, email, "Record not linked to crm. No action taken.")
            return None

        note = f"{datetime.now().strftime('%Y-%m-%d %H:%M')}: Mailchimp reported the email as invalid. Email status changed."
        crm_data = {
            CRM_EMAIL_STATUS_KEY: [CrmValue(CRM_EMAIL_STATUS_KEY, EMAIL_STATUS_INVALID, MODE_REPLACE).to_dict()],
            self.config.get_notes_key(): [CrmValue(self.config.get_notes_key(), note, MODE_APPEND).to_dict()],
        }
        self.log_webhook(logging.DEBUG, EVENT_CLEANED, email, "Mark email invalid in crm.", crm_id)
        return crm_id, crm_data

    def _handle_profile(self, data: Dict[str, Any], email: str):
        # the webhook payload lacks the interests in a usable form, so refetch
        subscriber = self.mailchimp_client.get_subscriber(email)
        crm_id = self.linked_crm_id(subscriber)
        if crm_id is None:
            self.log_webhook(logging.DEBUG, EVENT_PROFILE, email, "Record not linked to crm. No action taken.")
            return None

        self.log_webhook(logging.DEBUG, EVENT_PROFILE, email, "Update email, subscriptions in crm.", crm_id)
        return crm_id, self.mapper.mailchimp_to_crm(subscriber)

    def _handle_upemail(self, data: Dict[str, Any], email: str):
        old_email = data.get("old_email")
        try:
            subscriber = self.mailchimp_client.get_subscriber(email)
        except NotFoundError:
            if not old_email:
                raise
            subscriber = self.mailchimp_client.get_subscriber(old_email)

        crm_id = self.linked_crm_id(subscriber)
        if crm_id is None:
            self.log_webhook(logging.DEBUG, EVENT_UPEMAIL, email, "Record not linked to crm. No action taken.")
            return None

        crm_value = self.config.get_email_field_map().crm_value_of(email)
        self.log_webhook(logging.DEBUG, EVENT_UPEMAIL, email, "Update email in crm.", crm_id)
        return crm_id, {crm_value.key: [crm_value.to_dict()]}

    # ── helpers ───────────────────────────────────────────────────────────
    def unsubscribe_all(self, crm_record: Dict[str, Any]) -> Dict[str, Any]:
        """CRM write payload revoking every group membership of the record."""
        mailchimp_record = self.mapper.crm_to_mailchimp(crm_record)
        interests = mailchimp_record.get("interests", {})
        for category_id in interests:
            interests[category_id] = False
        return self.mapper.mailchimp_to_crm(mailchimp_record)

    def _notify_wrong_subscription(self, subscriber: Dict[str, Any]):
        owner = self.config.get_data_owner()
        merge_fields = subscriber.get("merge_fields") or {}
        send_data_owner_notification(
            recipient=owner["email"],
            template=TEMPLATE_WRONG_SUBSCRIPTION,
            data_owner_name=owner["name"],
            contact_first_name=merge_fields.get("FNAME", ""),
            contact_last_name=merge_fields.get("LNAME", ""),
            contact_email=subscriber.get("email_address", ""),
            config_name=self.config.name,
        )

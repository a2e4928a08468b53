#!/usr/bin/env python3
"""
Mailchimp → CRM webhook event tests
"""

import unittest
from unittest.mock import Mock, patch

import sync_fixtures
from mailchimpservice.exceptions import NotFoundError
from mailchimpservice.mailchimp_to_crm_webhook import MailchimpToCrmWebhookSynchronizer
from mailchimpservice.notifications import TEMPLATE_WRONG_SUBSCRIPTION


def event(call_type, email="hugo@grassroots.ch", crm_id="", **data):
    payload_data = {"email": email, "merges": {"CRMID": crm_id, "FNAME": "Hugo", "LNAME": "Muster"}}
    payload_data.update(data)
    return {"type": call_type, "data": payload_data}


class WebhookTestCase(unittest.TestCase):

    def setUp(self):
        self.crm = Mock()
        self.crm.put.return_value = None
        self.mailchimp = Mock()
        self.mailchimp.get_subscriber.return_value = sync_fixtures.make_mailchimp_member(crm_id=123)

    def make_sync(self, config=None):
        return MailchimpToCrmWebhookSynchronizer(
            config or sync_fixtures.make_config(),
            crm_client=self.crm,
            mailchimp_client=self.mailchimp,
        )


class TestSubscribe(WebhookTestCase):

    @patch("mailchimpservice.mailchimp_to_crm_webhook.send_data_owner_notification")
    def test_linked_member_needs_nothing(self, mock_notify):
        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("subscribe", crm_id=123)))

        mock_notify.assert_not_called()
        self.crm.put.assert_not_called()

    @patch("mailchimpservice.mailchimp_to_crm_webhook.send_data_owner_notification")
    def test_unlinked_member_notifies_data_owner(self, mock_notify):
        self.mailchimp.get_subscriber.return_value = sync_fixtures.make_mailchimp_member()

        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("subscribe")))

        mock_notify.assert_called_once_with(
            recipient="owner@grassroots.ch",
            template=TEMPLATE_WRONG_SUBSCRIPTION,
            data_owner_name="Dora Owner",
            contact_first_name="Hugo",
            contact_last_name="Muster",
            contact_email="hugo@grassroots.ch",
            config_name="grassroots",
        )
        self.crm.put.assert_not_called()

    @patch("mailchimpservice.mailchimp_to_crm_webhook.send_data_owner_notification")
    def test_ignored_subscriptions(self, mock_notify):
        config = sync_fixtures.make_config(mailchimp={"listId": "list123", "ignoreSubscribeThroughMailchimp": True})

        self.assertIsNone(self.make_sync(config).handle_mailchimp_event(event("subscribe")))

        self.mailchimp.get_subscriber.assert_not_called()
        mock_notify.assert_not_called()


class TestUnsubscribe(WebhookTestCase):

    def test_unsubscribe_revokes_all_groups(self):
        self.crm.get.return_value = sync_fixtures.make_crm_record(notesPolitletter="PolitletterDE")

        crm_data = self.make_sync().handle_mailchimp_event(event("unsubscribe", crm_id=123))

        self.crm.get.assert_called_once_with("member/123")
        self.crm.put.assert_called_once_with("member/123", crm_data)
        self.assertEqual(crm_data["newsletterCountryD"], [{"value": "no", "mode": "replace"}])
        self.assertEqual(crm_data["notesPolitletter"], [{"value": "PolitletterUnsubscribed", "mode": "append"}])

    def test_unlinked_member(self):
        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("unsubscribe")))
        self.crm.get.assert_not_called()

    def test_member_missing_in_crm(self):
        self.crm.get.side_effect = NotFoundError("gone")

        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("unsubscribe", crm_id=123)))
        self.crm.put.assert_not_called()


class TestCleaned(WebhookTestCase):

    def test_hard_bounce_marks_email_invalid(self):
        crm_data = self.make_sync().handle_mailchimp_event(event("cleaned", reason="hard"))

        self.crm.put.assert_called_once_with("member/123", crm_data)
        self.assertEqual(crm_data["emailStatus"], [{"value": "invalid", "mode": "replace"}])
        note = crm_data["notesCountry"][0]
        self.assertEqual(note["mode"], "append")
        self.assertTrue(note["value"].endswith("Mailchimp reported the email as invalid. Email status changed."))

    def test_configured_notes_field(self):
        config = sync_fixtures.make_config(mailchimp={"listId": "list123", "notesField": "notesGeneral"})

        crm_data = self.make_sync(config).handle_mailchimp_event(event("cleaned", reason="hard"))

        self.assertIn("notesGeneral", crm_data)

    def test_soft_bounce_is_ignored(self):
        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("cleaned", reason="abuse")))
        self.mailchimp.get_subscriber.assert_not_called()
        self.crm.put.assert_not_called()

    def test_unlinked_member(self):
        self.mailchimp.get_subscriber.return_value = sync_fixtures.make_mailchimp_member()

        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("cleaned", reason="hard")))
        self.crm.put.assert_not_called()


class TestProfileAndEmail(WebhookTestCase):

    def test_profile_update(self):
        crm_data = self.make_sync().handle_mailchimp_event(event("profile", crm_id=123))

        self.mailchimp.get_subscriber.assert_called_once_with("hugo@grassroots.ch")
        self.crm.put.assert_called_once_with("member/123", crm_data)
        self.assertEqual(crm_data["firstName"], [{"value": "Hugo", "mode": "replace"}])
        self.assertEqual(crm_data["newsletterCountryD"], [{"value": "yes", "mode": "replace"}])
        self.assertNotIn("id", crm_data)

    def test_upemail(self):
        payload = {"type": "upemail", "data": {"new_email": "hugo.new@grassroots.ch",
                                               "old_email": "hugo@grassroots.ch"}}

        crm_data = self.make_sync().handle_mailchimp_event(payload)

        self.mailchimp.get_subscriber.assert_called_once_with("hugo.new@grassroots.ch")
        self.assertEqual(crm_data, {"email1": [{"value": "hugo.new@grassroots.ch", "mode": "replace"}]})
        self.crm.put.assert_called_once_with("member/123", crm_data)

    def test_upemail_falls_back_to_old_email(self):
        self.mailchimp.get_subscriber.side_effect = [
            NotFoundError("not yet"),
            sync_fixtures.make_mailchimp_member(crm_id=123),
        ]
        payload = {"type": "upemail", "data": {"new_email": "hugo.new@grassroots.ch",
                                               "old_email": "hugo@grassroots.ch"}}

        self.assertIsNotNone(self.make_sync().handle_mailchimp_event(payload))
        self.assertEqual(self.mailchimp.get_subscriber.call_args[0][0], "hugo@grassroots.ch")

    def test_member_deleted_in_crm(self):
        self.crm.put.side_effect = NotFoundError("gone")

        self.assertIsNone(self.make_sync().handle_mailchimp_event(event("profile", crm_id=123)))

    def test_unknown_event(self):
        with self.assertLogs("mailchimpservice.mailchimp_to_crm_webhook", level="ERROR"):
            self.assertIsNone(self.make_sync().handle_mailchimp_event(event("campaign")))
        self.crm.put.assert_not_called()


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""
Webhook endpoint registry tests
"""

import json
import os
import tempfile
import unittest
from unittest.mock import patch

import sync_fixtures
from mailchimpservice.endpoints import EndpointStore, handle_webhook, parse_webhook_form, validate_webhook, SECRET_LENGTH
from mailchimpservice.exceptions import ConfigError, NotFoundError


class TestEndpointStore(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmp.name, "configs")
        os.makedirs(self.config_path)
        self.write_config("grassroots", sync_fixtures.CONFIG_DATA)
        self.write_config("other", sync_fixtures.CONFIG_DATA)
        self.endpoints = EndpointStore(data_dir=self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def write_config(self, name, data):
        with open(os.path.join(self.config_path, f"{name}.json"), "w", encoding="utf-8") as f:
            json.dump(data, f)

    def test_add(self):
        first = self.endpoints.add("grassroots", self.config_path)
        second = self.endpoints.add("other", self.config_path)

        self.assertEqual((first["id"], second["id"]), (1, 2))
        self.assertEqual(len(first["secret"]), SECRET_LENGTH)
        self.assertNotEqual(first["secret"], second["secret"])
        self.assertEqual(self.endpoints.get(1)["config"], "grassroots")
        self.assertEqual(len(self.endpoints.all()), 2)

    def test_add_rejects_invalid_config(self):
        self.write_config("broken", sync_fixtures.make_config_data(dataOwner={}))

        with self.assertRaises(ConfigError):
            self.endpoints.add("broken", self.config_path)
        with self.assertRaises(ConfigError):
            self.endpoints.add("missing", self.config_path)
        self.assertEqual(self.endpoints.all(), [])

    def test_find_by_secret(self):
        endpoint = self.endpoints.add("grassroots", self.config_path)

        self.assertEqual(self.endpoints.find_by_secret(endpoint["secret"])["id"], endpoint["id"])
        with self.assertRaises(NotFoundError):
            self.endpoints.find_by_secret("wrong-secret")

    def test_update(self):
        endpoint = self.endpoints.add("grassroots", self.config_path)

        updated = self.endpoints.update(endpoint["id"], "other", self.config_path)

        self.assertEqual(updated["config"], "other")
        self.assertEqual(updated["secret"], endpoint["secret"])
        with self.assertRaises(NotFoundError):
            self.endpoints.update(99, "other", self.config_path)

    def test_delete(self):
        endpoint = self.endpoints.add("grassroots", self.config_path)

        self.endpoints.delete(endpoint["id"])

        self.assertEqual(self.endpoints.all(), [])
        with self.assertRaises(NotFoundError):
            self.endpoints.delete(endpoint["id"])
        with self.assertRaises(NotFoundError):
            self.endpoints.get(endpoint["id"])

    @patch("mailchimpservice.endpoints.MailchimpToCrmWebhookSynchronizer")
    def test_handle_webhook(self, mock_synchronizer):
        endpoint = self.endpoints.add("grassroots", self.config_path)
        mock_synchronizer.return_value.handle_mailchimp_event.return_value = {"email1": []}
        payload = {"type": "profile", "data": {"email": "hugo@grassroots.ch"}}

        result = handle_webhook(endpoint["secret"], payload, endpoint_store=self.endpoints)

        self.assertEqual(result, {"email1": []})
        mock_synchronizer.assert_called_once_with("grassroots")
        mock_synchronizer.return_value.handle_mailchimp_event.assert_called_once_with(payload)

    @patch("mailchimpservice.endpoints.MailchimpToCrmWebhookSynchronizer")
    def test_handle_webhook_unknown_secret(self, mock_synchronizer):
        with self.assertRaises(NotFoundError):
            handle_webhook("nope", {"type": "profile"}, endpoint_store=self.endpoints)
        mock_synchronizer.assert_not_called()

    def test_validate_webhook(self):
        endpoint = self.endpoints.add("grassroots", self.config_path)

        self.assertEqual(validate_webhook(endpoint["secret"], self.endpoints, self.config_path), endpoint)
        with self.assertRaises(NotFoundError):
            validate_webhook("wrong-secret", self.endpoints, self.config_path)

    def test_validate_webhook_with_broken_config(self):
        endpoint = self.endpoints.add("grassroots", self.config_path)
        self.write_config("grassroots", sync_fixtures.make_config_data(dataOwner={}))

        with self.assertRaises(ConfigError):
            validate_webhook(endpoint["secret"], self.endpoints, self.config_path)

        os.remove(os.path.join(self.config_path, "grassroots.json"))
        with self.assertRaises(ConfigError):
            validate_webhook(endpoint["secret"], self.endpoints, self.config_path)


class TestParseWebhookForm(unittest.TestCase):

    def test_nested_keys(self):
        form = {
            "type": "unsubscribe",
            "fired_at": "2025-03-04 05:06:07",
            "data[email]": "hugo@grassroots.ch",
            "data[merges][CRMID]": "123",
            "data[merges][FNAME]": "Hugo",
        }

        self.assertEqual(parse_webhook_form(form), {
            "type": "unsubscribe",
            "fired_at": "2025-03-04 05:06:07",
            "data": {
                "email": "hugo@grassroots.ch",
                "merges": {"CRMID": "123", "FNAME": "Hugo"},
            },
        })


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""
Configuration loading and validation tests
"""

import json
import os
import tempfile
import unittest

import sync_fixtures
from mailchimpservice.config import Config, load_config, DEFAULT_NOTES_KEY
from mailchimpservice.exceptions import ConfigError


class TestConfigLoading(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base_path = self.tmp.name

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, content):
        with open(os.path.join(self.base_path, name), "w", encoding="utf-8") as f:
            f.write(content)

    def test_load_by_name(self):
        self.write("grassroots.json", json.dumps(sync_fixtures.CONFIG_DATA))

        config = Config.load("grassroots", self.base_path)

        self.assertEqual(config.name, "grassroots")
        self.assertEqual(config.get_mailchimp_list_id(), "list123")

    def test_missing_file(self):
        with self.assertRaisesRegex(ConfigError, "not found"):
            Config.load("missing", self.base_path)

    def test_malformed_file(self):
        self.write("broken.json", "{ not json")
        with self.assertRaisesRegex(ConfigError, "Malformed"):
            Config.load("broken", self.base_path)

    def test_available(self):
        self.write("b.json", "{}")
        self.write("a.json", "{}")
        self.write("notes.txt", "")
        self.assertEqual(Config.available(self.base_path), ["a", "b"])
        self.assertEqual(Config.available(os.path.join(self.base_path, "nope")), [])

    def test_missing_sections(self):
        with self.assertRaisesRegex(ConfigError, "fields"):
            Config("broken", {"auth": {}, "dataOwner": {}, "mailchimp": {}})


class TestConfigAccessors(unittest.TestCase):

    def setUp(self):
        self.config = sync_fixtures.make_config()

    def test_credentials(self):
        self.assertEqual(self.config.get_crm_credentials(), {
            "client_id": "1",
            "client_secret": "crm-secret",
            "url": "https://crm.grassroots.ch/api/v1/",
        })
        self.assertEqual(self.config.get_mailchimp_credentials()["api_key"][-4:], "-us3")
        self.assertEqual(self.config.get_data_owner(), {"email": "owner@grassroots.ch", "name": "Dora Owner"})

    def test_field_lookups(self):
        self.assertEqual(self.config.get_crm_email_key(), "email1")
        self.assertEqual(self.config.get_mailchimp_key_of_crm_id(), "CRMID")
        self.assertEqual([fm.crm_key for fm in self.config.get_group_field_maps()],
                         ["newsletterCountryD", "notesPolitletter"])
        self.assertIs(self.config.get_field_maps(), self.config.get_field_maps())

    def test_defaults(self):
        self.assertFalse(self.config.get_sync_all())
        self.assertEqual(self.config.get_notes_key(), DEFAULT_NOTES_KEY)
        self.assertEqual(self.config.get_changed_within_months(), 6)
        self.assertEqual(self.config.get_opt_in_older_than_months(), 2)
        self.assertIsNone(self.config.get_sync_criteria())

    def test_upsert_section(self):
        self.assertTrue(self.config.is_upsert_to_crm_enabled())
        self.assertEqual(self.config.get_new_tag(), "new")
        self.assertEqual(self.config.get_group_for_new_members(), 42)
        self.assertEqual(self.config.get_interests_to_sync(), [sync_fixtures.GROUP_ID_NEWSLETTER])
        self.assertEqual(self.config.get_language_tags(), ["Deutsch", "Français"])

    def test_language_tags_from_tag_fields(self):
        data = sync_fixtures.make_config_data(mailchimpToCrm={
            "newtag": "new", "groupForNewMembers": 42, "interestsToSync": [],
        })
        data["fields"].append({"crmKey": "language", "mailchimpTagName": "Italiano", "type": "tag",
                               "sync": "toMailchimp", "conditions": ["i"]})

        self.assertEqual(Config("grassroots", data).get_language_tags(), ["Italiano"])

    def test_sync_criteria(self):
        config = sync_fixtures.make_config(mailchimpToCrm={
            "newtag": "new", "groupForNewMembers": 42, "interestsToSync": [],
            "syncCriteriaField": "member_rating", "syncCriteriaThreshold": 3,
        })
        self.assertEqual(config.get_sync_criteria(), {"field": "member_rating", "threshold": 3})

    def test_upsert_disabled(self):
        data = sync_fixtures.make_config_data()
        del data["mailchimpToCrm"]
        config = Config("grassroots", data)

        self.assertFalse(config.is_upsert_to_crm_enabled())
        with self.assertRaises(ConfigError):
            config.get_new_tag()
        self.assertTrue(config.is_valid())


class TestConfigValidation(unittest.TestCase):

    def test_valid_config(self):
        config = sync_fixtures.make_config()
        self.assertEqual(config.errors, [])
        self.assertIs(load_config(config), config)

    def test_collects_all_errors(self):
        config = sync_fixtures.make_config(
            auth={"crm": {"clientId": "1", "url": "https://crm.grassroots.ch"}, "mailchimp": {}},
            dataOwner={"email": "owner@grassroots.ch"},
        )

        errors = config.errors

        self.assertEqual(len(errors), 3)
        self.assertIn("Missing config key: auth.crm.clientSecret", errors)
        self.assertIn("Missing config key: auth.mailchimp.apikey", errors)
        self.assertIn("Missing config key: dataOwner.name", errors)

    def test_invalid_field_is_reported(self):
        config = sync_fixtures.make_config(fields=[{"crmKey": "email1", "type": "email", "sync": "sideways"}])

        self.assertFalse(config.is_valid())
        with self.assertRaisesRegex(ConfigError, "Unknown sync direction"):
            load_config(config)

    def test_missing_crm_id_field(self):
        config = sync_fixtures.make_config(fields=[{"crmKey": "email1", "type": "email", "sync": "both"}])
        self.assertIn("Missing merge field with crmKey 'id'.", config.errors)


if __name__ == "__main__":
    unittest.main()

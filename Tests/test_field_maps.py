#!/usr/bin/env python3
"""
Field map tests for all field types
"""

import unittest
from datetime import date

import sync_fixtures  # noqa: F401 (adds the project root to sys.path)
from mailchimpservice.crm_value import CrmValue
from mailchimpservice.exceptions import ConfigError, ParseCrmDataError, ParseMailchimpDataError
from mailchimpservice.field_maps import (
    make_field_map, calculate_token, parse_time_span,
    MergeFieldMap, EmailFieldMap, GroupFieldMap, TagFieldMap, AutotagFieldMap, TokenFieldMap,
)


class TestFieldMapBase(unittest.TestCase):

    def test_missing_crm_key(self):
        with self.assertRaisesRegex(ConfigError, "Missing crm key"):
            make_field_map({"type": "email", "sync": "both"})

    def test_missing_sync(self):
        with self.assertRaisesRegex(ConfigError, "Missing sync definition"):
            make_field_map({"crmKey": "email1", "type": "email"})

    def test_unknown_sync_direction(self):
        with self.assertRaisesRegex(ConfigError, "Unknown sync direction"):
            make_field_map({"crmKey": "email1", "type": "email", "sync": "toCrm"})

    def test_unknown_type(self):
        with self.assertRaisesRegex(ConfigError, "Unknown type"):
            make_field_map({"crmKey": "x", "type": "date", "sync": "both"})

    def test_dispatch_on_type(self):
        self.assertIsInstance(make_field_map({"crmKey": "email1", "type": "email", "sync": "both"}), EmailFieldMap)
        self.assertIsInstance(make_field_map({"crmKey": "tags", "type": "autotag", "sync": "toMailchimp"}),
                              AutotagFieldMap)

    def test_sync_directions(self):
        both = make_field_map({"crmKey": "email1", "type": "email", "sync": "both"})
        one_way = make_field_map({"crmKey": "email1", "type": "email", "sync": "toMailchimp"})
        self.assertTrue(both.can_sync_to_crm())
        self.assertTrue(both.can_sync_to_mailchimp())
        self.assertFalse(one_way.can_sync_to_crm())
        self.assertTrue(one_way.can_sync_to_mailchimp())


class TestMergeFieldMap(unittest.TestCase):

    def setUp(self):
        self.field_map = MergeFieldMap({"crmKey": "firstName", "mailchimpKey": "FNAME", "type": "merge",
                                        "sync": "both", "default": "Friend"})

    def test_requires_mailchimp_key(self):
        with self.assertRaisesRegex(ConfigError, "Missing mailchimp key"):
            MergeFieldMap({"crmKey": "firstName", "sync": "both"})

    def test_to_mailchimp_normalizes_whitespace(self):
        self.assertEqual(self.field_map.to_mailchimp({"firstName": "  Hugo \n  Peter "}), {"FNAME": "Hugo Peter"})

    def test_empty_values_become_default(self):
        self.assertEqual(self.field_map.to_mailchimp({"firstName": "   "}), {"FNAME": "Friend"})
        self.assertEqual(self.field_map.to_mailchimp({"firstName": None}), {"FNAME": "Friend"})
        self.assertEqual(self.field_map.to_crm({"merge_fields": {"FNAME": ""}}),
                         [CrmValue("firstName", "Friend", "replace")])

    def test_missing_crm_key_raises(self):
        with self.assertRaises(ParseCrmDataError):
            self.field_map.to_mailchimp({"lastName": "Muster"})

    def test_missing_mailchimp_keys_raise(self):
        with self.assertRaisesRegex(ParseMailchimpDataError, "merge_fields"):
            self.field_map.to_crm({"email_address": "hugo@grassroots.ch"})
        with self.assertRaisesRegex(ParseMailchimpDataError, "FNAME"):
            self.field_map.to_crm({"merge_fields": {"LNAME": "Muster"}})

    def test_round_trip(self):
        fragment = self.field_map.to_mailchimp({"firstName": "Hugo"})
        self.assertEqual(self.field_map.to_crm({"merge_fields": fragment}), [CrmValue("firstName", "Hugo", "replace")])

    def test_non_string_values_pass_through(self):
        field_map = MergeFieldMap({"crmKey": "id", "mailchimpKey": "CRMID", "sync": "toMailchimp"})
        self.assertEqual(field_map.to_mailchimp({"id": 123}), {"CRMID": 123})


class TestEmailFieldMap(unittest.TestCase):

    def setUp(self):
        self.field_map = EmailFieldMap({"crmKey": "email1", "type": "email", "sync": "both"})

    def test_top_level_email_address(self):
        self.assertEqual(self.field_map.mailchimp_parent_key, "")
        self.assertEqual(self.field_map.to_mailchimp({"email1": " hugo@grassroots.ch "}),
                         {"email_address": "hugo@grassroots.ch"})

    def test_round_trip(self):
        fragment = self.field_map.to_mailchimp({"email1": "hugo@grassroots.ch"})
        self.assertEqual(self.field_map.to_crm(fragment), [CrmValue("email1", "hugo@grassroots.ch", "replace")])

    def test_empty_mailchimp_email_raises(self):
        with self.assertRaisesRegex(ParseMailchimpDataError, "No data"):
            self.field_map.to_crm({"email_address": ""})
        with self.assertRaisesRegex(ParseMailchimpDataError, "Missing key"):
            self.field_map.to_crm({"merge_fields": {}})

    def test_crm_value_of(self):
        self.assertEqual(self.field_map.crm_value_of("new@grassroots.ch"),
                         CrmValue("email1", "new@grassroots.ch", "replace"))


class TestGroupFieldMap(unittest.TestCase):

    def setUp(self):
        self.bool_map = GroupFieldMap({"crmKey": "newsletterCountryD", "mailchimpCategoryId": "55f795def4",
                                       "type": "group", "sync": "both",
                                       "trueCondition": "yes", "falseCondition": "no"})
        self.contains_map = GroupFieldMap({"crmKey": "notes", "mailchimpCategoryId": "1a2b3c4d5e",
                                           "type": "group", "sync": "both",
                                           "trueContainsString": "PolitletterDE",
                                           "falseContainsString": "PolitletterUnsubscribed"})

    def test_requires_category_id(self):
        with self.assertRaisesRegex(ConfigError, "mailchimpCategoryId"):
            GroupFieldMap({"crmKey": "x", "sync": "both", "trueCondition": "yes", "falseCondition": "no"})

    def test_to_mailchimp(self):
        self.assertEqual(self.bool_map.to_mailchimp({"newsletterCountryD": "yes"}), {"55f795def4": True})
        self.assertEqual(self.bool_map.to_mailchimp({"newsletterCountryD": "no"}), {"55f795def4": False})

    def test_to_crm(self):
        self.assertEqual(self.bool_map.to_crm({"interests": {"55f795def4": True}}),
                         [CrmValue("newsletterCountryD", "yes", "replace")])
        self.assertEqual(self.contains_map.to_crm({"interests": {"1a2b3c4d5e": False}}),
                         [CrmValue("notes", "PolitletterUnsubscribed", "append")])

    def test_missing_interest_raises(self):
        with self.assertRaisesRegex(ParseMailchimpDataError, "interests"):
            self.bool_map.to_crm({"merge_fields": {}})
        with self.assertRaisesRegex(ParseMailchimpDataError, "55f795def4"):
            self.bool_map.to_crm({"interests": {"other": True}})

    def test_contains_round_trip_keeps_boolean_only(self):
        fragment = self.contains_map.to_mailchimp({"notes": "2019 PolitletterDE, phone contact"})
        self.assertEqual(fragment, {"1a2b3c4d5e": True})
        self.assertEqual(self.contains_map.to_crm({"interests": fragment}),
                         [CrmValue("notes", "PolitletterDE", "append")])


class TestTagFieldMaps(unittest.TestCase):

    def test_tag_rejects_sync_both(self):
        with self.assertRaisesRegex(ConfigError, "not allowed"):
            TagFieldMap({"crmKey": "language", "mailchimpTagName": "Deutsch", "conditions": ["d"], "sync": "both"})

    def test_tag_requires_name_and_conditions(self):
        with self.assertRaisesRegex(ConfigError, "mailchimpTagName"):
            TagFieldMap({"crmKey": "language", "conditions": ["d"], "sync": "toMailchimp"})
        with self.assertRaisesRegex(ConfigError, "conditions"):
            TagFieldMap({"crmKey": "language", "mailchimpTagName": "Deutsch", "sync": "toMailchimp"})

    def test_tag_condition(self):
        field_map = TagFieldMap({"crmKey": "language", "mailchimpTagName": "Deutsch",
                                 "conditions": ["d", "D"], "sync": "toMailchimp"})
        self.assertEqual(field_map.to_mailchimp({"language": "d"}), ["Deutsch"])
        self.assertEqual(field_map.to_mailchimp({"language": "f"}), [])
        self.assertEqual(field_map.to_crm({"tags": ["Deutsch"]}), [])

    def test_autotag(self):
        field_map = AutotagFieldMap({"crmKey": "interests", "type": "autotag", "sync": "toMailchimp"})
        self.assertEqual(field_map.to_mailchimp({"interests": ["digitisation", "energy"]}), ["digitisation", "energy"])
        self.assertEqual(field_map.to_mailchimp({"interests": None}), [])
        self.assertEqual(field_map.to_mailchimp({"interests": "energy"}), ["energy"])
        self.assertEqual(field_map.to_crm({"tags": ["energy"]}), [])

    def test_autotag_rejects_sync_both(self):
        with self.assertRaises(ConfigError):
            AutotagFieldMap({"crmKey": "interests", "sync": "both"})

    def test_autotag_missing_key_raises(self):
        field_map = AutotagFieldMap({"crmKey": "interests", "sync": "toMailchimp"})
        with self.assertRaises(ParseCrmDataError):
            field_map.to_mailchimp({})


class TestTokenFieldMap(unittest.TestCase):

    CONFIG = {"crmKey": "email1", "mailchimpKey": "TOKEN", "type": "token", "sync": "toMailchimp",
              "valid": "+6 months", "secret": "s3cr3t"}

    def test_token_is_deterministic(self):
        valid_until = date(2026, 4, 30)
        first = calculate_token("hugo@grassroots.ch", valid_until, "s3cr3t")
        self.assertEqual(first, calculate_token("hugo@grassroots.ch", valid_until, "s3cr3t"))
        self.assertEqual(first, calculate_token("  HUGO@grassroots.ch ", valid_until, "s3cr3t"))
        self.assertEqual(len(first), 64)

    def test_token_changes_with_inputs(self):
        valid_until = date(2026, 4, 30)
        token = calculate_token("hugo@grassroots.ch", valid_until, "s3cr3t")
        self.assertNotEqual(token, calculate_token("otto@grassroots.ch", valid_until, "s3cr3t"))
        self.assertNotEqual(token, calculate_token("hugo@grassroots.ch", date(2026, 5, 1), "s3cr3t"))
        self.assertNotEqual(token, calculate_token("hugo@grassroots.ch", valid_until, "other"))

    def test_valid_until_from_time_span(self):
        field_map = TokenFieldMap(self.CONFIG, today=date(2025, 10, 31))
        self.assertEqual(field_map.valid_until, date(2026, 4, 30))
        self.assertEqual(field_map.to_mailchimp({"email1": "hugo@grassroots.ch"}),
                         {"TOKEN": calculate_token("hugo@grassroots.ch", date(2026, 4, 30), "s3cr3t")})
        self.assertEqual(field_map.mailchimp_parent_key, "merge_fields")
        self.assertEqual(field_map.to_crm({"merge_fields": {"TOKEN": "abc"}}), [])

    def test_time_spans(self):
        self.assertEqual(date(2025, 1, 1) + parse_time_span("30 days"), date(2025, 1, 31))
        self.assertEqual(date(2025, 1, 1) + parse_time_span("+1 year"), date(2026, 1, 1))
        self.assertEqual(date(2025, 1, 1) + parse_time_span("2 weeks"), date(2025, 1, 15))
        with self.assertRaises(ConfigError):
            parse_time_span("tomorrow")

    def test_compound_time_spans(self):
        self.assertEqual(date(2025, 1, 1) + parse_time_span("+1 month 2 days"), date(2025, 2, 3))
        self.assertEqual(date(2025, 1, 31) + parse_time_span("1 year +1 month"), date(2026, 2, 28))
        self.assertEqual(date(2025, 1, 1) + parse_time_span("1 week 1 day"), date(2025, 1, 9))
        for span in ("1 month and 2 days", "1 month tomorrow", ""):
            with self.assertRaises(ConfigError):
                parse_time_span(span)

    def test_required_keys(self):
        for key in ("mailchimpKey", "valid", "secret"):
            config = dict(self.CONFIG)
            del config[key]
            with self.assertRaises(ConfigError):
                TokenFieldMap(config)


if __name__ == "__main__":
    unittest.main()

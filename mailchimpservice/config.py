#!/usr/bin/env python3
"""
config.py

Settings for the Mailchimp ↔ CRM sync service.

Process-wide settings come from the environment (a ``.env`` file is loaded on
import). Each synchronized audience is described by its own JSON
configuration file in ``CONFIG_BASE_PATH``; ``Config`` wraps one of those.

Example configuration file (``configs/example.json``)::

    {
        "auth": {
            "crm": {"clientId": "...", "clientSecret": "...", "url": "https://crm.example.org/api/v1/"},
            "mailchimp": {"apikey": "0123456789abcdef-us3"}
        },
        "dataOwner": {"email": "owner@example.org", "name": "Data Owner"},
        "mailchimp": {"listId": "a1b2c3", "syncAll": false, "ignoreSubscribeThroughMailchimp": false},
        "mailchimpToCrm": {"newtag": "new", "groupForNewMembers": 42, "interestsToSync": ["55f5ee2ed2"]},
        "fields": [
            {"crmKey": "id", "mailchimpKey": "WEBLINGID", "type": "merge", "sync": "toMailchimp"},
            {"crmKey": "email1", "type": "email", "sync": "both"},
            {"crmKey": "firstName", "mailchimpKey": "FNAME", "type": "merge", "sync": "both"}
        ]
    }
"""

import os
import json
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv

from .exceptions import ConfigError

load_dotenv(override=True)

# =============================================================================
# ⚙️ PROCESS SETTINGS
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
DATA_DIR = os.getenv("DATA_DIR", "data")
CONFIG_BASE_PATH = os.getenv("CONFIG_BASE_PATH", "configs")

# Reply-to address of the notification mails and recipient of technical alerts
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "")

SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "25"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", ADMIN_EMAIL)
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "false").lower() == "true"

TEAMS_WEBHOOK_URL = os.getenv("TEAMS_WEBHOOK_URL", "")

# Retry behaviour for network failures
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_DELAY = int(os.getenv("RETRY_DELAY", "10"))
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))

MAILCHIMP_PAGE_SIZE = int(os.getenv("MAILCHIMP_PAGE_SIZE", "100"))

# A CRM → Mailchimp run falls back to a full sync if the last successful
# revision is older than this
MAX_REVISION_AGE_DAYS = int(os.getenv("MAX_REVISION_AGE_DAYS", "7"))

# A lock untouched for this many seconds belongs to a crashed run
MAX_LOCK_TIME = int(os.getenv("MAX_LOCK_TIME", str(15 * 60)))

# Records blocked by Mailchimp's signup rate limit wait at least this long
SYNC_LATER_DELAY = int(os.getenv("SYNC_LATER_DELAY", "3600"))

# =============================================================================
# 📋 PER-DEPLOYMENT CONFIGURATION
# =============================================================================

CRM_ID_KEY = "id"
CRM_EMAIL_STATUS_KEY = "emailStatus"
CRM_RECORD_STATUS_KEY = "recordStatus"
CRM_GROUPS_KEY = "groups"
CRM_ENTRY_CHANNEL_KEY = "entryChannel"
CRM_LANGUAGE_KEY = "language"
DEFAULT_NOTES_KEY = "notesCountry"

REQUIRED_SECTIONS = ("auth", "dataOwner", "mailchimp", "fields")

DEFAULT_CHANGED_WITHIN_MONTHS = 6
DEFAULT_OPT_IN_OLDER_THAN_MONTHS = 2


class Config:
    """One synchronization configuration (a CRM instance paired with a Mailchimp audience)."""

    def __init__(self, name: str, data: Dict[str, Any]):
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration '{name}' must be a JSON object.")

        missing = [section for section in REQUIRED_SECTIONS if section not in data]
        if missing:
            raise ConfigError(f"Configuration '{name}' is missing the section(s): {', '.join(missing)}")

        self.name = name
        self.data = data
        self._field_maps = None

    @classmethod
    def load(cls, name: str, base_path: Optional[str] = None) -> "Config":
        """Read ``<base_path>/<name>.json``."""
        path = os.path.join(base_path or CONFIG_BASE_PATH, name)
        if not path.endswith(".json"):
            path += ".json"

        if not os.path.isfile(path):
            raise ConfigError(f"Config file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Malformed config file {path}: {e}") from e

        return cls(os.path.splitext(os.path.basename(path))[0], data)

    @staticmethod
    def available(base_path: Optional[str] = None) -> List[str]:
        """Names of the configuration files found in the config directory."""
        base_path = base_path or CONFIG_BASE_PATH
        if not os.path.isdir(base_path):
            return []
        return sorted(
            os.path.splitext(entry)[0]
            for entry in os.listdir(base_path)
            if entry.endswith(".json")
        )

    # ── helpers ───────────────────────────────────────────────────────────
    def _section(self, *path: str) -> Dict[str, Any]:
        node = self.data
        for key in path:
            if not isinstance(node, dict) or key not in node:
                raise ConfigError(f"Missing config key: {'.'.join(path)}")
            node = node[key]
        return node

    def _require(self, section: Dict[str, Any], key: str, path: str) -> Any:
        value = section.get(key)
        if value in (None, ""):
            raise ConfigError(f"Missing config key: {path}.{key}")
        return value

    # ── credentials ───────────────────────────────────────────────────────
    def get_crm_credentials(self) -> Dict[str, str]:
        crm = self._section("auth", "crm")
        return {
            "client_id": self._require(crm, "clientId", "auth.crm"),
            "client_secret": self._require(crm, "clientSecret", "auth.crm"),
            "url": self._require(crm, "url", "auth.crm"),
        }

    def get_mailchimp_credentials(self) -> Dict[str, str]:
        mailchimp = self._section("auth", "mailchimp")
        return {"api_key": self._require(mailchimp, "apikey", "auth.mailchimp")}

    def get_data_owner(self) -> Dict[str, str]:
        owner = self._section("dataOwner")
        return {
            "email": self._require(owner, "email", "dataOwner"),
            "name": self._require(owner, "name", "dataOwner"),
        }

    # ── mailchimp ─────────────────────────────────────────────────────────
    def get_mailchimp_list_id(self) -> str:
        return str(self._require(self._section("mailchimp"), "listId", "mailchimp"))

    def get_sync_all(self) -> bool:
        return bool(self._section("mailchimp").get("syncAll", False))

    def get_ignore_subscribe_through_mailchimp(self) -> bool:
        return bool(self._section("mailchimp").get("ignoreSubscribeThroughMailchimp", False))

    def get_notes_key(self) -> str:
        return self._section("mailchimp").get("notesField") or DEFAULT_NOTES_KEY

    # ── fields ────────────────────────────────────────────────────────────
    def get_field_maps(self) -> List["FieldMap"]:
        """Field maps built from the ``fields`` section. Built once, they are immutable."""
        if self._field_maps is None:
            from .field_maps import make_field_map

            fields = self._section("fields")
            if not isinstance(fields, list):
                raise ConfigError("Config key 'fields' must be a list.")
            self._field_maps = [make_field_map(field) for field in fields]
        return self._field_maps

    def get_email_field_map(self) -> "FieldMap":
        from .field_maps import EmailFieldMap

        for field_map in self.get_field_maps():
            if isinstance(field_map, EmailFieldMap):
                return field_map
        raise ConfigError("Missing email field.")

    def get_crm_email_key(self) -> str:
        return self.get_email_field_map().crm_key

    def get_mailchimp_key_of_crm_id(self) -> str:
        """Merge field in Mailchimp that holds the linked CRM record id."""
        from .field_maps import MergeFieldMap

        for field_map in self.get_field_maps():
            if isinstance(field_map, MergeFieldMap) and field_map.crm_key == CRM_ID_KEY:
                return field_map.mailchimp_key
        raise ConfigError(f"Missing merge field with crmKey '{CRM_ID_KEY}'.")

    def get_group_field_maps(self) -> List["FieldMap"]:
        from .field_maps import GroupFieldMap

        return [fm for fm in self.get_field_maps() if isinstance(fm, GroupFieldMap)]

    # ── mailchimp → crm ───────────────────────────────────────────────────
    def is_upsert_to_crm_enabled(self) -> bool:
        return "mailchimpToCrm" in self.data

    def _upsert_section(self) -> Dict[str, Any]:
        if not self.is_upsert_to_crm_enabled():
            raise ConfigError(f"Configuration '{self.name}' has no 'mailchimpToCrm' section.")
        return self._section("mailchimpToCrm")

    def get_new_tag(self) -> str:
        return self._require(self._upsert_section(), "newtag", "mailchimpToCrm")

    def get_group_for_new_members(self) -> int:
        return self._require(self._upsert_section(), "groupForNewMembers", "mailchimpToCrm")

    def get_interests_to_sync(self) -> List[str]:
        interests = self._require(self._upsert_section(), "interestsToSync", "mailchimpToCrm")
        if not isinstance(interests, list):
            raise ConfigError("Config key 'mailchimpToCrm.interestsToSync' must be a list.")
        return interests

    def get_changed_within_months(self) -> int:
        return int(self._upsert_section().get("changedWithinMonths", DEFAULT_CHANGED_WITHIN_MONTHS))

    def get_opt_in_older_than_months(self) -> int:
        return int(self._upsert_section().get("optInOlderThanMonths", DEFAULT_OPT_IN_OLDER_THAN_MONTHS))

    def get_sync_criteria(self) -> Optional[Dict[str, Any]]:
        """Optional member attribute (e.g. ``member_rating``) that must exceed a threshold for import."""
        section = self._upsert_section()
        if not section.get("syncCriteriaField"):
            return None
        return {"field": section["syncCriteriaField"], "threshold": section.get("syncCriteriaThreshold", 0)}

    def get_language_tags(self) -> List[str]:
        """Mailchimp tags that carry the member's language (e.g. ``Deutsch``)."""
        section = self._upsert_section()
        if section.get("languageTags"):
            return list(section["languageTags"])

        from .field_maps import TagFieldMap

        return [
            fm.mailchimp_tag_name
            for fm in self.get_field_maps()
            if isinstance(fm, TagFieldMap) and fm.crm_key == CRM_LANGUAGE_KEY
        ]

    # ── validation ────────────────────────────────────────────────────────
    @property
    def errors(self) -> List[str]:
        """All configuration problems, empty if the configuration is usable."""
        checks = [
            self.get_crm_credentials,
            self.get_mailchimp_credentials,
            self.get_data_owner,
            self.get_mailchimp_list_id,
            self.get_field_maps,
            self.get_email_field_map,
            self.get_mailchimp_key_of_crm_id,
        ]
        if self.is_upsert_to_crm_enabled():
            checks += [
                self.get_new_tag,
                self.get_group_for_new_members,
                self.get_interests_to_sync,
                self.get_changed_within_months,
                self.get_opt_in_older_than_months,
            ]

        errors = []
        for check in checks:
            try:
                check()
            except ConfigError as e:
                errors.append(str(e))
            except (TypeError, ValueError) as e:
                errors.append(f"{check.__name__}: {e}")
        return errors

    def is_valid(self) -> bool:
        return not self.errors

    def __repr__(self):
        return f"Config({self.name!r})"


def load_config(config) -> Config:
    """Load (if given by name) and validate a configuration. Invalid configurations abort before any remote call."""
    if not isinstance(config, Config):
        config = Config.load(config)
    errors = config.errors
    if errors:
        raise ConfigError(f"Invalid configuration '{config.name}': {'; '.join(errors)}")
    return config

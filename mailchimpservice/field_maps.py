"""
Field maps: the rules translating one CRM field into its Mailchimp
representation and back.

Each entry of the ``fields`` config section becomes one field map. Field maps
are immutable once built; ``to_mailchimp`` and ``to_crm`` are pure, so the
maps of a configuration can be shared between records and threads.
"""

import hashlib
import hmac
import re
from datetime import date
from typing import Any, Dict, List, Optional, Union

from dateutil.relativedelta import relativedelta

from .crm_value import CrmValue, MODE_REPLACE
from .exceptions import ConfigError, ParseCrmDataError, ParseMailchimpDataError
from .group_conditions import GroupCondition, make_group_condition, derive_bool, render_crm

SYNC_BOTH = "both"
SYNC_TO_MAILCHIMP = "toMailchimp"

TYPE_MERGE = "merge"
TYPE_EMAIL = "email"
TYPE_GROUP = "group"
TYPE_TAG = "tag"
TYPE_AUTOTAG = "autotag"
TYPE_TOKEN = "token"

_WHITESPACE = re.compile(r"\s+")
_TIME_SPAN = re.compile(r"^(?:\+?\s*\d+\s*(?:day|week|month|year)s?\s*)+$", re.IGNORECASE)
_TIME_SPAN_TERM = re.compile(r"(\d+)\s*(day|week|month|year)s?", re.IGNORECASE)

Fragment = Union[Dict[str, Any], List[str]]


class FieldMap:
    """Common part of all field maps."""

    mailchimp_parent_key = ""

    def __init__(self, config: Dict[str, Any]):
        if not config.get("crmKey"):
            raise ConfigError("Field: Missing crm key")
        if not config.get("sync"):
            raise ConfigError("Field: Missing sync definition")
        if config["sync"] not in (SYNC_BOTH, SYNC_TO_MAILCHIMP):
            raise ConfigError("Field: Unknown sync direction")

        self.crm_key = config["crmKey"]
        self.sync = config["sync"]

    def can_sync_to_crm(self) -> bool:
        return self.sync == SYNC_BOTH

    def can_sync_to_mailchimp(self) -> bool:
        return self.sync in (SYNC_BOTH, SYNC_TO_MAILCHIMP)

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> Fragment:
        raise NotImplementedError

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        raise NotImplementedError

    def _crm_value(self, crm_record: Dict[str, Any]) -> Any:
        if self.crm_key not in crm_record:
            raise ParseCrmDataError(f"Missing key '{self.crm_key}'")
        return crm_record[self.crm_key]

    def __repr__(self):
        return f"{type(self).__name__}({self.crm_key!r}, sync={self.sync!r})"


class MergeFieldMap(FieldMap):
    """Plain value stored in a Mailchimp merge field."""

    mailchimp_parent_key = "merge_fields"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if not config.get("mailchimpKey"):
            raise ConfigError("Field: Missing mailchimp key")
        self.mailchimp_key = config["mailchimpKey"]
        self.default = config.get("default", "")

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> Dict[str, Any]:
        value = self._crm_value(crm_record)
        if isinstance(value, str):
            value = _WHITESPACE.sub(" ", value).strip()
        if value in (None, ""):
            value = self.default
        return {self.mailchimp_key: value}

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        if self.mailchimp_parent_key not in mailchimp_record:
            raise ParseMailchimpDataError(f"Missing key '{self.mailchimp_parent_key}'")
        merge_fields = mailchimp_record[self.mailchimp_parent_key] or {}
        if self.mailchimp_key not in merge_fields:
            raise ParseMailchimpDataError(f"Missing merge field '{self.mailchimp_key}'")

        value = merge_fields[self.mailchimp_key]
        if value in (None, ""):
            value = self.default
        return [CrmValue(self.crm_key, value, MODE_REPLACE)]


class EmailFieldMap(FieldMap):
    """The subscriber's email address (top level ``email_address`` in Mailchimp)."""

    mailchimp_key = "email_address"

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> Dict[str, Any]:
        value = self._crm_value(crm_record)
        if isinstance(value, str):
            value = _WHITESPACE.sub(" ", value).strip()
        return {self.mailchimp_key: value or ""}

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        if self.mailchimp_key not in mailchimp_record:
            raise ParseMailchimpDataError(f"Missing key '{self.mailchimp_key}'")
        value = mailchimp_record[self.mailchimp_key]
        if not value:
            raise ParseMailchimpDataError(f"No data for '{self.mailchimp_key}'")
        return [CrmValue(self.crm_key, value, MODE_REPLACE)]

    def crm_value_of(self, email: str) -> CrmValue:
        """Write instruction for an email address that did not come from a full payload."""
        return CrmValue(self.crm_key, email, MODE_REPLACE)


class GroupFieldMap(FieldMap):
    """Membership in a Mailchimp group (interest), derived from a CRM value."""

    mailchimp_parent_key = "interests"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if not config.get("mailchimpCategoryId"):
            raise ConfigError("Field: Missing mailchimpCategoryId definition")
        self.mailchimp_category_id = config["mailchimpCategoryId"]
        self.condition: GroupCondition = make_group_condition(config)

    def is_member(self, crm_record: Dict[str, Any]) -> bool:
        return derive_bool(self.condition, self._crm_value(crm_record))

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> Dict[str, bool]:
        return {self.mailchimp_category_id: self.is_member(crm_record)}

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        if self.mailchimp_parent_key not in mailchimp_record:
            raise ParseMailchimpDataError(f"Missing key '{self.mailchimp_parent_key}'")
        interests = mailchimp_record[self.mailchimp_parent_key] or {}
        if self.mailchimp_category_id not in interests:
            raise ParseMailchimpDataError(
                f"The interest with id '{self.mailchimp_category_id}' is missing in the payload."
            )
        return [render_crm(self.condition, self.crm_key, bool(interests[self.mailchimp_category_id]))]


class TagFieldMap(FieldMap):
    """Adds a fixed tag if the CRM value is one of the configured conditions."""

    mailchimp_parent_key = "tags"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if self.can_sync_to_crm():
            raise ConfigError("Syncing to crm is not allowed for field type 'tag'.")
        if not config.get("mailchimpTagName"):
            raise ConfigError("Field: Missing 'mailchimpTagName' definition")
        if not config.get("conditions"):
            raise ConfigError("Field: Missing 'conditions' definition")

        self.mailchimp_tag_name = config["mailchimpTagName"]
        conditions = config["conditions"]
        self.conditions = tuple(conditions if isinstance(conditions, (list, tuple)) else [conditions])

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> List[str]:
        if self._crm_value(crm_record) in self.conditions:
            return [self.mailchimp_tag_name]
        return []

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        return []


class AutotagFieldMap(FieldMap):
    """Uses the CRM value itself as tag name(s)."""

    mailchimp_parent_key = "tags"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        if self.can_sync_to_crm():
            raise ConfigError("Syncing to crm is not allowed for field type 'autotag'.")

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> List[str]:
        value = self._crm_value(crm_record)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(tag) for tag in value if tag not in (None, "")]
        if value == "":
            return []
        return [str(value)]

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        return []


def parse_time_span(span: str) -> relativedelta:
    """Parse spans like ``+6 months``, ``30 days`` or ``+1 month 2 days``."""
    text = str(span).strip()
    if not _TIME_SPAN.match(text):
        raise ConfigError(f"Field: Invalid time span for key \"valid\": {span!r}")

    delta = relativedelta()
    for amount, unit in _TIME_SPAN_TERM.findall(text):
        delta += relativedelta(**{unit.lower() + "s": int(amount)})
    return delta


def calculate_token(email: str, valid_until: date, secret: str) -> str:
    """HMAC-SHA256 over the normalized email and the expiry date (``Y-m-d``)."""
    message = email.strip().lower() + valid_until.strftime("%Y-%m-%d")
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class TokenFieldMap(FieldMap):
    """
    Access token derived from the email address, stored in a merge field.

    The token expires ``valid`` after the field map was built; it is therefore
    stable within a run and rotates with the date.
    """

    mailchimp_parent_key = "merge_fields"

    def __init__(self, config: Dict[str, Any], today: Optional[date] = None):
        super().__init__(config)
        if not config.get("mailchimpKey"):
            raise ConfigError("Field: Missing mailchimp key")
        if not config.get("valid"):
            raise ConfigError('Field: Missing definition for key "valid".')
        if not config.get("secret"):
            raise ConfigError("Field: Missing or empty secret.")

        self.mailchimp_key = config["mailchimpKey"]
        self.secret = str(config["secret"])
        self.valid_until = (today or date.today()) + parse_time_span(config["valid"])

    def to_mailchimp(self, crm_record: Dict[str, Any]) -> Dict[str, str]:
        email = self._crm_value(crm_record) or ""
        return {self.mailchimp_key: calculate_token(str(email), self.valid_until, self.secret)}

    def to_crm(self, mailchimp_record: Dict[str, Any]) -> List[CrmValue]:
        return []


FIELD_MAP_TYPES = {
    TYPE_MERGE: MergeFieldMap,
    TYPE_EMAIL: EmailFieldMap,
    TYPE_GROUP: GroupFieldMap,
    TYPE_TAG: TagFieldMap,
    TYPE_AUTOTAG: AutotagFieldMap,
    TYPE_TOKEN: TokenFieldMap,
}


def make_field_map(config: Dict[str, Any]) -> FieldMap:
    """Build the field map for one entry of the ``fields`` section."""
    if not isinstance(config, dict):
        raise ConfigError("Field: Definition must be an object")
    field_map_class = FIELD_MAP_TYPES.get(config.get("type"))
    if field_map_class is None:
        raise ConfigError("Field: Unknown type")
    return field_map_class(config)

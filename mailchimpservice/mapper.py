"""
Mapper: converts whole records between CRM and Mailchimp shape using the
field maps of a configuration.
"""

import copy
from typing import Any, Dict, List

from .field_maps import FieldMap


class Mapper:
    def __init__(self, field_maps: List[FieldMap]):
        self.field_maps = list(field_maps)

    def crm_to_mailchimp(self, crm_record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build a Mailchimp member payload from a CRM record.

        Fragments sharing a parent key are combined: dicts (``merge_fields``,
        ``interests``) are merged, lists (``tags``) are concatenated. Fields
        without parent key land on the top level.

        :raises ParseCrmDataError: a mapped CRM key is missing in the record
        """
        payload: Dict[str, Any] = {}

        for field_map in self.field_maps:
            if not field_map.can_sync_to_mailchimp():
                continue

            fragment = copy.deepcopy(field_map.to_mailchimp(crm_record))
            parent_key = field_map.mailchimp_parent_key

            if not parent_key:
                payload.update(fragment)
            elif isinstance(fragment, list):
                payload.setdefault(parent_key, [])
                payload[parent_key].extend(fragment)
            else:
                payload.setdefault(parent_key, {})
                payload[parent_key].update(fragment)

        return payload

    def mailchimp_to_crm(self, mailchimp_record: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Build the CRM write payload ``{crm_key: [{'value': ..., 'mode': ...}, ...]}``
        from a Mailchimp member.

        :raises ParseMailchimpDataError: the member misses data a two-way field depends on
        """
        payload: Dict[str, List[Dict[str, Any]]] = {}

        for field_map in self.field_maps:
            if not field_map.can_sync_to_crm():
                continue

            for crm_value in field_map.to_crm(mailchimp_record):
                payload.setdefault(crm_value.key, []).append(crm_value.to_dict())

        return payload

"""
mailchimp_client.py

Thin wrapper around the Mailchimp Marketing API v3 for one audience (list).

Rejected subscriber upserts are classified by their error message into the
exceptions of ``exceptions.py`` so callers can handle expected cases (invalid
or fake addresses, compliance state, ...) per record.
"""

import hashlib
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import MAX_RETRIES, RETRY_DELAY, REQUEST_TIMEOUT
from .exceptions import (
    MailchimpClientError, NotFoundError, InvalidEmailError, CleanedEmailError,
    UnsubscribedEmailError, AlreadyInListError, ArchivedEmailError,
    EmailComplianceError, FakeEmailError, MergeFieldError, TooManySignupsError,
)

logger = logging.getLogger(__name__)

MC_GET_LIMIT = 1000

# (exception, message fragments) checked in this order
PUT_ERROR_CLASSIFICATION = [
    (InvalidEmailError, [
        "Invalid email address",
        "provide a valid email address.",
    ]),
    (CleanedEmailError, [
        'This member\'s status is "cleaned."',
        'is already in this list with a status of "Cleaned".',
    ]),
    (UnsubscribedEmailError, [
        'This member\'s status is "unsubscribed."',
        'is already in this list with a status of "Unsubscribed".',
        "has previously unsubscribed from this list and must opt in again.",
        "was previously removed from this audience. To rejoin, they'll need to sign up using a Mailchimp form.",
        "was permanently deleted and cannot be re-imported.",
    ]),
    (AlreadyInListError, [
        "is already a list member",
        'is already in this list with a status of "Deleted".',
        'is already in this list with a status of "Subscribed".',
    ]),
    (ArchivedEmailError, ['status is "archived."']),
    (EmailComplianceError, ["compliance state"]),
    (FakeEmailError, ["looks fake or invalid, please enter a real email address."]),
    (MergeFieldError, ["merge fields were invalid"]),
    (TooManySignupsError, ["has signed up to a lot of lists very recently"]),
]


def calculate_subscriber_id(email: str) -> str:
    """Mailchimp's subscriber hash: md5 of the trimmed, lower-cased email."""
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


def _error_message(body: Dict[str, Any]) -> str:
    errors = body.get("errors") or []
    if errors and errors[0].get("message"):
        return errors[0]["message"]
    return body.get("detail") or body.get("title") or str(body)


def classify_put_error(message: str) -> type:
    for exception_class, fragments in PUT_ERROR_CLASSIFICATION:
        if any(fragment in message for fragment in fragments):
            return exception_class
    return MailchimpClientError


class MailchimpClient:
    def __init__(self, api_key: str, list_id: str, session: Optional[requests.Session] = None):
        if "-" not in api_key:
            raise MailchimpClientError("Invalid Mailchimp API key: missing datacenter suffix")

        self.api_key = api_key
        self.list_id = list_id
        self.dc = api_key.rsplit("-", 1)[1]
        self.base_url = f"https://{self.dc}.api.mailchimp.com/3.0"
        self.session = session or requests.Session()
        self.session.auth = ("anystring", api_key)
        self._crm_id_index: Optional[Dict[str, str]] = None

    calculate_subscriber_id = staticmethod(calculate_subscriber_id)

    # ── transport ─────────────────────────────────────────────────────────
    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}/{path}"
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
            except requests.exceptions.RequestException as e:
                if attempt < MAX_RETRIES:
                    logger.warning(f"Mailchimp request {method} {path} failed: {e}. Retrying in {RETRY_DELAY} seconds...")
                    time.sleep(RETRY_DELAY)
                else:
                    logger.error(f"Exhausted retries for Mailchimp request {method} {path}: {e}")
                    raise MailchimpClientError(f"{method} request against Mailchimp failed: {e}") from e

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self._send(method, path, **kwargs)

        if response.status_code == 404:
            raise NotFoundError(f"{method} {path}: resource not found in Mailchimp", response.text)
        if response.status_code >= 400:
            raise MailchimpClientError(
                f"{method} request against Mailchimp failed (status code: {response.status_code}): "
                f"{_error_message(self._json(response))}",
                response.status_code, response.text
            )
        return self._json(response)

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"detail": response.text}

    def _member_path(self, subscriber_id: str) -> str:
        return f"lists/{self.list_id}/members/{subscriber_id}"

    # ── members ───────────────────────────────────────────────────────────
    def get_subscriber(self, email: str) -> Dict[str, Any]:
        """
        :raises NotFoundError: no member with this email in the audience
        """
        return self._request("GET", self._member_path(calculate_subscriber_id(email)))

    def get_subscribers_page(self, count: int, offset: int,
                             filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """One page of audience members matching the given query filters."""
        params = dict(filters or {})
        params.update({"count": count, "offset": offset})
        if isinstance(params.get("fields"), (list, tuple)):
            params["fields"] = ",".join(params["fields"])

        body = self._request("GET", f"lists/{self.list_id}/members", params=params)
        return body.get("members", [])

    def get_email_by_crm_id(self, crm_id: Any, crm_id_key: str) -> Optional[str]:
        """
        Email of the member linked to the given CRM id. The audience is read
        once per client and cached.
        """
        if self._crm_id_index is None:
            index = {}
            offset = 0
            while True:
                members = self.get_subscribers_page(
                    MC_GET_LIMIT, offset,
                    {"fields": ["members.email_address", "members.merge_fields"]}
                )
                if not members:
                    break
                for member in members:
                    linked_id = (member.get("merge_fields") or {}).get(crm_id_key)
                    if linked_id not in (None, ""):
                        index[str(linked_id)] = member["email_address"]
                offset += MC_GET_LIMIT
            logger.debug(f"Indexed {len(index)} Mailchimp members by CRM id")
            self._crm_id_index = index

        return self._crm_id_index.get(str(crm_id))

    def put_subscriber(self, data: Dict[str, Any], old_email: Optional[str] = None,
                       sync_tags: bool = True) -> Dict[str, Any]:
        """
        Create or update a member. ``old_email`` addresses the member whose
        email is being changed. With ``sync_tags`` the tags in ``data`` are
        synchronized afterwards, so tags not in ``data`` become inactive.
        """
        if not data.get("email_address"):
            raise ValueError("Missing email_address.")

        data = dict(data)
        if "status" not in data and "status_if_new" not in data:
            data["status_if_new"] = "subscribed"
        tags = data.get("tags", [])

        subscriber_id = calculate_subscriber_id(old_email or data["email_address"])
        response = self._send("PUT", self._member_path(subscriber_id), json=data)
        body = self._json(response)

        if response.status_code >= 400:
            message = _error_message(body)
            exception_class = classify_put_error(message)
            raise exception_class(
                f"PUT subscriber request against Mailchimp failed (status code: {response.status_code}): {message}",
                response.status_code, response.text
            )

        if sync_tags:
            self.update_subscriber_tags(body.get("id", subscriber_id), tags)
        return body

    def update_merge_fields(self, subscriber_id: str, merge_fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", self._member_path(subscriber_id), json={"merge_fields": merge_fields})

    def delete_subscriber(self, email: str):
        """Archive the member. A member that does not exist counts as deleted."""
        try:
            self._request("DELETE", self._member_path(calculate_subscriber_id(email)))
        except NotFoundError:
            logger.debug(f"Member {email} not in Mailchimp, nothing to delete")

    def delete_subscriber_permanently(self, email: str):
        """
        Erase the member and its history. Cleaned members can not be archived,
        only erased. The address can not be re-imported afterwards.
        """
        try:
            self._request("POST", f"{self._member_path(calculate_subscriber_id(email))}/actions/delete-permanent")
        except NotFoundError:
            logger.debug(f"Member {email} not in Mailchimp, nothing to delete")

    # ── tags ──────────────────────────────────────────────────────────────
    def get_subscriber_tags(self, subscriber_id: str) -> List[str]:
        body = self._request("GET", f"{self._member_path(subscriber_id)}/tags")
        return [tag["name"] for tag in body.get("tags", [])]

    def _post_tags(self, subscriber_id: str, tags: List[Dict[str, str]]):
        if tags:
            self._request("POST", f"{self._member_path(subscriber_id)}/tags", json={"tags": tags})

    def add_tags(self, subscriber_id: str, tags: Iterable[str]):
        self._post_tags(subscriber_id, [{"name": tag, "status": "active"} for tag in tags])

    def remove_tag(self, subscriber_id: str, tag: str):
        self._post_tags(subscriber_id, [{"name": tag, "status": "inactive"}])

    def update_subscriber_tags(self, subscriber_id: str, tags: Iterable[Any]):
        """Activate the given tags and deactivate all others of the member."""
        new = [tag["name"] if isinstance(tag, dict) else tag for tag in tags]
        current = self.get_subscriber_tags(subscriber_id)

        update = [{"name": tag, "status": "inactive"} for tag in current if tag not in new]
        update += [{"name": tag, "status": "active"} for tag in new if tag not in current]
        self._post_tags(subscriber_id, update)

"""
Webhook endpoints.

Every configuration that receives Mailchimp webhooks gets an endpoint with a
random secret. The secret is part of the webhook URL registered in Mailchimp
(``/v1/mailchimp/webhook/<secret>``) and selects the configuration.
"""

import logging
import secrets
from typing import Any, Dict, List, Optional

from .config import Config
from .exceptions import ConfigError, NotFoundError
from .mailchimp_to_crm_webhook import MailchimpToCrmWebhookSynchronizer
from .storage import JsonStore, utcnow_iso

logger = logging.getLogger(__name__)

SECRET_LENGTH = 22


class EndpointStore:
    def __init__(self, data_dir: Optional[str] = None):
        self.store = JsonStore("endpoints.json", default=[], data_dir=data_dir)

    def all(self) -> List[Dict[str, Any]]:
        return self.store.load()

    def get(self, endpoint_id: int) -> Dict[str, Any]:
        for endpoint in self.all():
            if endpoint["id"] == endpoint_id:
                return endpoint
        raise NotFoundError(f"Endpoint {endpoint_id} not found")

    def find_by_secret(self, secret: str) -> Dict[str, Any]:
        for endpoint in self.all():
            if secrets.compare_digest(endpoint["secret"], secret):
                return endpoint
        raise NotFoundError("No endpoint for this secret")

    def add(self, config_name: str, config_base_path: Optional[str] = None) -> Dict[str, Any]:
        """Register a new endpoint for a valid configuration."""
        self.validate_config(config_name, config_base_path)

        endpoints = self.all()
        endpoint = {
            "id": max((e["id"] for e in endpoints), default=0) + 1,
            "secret": secrets.token_urlsafe(SECRET_LENGTH)[:SECRET_LENGTH],
            "config": config_name,
            "created_at": utcnow_iso(),
        }
        endpoints.append(endpoint)
        self.store.save(endpoints)
        logger.info(f"✅ Added endpoint {endpoint['id']} for config '{config_name}'")
        return endpoint

    def update(self, endpoint_id: int, config_name: str, config_base_path: Optional[str] = None) -> Dict[str, Any]:
        """Point an existing endpoint to another configuration."""
        self.validate_config(config_name, config_base_path)

        endpoints = self.all()
        for endpoint in endpoints:
            if endpoint["id"] == endpoint_id:
                endpoint["config"] = config_name
                endpoint["updated_at"] = utcnow_iso()
                self.store.save(endpoints)
                logger.info(f"✅ Endpoint {endpoint_id} now uses config '{config_name}'")
                return endpoint
        raise NotFoundError(f"Endpoint {endpoint_id} not found")

    def delete(self, endpoint_id: int) -> None:
        endpoints = self.all()
        kept = [e for e in endpoints if e["id"] != endpoint_id]
        if len(kept) == len(endpoints):
            raise NotFoundError(f"Endpoint {endpoint_id} not found")
        self.store.save(kept)
        logger.info(f"🗑️ Deleted endpoint {endpoint_id}")

    @staticmethod
    def validate_config(config_name: str, config_base_path: Optional[str]):
        config = Config.load(config_name, config_base_path)
        errors = config.errors
        if errors:
            raise ConfigError(f"Invalid configuration '{config_name}': {'; '.join(errors)}")


def validate_webhook(secret: str, endpoint_store: Optional[EndpointStore] = None,
                     config_base_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Answer Mailchimp's GET on the webhook url, sent when the webhook is set
    up. The url is valid if the secret is known and its configuration loads.

    :raises NotFoundError: unknown secret
    :raises ConfigError: the endpoint's configuration is missing or invalid
    """
    endpoint = (endpoint_store or EndpointStore()).find_by_secret(secret)
    EndpointStore.validate_config(endpoint["config"], config_base_path)
    return endpoint


def handle_webhook(secret: str, payload: Dict[str, Any],
                   endpoint_store: Optional[EndpointStore] = None) -> Optional[Dict[str, Any]]:
    """
    Entry point of the webhook route: resolve the endpoint by its secret and
    apply the event with the endpoint's configuration.

    :raises NotFoundError: unknown secret
    """
    endpoint = (endpoint_store or EndpointStore()).find_by_secret(secret)
    synchronizer = MailchimpToCrmWebhookSynchronizer(endpoint["config"])
    return synchronizer.handle_mailchimp_event(payload)


def parse_webhook_form(form: Dict[str, str]) -> Dict[str, Any]:
    """
    Turn Mailchimp's form encoded webhook body (``data[merges][FNAME]=Hugo``)
    into nested dicts.
    """
    payload: Dict[str, Any] = {}
    for raw_key, value in form.items():
        parts = raw_key.replace("]", "").split("[")
        node = payload
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    return payload

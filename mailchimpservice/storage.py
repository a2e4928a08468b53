"""
storage.py

Small JSON file stores for the state the service keeps between runs:
revisions, OAuth tokens and webhook endpoints. A corrupted file is reported
and replaced by an empty state, like the list history of the sync jobs.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import DATA_DIR

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonStore:
    """A JSON document on disk, read and written as a whole."""

    def __init__(self, filename: str, default: Any = None, data_dir: Optional[str] = None):
        self.path = os.path.join(data_dir or DATA_DIR, filename)
        self.default = {} if default is None else default

    def load(self) -> Any:
        if not os.path.exists(self.path):
            return json.loads(json.dumps(self.default))

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            logger.warning(f"⚠️ Store file {self.path} corrupted, starting with empty state")
            return json.loads(json.dumps(self.default))

    def save(self, data: Any) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)
        logger.debug(f"Wrote {self.path}")


class OAuthClientStore:
    """Client credentials and the last access token per CRM client id."""

    def __init__(self, data_dir: Optional[str] = None):
        self.store = JsonStore("oauth_clients.json", default={}, data_dir=data_dir)

    def get(self, client_id: str) -> Optional[Dict[str, Any]]:
        return self.store.load().get(client_id)

    def save_client(self, client_id: str, client_secret: str, token: Optional[str] = None) -> Dict[str, Any]:
        clients = self.store.load()
        client = clients.get(client_id, {"client_id": client_id, "created_at": utcnow_iso()})
        client.update({"client_secret": client_secret, "token": token, "updated_at": utcnow_iso()})
        clients[client_id] = client
        self.store.save(clients)
        return client

    def get_token(self, client_id: str) -> Optional[str]:
        client = self.get(client_id)
        return client.get("token") if client else None

"""
crm_client.py

HTTP client for the CRM API (OAuth2 client credentials, bearer token).

The access token is kept in the OAuth client store so it survives between
runs. On start the token is checked against the auth endpoint and refreshed if
it was rejected; a 401 during a run triggers one more refresh.
"""

import logging
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from .config import MAX_RETRIES, RETRY_DELAY, REQUEST_TIMEOUT
from .exceptions import CrmClientError, NotFoundError
from .storage import OAuthClientStore

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/token"
AUTH_CHECK_PATH = "/api/v1/auth"


def force_ssl(url: str) -> str:
    url = re.sub(r"^//", "https://", url)
    url = re.sub(r"^http://", "https://", url)
    if not url.endswith("/"):
        url += "/"
    return url


class CrmClient:
    def __init__(self, client_id: str, client_secret: str, api_url: str,
                 token_store: Optional[OAuthClientStore] = None,
                 session: Optional[requests.Session] = None):
        self.client_id = str(client_id)
        self.client_secret = client_secret
        self.api_url = force_ssl(api_url)
        self.token_store = token_store or OAuthClientStore()
        self.session = session or requests.Session()
        self.token: Optional[str] = None

        self._load_token()

    # ── token handling ────────────────────────────────────────────────────
    def _load_token(self):
        client = self.token_store.get(self.client_id)
        if not client:
            self.token_store.save_client(self.client_id, self.client_secret)
            client = self.token_store.get(self.client_id)

        self.token = client.get("token")
        if not self.token or not self._is_token_valid():
            self.refresh_token()

    def _is_token_valid(self) -> bool:
        try:
            response = self._send("GET", AUTH_CHECK_PATH)
        except CrmClientError as e:
            logger.warning(f"CRM auth check failed: {e}")
            return False
        return response.status_code < 400

    def refresh_token(self):
        """Fetch a new access token with the client credentials grant."""
        logger.info("🔑 Requesting new CRM access token")
        response = self._send("POST", TOKEN_PATH, authorized=False, data={
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": "",
        })
        if response.status_code >= 400:
            raise CrmClientError(
                f"CRM token request failed: Status {response.status_code}",
                response.status_code, response.text
            )

        self.token = response.json()["access_token"]
        self.token_store.save_client(self.client_id, self.client_secret, self.token)

    # ── requests ──────────────────────────────────────────────────────────
    def _send(self, method: str, path: str, authorized: bool = True, **kwargs) -> requests.Response:
        """Send a request, retrying on network errors. HTTP errors are returned, not raised."""
        url = urljoin(self.api_url, path)
        headers = {"Accept": "application/json"}
        if authorized:
            headers["Authorization"] = f"Bearer {self.token}"

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return self.session.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT,
                                            allow_redirects=False, **kwargs)
            except requests.exceptions.RequestException as e:
                if attempt < MAX_RETRIES:
                    logger.warning(f"CRM request {method} {path} failed: {e}. Retrying in {RETRY_DELAY} seconds...")
                    time.sleep(RETRY_DELAY)
                else:
                    logger.error(f"Exhausted retries for CRM request {method} {path}: {e}")
                    raise CrmClientError(f"CRM request {method} {path} failed: {e}") from e

    def request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        kwargs = {"json": data} if data is not None else {}
        response = self._send(method, path, **kwargs)

        if response.status_code == 401:
            logger.info("CRM rejected the access token, refreshing")
            self.refresh_token()
            response = self._send(method, path, **kwargs)

        if response.status_code == 404:
            raise NotFoundError(f"CRM resource not found: {path}", response.text)
        if response.status_code >= 400:
            raise CrmClientError(
                f"CRM request {method} {path} failed: Status {response.status_code}",
                response.status_code, response.text
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def get(self, path: str) -> Any:
        return self.request("GET", path)

    def post(self, path: str, data: Dict[str, Any]) -> Any:
        return self.request("POST", path, data)

    def put(self, path: str, data: Dict[str, Any]) -> Any:
        return self.request("PUT", path, data)

"""
Queue of CRM records Mailchimp refused for now.

Mailchimp rate-limits addresses that signed up to many lists recently. Such
records are queued here by CRM id and retried at the end of a later run,
once they waited at least ``SYNC_LATER_DELAY`` seconds. Only the id is kept;
the record itself is fetched from the CRM again when it is retried.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .config import SYNC_LATER_DELAY
from .storage import JsonStore, utcnow_iso

logger = logging.getLogger(__name__)


class SyncLaterStore:
    def __init__(self, config_name: str, data_dir: Optional[str] = None, delay: int = SYNC_LATER_DELAY):
        self.config_name = config_name
        self.delay = delay
        self.store = JsonStore("sync_later.json", default=[], data_dir=data_dir)

    def _is_pending(self, entry: Dict[str, Any], crm_id: Any = None) -> bool:
        if entry["config_name"] != self.config_name or entry["sync_successful"]:
            return False
        return crm_id is None or str(entry["crm_id"]) == str(crm_id)

    def pending(self) -> List[Dict[str, Any]]:
        return [e for e in self.store.load() if self._is_pending(e)]

    def add(self, crm_id: Any) -> Dict[str, Any]:
        """Queue the record, or count another attempt if it is queued already."""
        entries = self.store.load()
        entry = next((e for e in entries if self._is_pending(e, crm_id)), None)
        if entry is None:
            entry = {
                "crm_id": crm_id,
                "config_name": self.config_name,
                "attempts": 0,
                "sync_successful": None,
                "created_at": utcnow_iso(),
            }
            entries.append(entry)

        entry["attempts"] += 1
        entry["updated_at"] = utcnow_iso()
        self.store.save(entries)
        logger.debug(f"Record {crm_id} queued for a later sync (attempt {entry['attempts']})")
        return entry

    def due(self) -> List[Any]:
        """CRM ids of the queued records that waited long enough."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.delay)
        return [
            e["crm_id"] for e in self.pending()
            if datetime.fromisoformat(e["updated_at"]) < cutoff
        ]

    def touch(self, crm_id: Any):
        entries = self.store.load()
        for entry in entries:
            if self._is_pending(entry, crm_id):
                entry["updated_at"] = utcnow_iso()
        self.store.save(entries)

    def mark_done(self, crm_id: Any) -> bool:
        """Mark a queued record as synced. Returns False if it was not queued."""
        entries = self.store.load()
        done = False
        for entry in entries:
            if self._is_pending(entry, crm_id):
                entry["sync_successful"] = utcnow_iso()
                done = True
        if done:
            self.store.save(entries)
            logger.debug(f"Queued record {crm_id} synced")
        return done

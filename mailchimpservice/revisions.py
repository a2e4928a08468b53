"""
Revision bookkeeping for the CRM → Mailchimp sync.

Every run opens a revision holding the CRM's revision id at the time the run
started. It is closed (marked successful) once all changed records were
pushed. The open revision doubles as an advisory lock: a run that dies leaves
it open, and the next run discards it and starts over from the last
successful revision.

Records pushed within a revision are marked, so a continued run that sees a
record again (a repeated batch, a retried queue entry) skips it. The markers
are dropped together with their revision.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import SyncError
from .notifications import notify_warning
from .storage import JsonStore, utcnow_iso

logger = logging.getLogger(__name__)

NO_REVISION = -1


class RevisionStore:
    def __init__(self, config_name: str, data_dir: Optional[str] = None):
        self.config_name = config_name
        self.store = JsonStore("revisions.json", default=[], data_dir=data_dir)
        self.synced = JsonStore("synced_records.json", default={}, data_dir=data_dir)

    def _all(self) -> List[Dict[str, Any]]:
        return self.store.load()

    def _own(self, revisions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [r for r in revisions if r["config_name"] == self.config_name]

    def get_latest_successful_revision(self) -> Optional[Dict[str, Any]]:
        successful = [r for r in self._own(self._all()) if r["sync_successful"]]
        if not successful:
            return None
        return max(successful, key=lambda r: (r["revision_id"], r["created_at"]))

    def get_latest_successful_revision_id(self) -> int:
        """Revision id of the last completed run, ``-1`` if there is none."""
        revision = self.get_latest_successful_revision()
        return revision["revision_id"] if revision else NO_REVISION

    def get_latest_successful_revision_age_days(self) -> Optional[float]:
        revision = self.get_latest_successful_revision()
        if not revision:
            return None
        created_at = datetime.fromisoformat(revision["created_at"])
        return (datetime.now(timezone.utc) - created_at).total_seconds() / 86400

    def get_open_revisions(self) -> List[Dict[str, Any]]:
        return [r for r in self._own(self._all()) if not r["sync_successful"]]

    def get_open_revision(self) -> Optional[Dict[str, Any]]:
        open_revisions = self.get_open_revisions()
        if not open_revisions:
            return None
        return max(open_revisions, key=lambda r: r["created_at"])

    def purge_open_revisions(self) -> int:
        """Discard all unfinished runs of this configuration. Returns how many were discarded."""
        revisions = self._all()
        kept = [
            r for r in revisions
            if r["config_name"] != self.config_name or r["sync_successful"]
        ]
        purged = len(revisions) - len(kept)
        if purged:
            self.store.save(kept)
            self._drop_markers(r["id"] for r in revisions if r not in kept)
            notify_warning(f"⚠️ Discarded {purged} unfinished revision(s) of '{self.config_name}'",
                           {"config": self.config_name})
        return purged

    def open_revision(self, revision_id: int, full_sync: bool = False) -> Dict[str, Any]:
        revisions = self._all()
        revision = {
            "id": uuid.uuid4().hex,
            "config_name": self.config_name,
            "revision_id": int(revision_id),
            "sync_successful": False,
            "full_sync": full_sync,
            "created_at": utcnow_iso(),
        }
        revisions.append(revision)
        self.store.save(revisions)
        logger.debug(f"Opened revision {revision_id} for '{self.config_name}'")
        return revision

    def close_open_revision(self) -> Optional[Dict[str, Any]]:
        """Mark the open revision as successful."""
        open_revision = self.get_open_revision()
        if not open_revision:
            logger.warning(f"⚠️ No open revision to close for '{self.config_name}'")
            return None

        revisions = self._all()
        for revision in revisions:
            if revision["id"] == open_revision["id"]:
                revision["sync_successful"] = True
                revision["closed_at"] = utcnow_iso()
                open_revision = revision
        self.store.save(revisions)
        self._drop_markers([open_revision["id"]])
        logger.debug(f"Closed revision {open_revision['revision_id']} for '{self.config_name}'")
        return open_revision

    # ── per record markers ────────────────────────────────────────────────
    def already_synced(self, crm_id: Any) -> bool:
        """True if the record was pushed within the open revision."""
        open_revision = self.get_open_revision()
        if not open_revision:
            return False
        return str(crm_id) in self.synced.load().get(open_revision["id"], [])

    def mark_synced(self, crm_id: Any):
        open_revision = self.get_open_revision()
        if not open_revision:
            raise SyncError(f"No open revision of '{self.config_name}' to mark record {crm_id} in")

        markers = self.synced.load()
        synced = markers.setdefault(open_revision["id"], [])
        if str(crm_id) not in synced:
            synced.append(str(crm_id))
            self.synced.save(markers)

    def _drop_markers(self, revision_ids: Iterable[str]):
        markers = self.synced.load()
        dropped = [rid for rid in revision_ids if markers.pop(rid, None) is not None]
        if dropped:
            self.synced.save(markers)

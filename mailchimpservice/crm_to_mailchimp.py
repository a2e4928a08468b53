#!/usr/bin/env python3
"""
CRM → Mailchimp Sync

Pushes CRM records that changed since the last successful run into the
Mailchimp audience. The CRM exposes a monotonically increasing revision id;
each run remembers the revision it started at (see ``revisions.py``) and the
next run asks the CRM for everything changed since then.

A run is split into batches of ``limit`` records. ``sync_all_changes``
processes one batch and reports whether the run is finished; ``run`` loops
over the batches while holding the configuration's lock (see ``locks.py``).

Records Mailchimp refuses because of its signup rate limit are queued (see
``sync_later.py``) and retried after the last batch of a later run.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

from tqdm import tqdm

from .config import Config, CRM_ID_KEY, MAX_REVISION_AGE_DAYS, load_config
from .crm_client import CrmClient
from .exceptions import (
    SyncError, NotFoundError, EmailComplianceError, InvalidEmailError, FakeEmailError,
    UnsubscribedEmailError, CleanedEmailError, ArchivedEmailError, AlreadyInListError,
    TooManySignupsError,
)
from .filter import Filter
from .locks import SyncLock
from .log import SyncLogger
from .mailchimp_client import MailchimpClient
from .mapper import Mapper
from .notifications import send_data_owner_notification, notify_warning, TEMPLATE_INVALID_EMAIL
from .revisions import RevisionStore, NO_REVISION
from .sync_later import SyncLaterStore

logger = logging.getLogger(__name__)


class CrmToMailchimpSynchronizer:
    def __init__(self, config: Union[str, Config],
                 crm_client: Optional[CrmClient] = None,
                 mailchimp_client: Optional[MailchimpClient] = None,
                 revision_store: Optional[RevisionStore] = None,
                 data_dir: Optional[str] = None):
        self.config = load_config(config)
        self.log = SyncLogger(logger, self.config.name)

        if crm_client is None:
            credentials = self.config.get_crm_credentials()
            crm_client = CrmClient(credentials["client_id"], credentials["client_secret"], credentials["url"])
        if mailchimp_client is None:
            mailchimp_client = MailchimpClient(
                self.config.get_mailchimp_credentials()["api_key"],
                self.config.get_mailchimp_list_id()
            )

        self.crm_client = crm_client
        self.mailchimp_client = mailchimp_client
        self.revisions = revision_store or RevisionStore(self.config.name, data_dir=data_dir)
        self.lock = SyncLock(self.config.name, data_dir=data_dir)
        self.sync_later = SyncLaterStore(self.config.name, data_dir=data_dir)
        self.mapper = Mapper(self.config.get_field_maps())
        self.filter = Filter(self.config)
        self.email_key = self.config.get_crm_email_key()
        self.crm_id_key = self.config.get_mailchimp_key_of_crm_id()

    # ── run control ───────────────────────────────────────────────────────
    def run(self, limit: int = 100, offset: int = 0, sync_all: bool = False,
            force: bool = False, time_budget: Optional[float] = None) -> bool:
        """
        Sync batch after batch until the CRM reports no more changes.

        :param time_budget: stop after this many seconds; the open revision is
            left in place and the next run starts over from the last
            successful revision
        :return: True if the run completed, False if it was stopped or
            another run of this configuration holds the lock
        """
        if force:
            self.unlock()

        if not self.lock.acquire():
            self.log.info("There is already a synchronization running. Start of new sync job canceled.")
            return False

        try:
            started = time.monotonic()
            while True:
                if self.sync_all_changes(limit, offset, sync_all):
                    return True
                offset += limit

                if time_budget is not None and time.monotonic() - started > time_budget:
                    self.log.warning(f"Time budget of {time_budget}s exhausted at offset {offset}. Run not completed.")
                    return False
        finally:
            self.lock.release()

    def unlock(self) -> int:
        """Discard unfinished runs and remove the lock so a new run can start cleanly."""
        purged = self.revisions.purge_open_revisions()
        self.lock.release()
        self.log.info(f"Unlocked ({purged} open revision(s) discarded).")
        return purged

    def sync_all_changes(self, limit: int = 100, offset: int = 0, sync_all: bool = False) -> bool:
        """
        Process one batch of changed CRM records.

        With ``offset == 0`` a new run is started: unfinished runs are
        discarded and a revision holding the CRM's current revision id is
        opened. Later batches continue the open run and skip records already
        pushed within it.

        :param sync_all: push all records, not only the changed ones
        :return: True once the CRM returned an empty batch (run finished)
        """
        if offset == 0:
            since = self._start_run(sync_all)
        else:
            since = self._continue_run(sync_all)

        self.log.debug(f"Requesting next {limit} records starting at {offset}.")
        response = self.crm_client.get(f"member/changed/{since}/{limit}/{offset}")

        if not response:
            self.sync_queued_records()
            self.revisions.close_open_revision()
            self.log.info("Everything synced. Revision closed.")
            return True

        records = self._records_of(response)
        eligible = self.filter.filter(records)
        self.log.debug(f"{len(eligible)} of {len(records)} records pass the filter.")

        with tqdm(eligible, desc=f"CRM → Mailchimp {offset}-{offset + limit}", unit="contact",
                  ncols=80, leave=False, mininterval=2.0) as bar:
            for record in bar:
                self._sync_record(record)

        self.log.debug(f"Sync of records {offset} up to {offset + limit} successful.")
        return False

    def sync_queued_records(self) -> int:
        """
        Retry the records queued because of Mailchimp's signup rate limit.
        Records deleted in the CRM or no longer eligible leave the queue.

        :return: number of records retried
        """
        due = self.sync_later.due()
        if not due:
            return 0

        self.log.info(f"Retrying {len(due)} record(s) queued for a later sync.")
        for crm_id in due:
            self.sync_later.touch(crm_id)
            try:
                record = self.crm_client.get(f"member/{crm_id}")
            except NotFoundError:
                record = None

            if not record:
                self.log.info("Queued record was deleted in crm. Removed from the queue.", crm_id=crm_id)
                self.sync_later.mark_done(crm_id)
                continue

            record.setdefault(CRM_ID_KEY, crm_id)
            if not self.filter.filter_single(record):
                self.log.info("Queued record is no longer eligible. Removed from the queue.", crm_id=crm_id)
                self.sync_later.mark_done(crm_id)
                continue

            self._sync_record(record)
        return len(due)

    def _start_run(self, sync_all: bool) -> int:
        self.revisions.purge_open_revisions()

        if sync_all:
            since = NO_REVISION
            message = "Force sync all records regardless of changes."
        else:
            since = self.revisions.get_latest_successful_revision_id()
            age = self.revisions.get_latest_successful_revision_age_days()
            if since == NO_REVISION:
                message = "No successful revision found."
            elif age is not None and age > MAX_REVISION_AGE_DAYS:
                since = NO_REVISION
                message = f"Last successful revision is {age:.1f} days old."
            else:
                message = f"Synchronizing changes since revision {since}."

        current = int(self.crm_client.get("revision"))
        self.revisions.open_revision(current, full_sync=since == NO_REVISION)

        if since == NO_REVISION:
            message += " Doing full sync."
        self.log.info(f"Starting to sync from crm into mailchimp (revision {current}). {message}")
        return since

    def _continue_run(self, sync_all: bool) -> int:
        open_revision = self.revisions.get_open_revision()
        if open_revision is None:
            raise SyncError("No open revision to continue. Restart the sync with offset 0.")
        if sync_all or open_revision["full_sync"]:
            return NO_REVISION
        return self.revisions.get_latest_successful_revision_id()

    def _records_of(self, response: Union[Dict[str, Any], List[Any]]) -> List[Dict[str, Any]]:
        """Changed records of a batch. Deleted records come back as null and are skipped."""
        items = response.items() if isinstance(response, dict) else enumerate(response)
        records = []
        for crm_id, record in items:
            if record is None:
                self.log.debug(f"Record {crm_id} was deleted in crm. Skipping.", crm_id=crm_id)
                continue
            if isinstance(response, dict):
                record.setdefault(CRM_ID_KEY, crm_id)
            records.append(record)
        return records

    def _sync_record(self, crm_record: Dict[str, Any]):
        crm_id = crm_record.get(CRM_ID_KEY)
        if crm_id is not None and self.revisions.already_synced(crm_id):
            self.log.debug(f"Record {crm_id} already synced in this run. Skipping.", crm_id=crm_id)
            return

        self.lock.refresh()
        if self.sync_single(crm_record) and crm_id is not None:
            self.revisions.mark_synced(crm_id)

    # ── single record ─────────────────────────────────────────────────────
    def sync_single(self, crm_record: Dict[str, Any]) -> bool:
        """
        Upsert one CRM record into Mailchimp. Expected rejections are logged
        and skipped, everything else propagates.

        :return: False if the record was queued for a later sync
        """
        crm_id = crm_record.get(CRM_ID_KEY)
        data = self.mapper.crm_to_mailchimp(crm_record)
        email = str(data.get("email_address", "")).strip().lower()
        data["email_address"] = email
        data["status"] = "subscribed"

        old_email = self.mailchimp_client.get_email_by_crm_id(crm_id, self.crm_id_key) if crm_id else None
        if old_email and old_email.strip().lower() != email:
            self.log.info(f"Email address has changed in crm. Changing address in Mailchimp from {old_email}.",
                          email=email, crm_id=crm_id)
        else:
            old_email = None

        try:
            self._put_subscriber(data, old_email, crm_id)
        except EmailComplianceError:
            self.log.info("This record is in a compliance state due to unsubscribe, bounce or compliance "
                          "review and cannot be subscribed.", email=email, crm_id=crm_id)
            return True
        except InvalidEmailError:
            self.log.info("INVALID EMAIL. Record skipped.", email=email, crm_id=crm_id)
            return True
        except FakeEmailError:
            self._notify_invalid_email(data)
            self.log.info("FAKE or INVALID EMAIL. Data owner notified.", email=email, crm_id=crm_id)
            return True
        except (UnsubscribedEmailError, CleanedEmailError, ArchivedEmailError) as e:
            self.log.info(f"Record can not be resubscribed: {e}", email=email, crm_id=crm_id)
            return True
        except AlreadyInListError as e:
            notify_warning(f"⚠️ Mailchimp claims {email} is already in list. No action taken.",
                           {"config": self.config.name, "crm_id": crm_id, "error": str(e)})
            return True
        except TooManySignupsError:
            self.log.info("Blocked by Mailchimp's signup rate limit. Queued for a later sync.",
                          email=email, crm_id=crm_id)
            if crm_id is not None:
                self.sync_later.add(crm_id)
            return False

        if crm_id is not None:
            self.sync_later.mark_done(crm_id)
        self.log.debug("Record synced.", email=email, crm_id=crm_id)
        return True

    def _put_subscriber(self, data: Dict[str, Any], old_email: Optional[str], crm_id: Any):
        """
        PUT the member. If the email changed and Mailchimp refuses to rename
        the old member, the new address is pushed as a member of its own and
        the old member is removed.
        """
        email = data["email_address"]
        try:
            self.mailchimp_client.put_subscriber(data, old_email=old_email)
        except AlreadyInListError:
            if not old_email:
                raise
            self.log.info(f"A member with the new address already exists. Updating it and archiving {old_email}.",
                          email=email, crm_id=crm_id)
            self.mailchimp_client.put_subscriber(data)
            self.mailchimp_client.delete_subscriber(old_email)
        except CleanedEmailError:
            if not old_email:
                raise
            # cleaned members can not be archived
            self.log.info(f"Old address {old_email} was cleaned. Deleting it permanently and adding the new address.",
                          email=email, crm_id=crm_id)
            self.mailchimp_client.delete_subscriber_permanently(old_email)
            self.mailchimp_client.put_subscriber(data)
        except UnsubscribedEmailError:
            if not old_email:
                raise
            self.log.info(f"Change of address rejected because {old_email} is unsubscribed. "
                          f"Archiving {old_email} and adding the new address.", email=email, crm_id=crm_id)
            self.mailchimp_client.delete_subscriber(old_email)
            self.mailchimp_client.put_subscriber(data)

    def _notify_invalid_email(self, mailchimp_data: Dict[str, Any]):
        owner = self.config.get_data_owner()
        merge_fields = mailchimp_data.get("merge_fields", {})
        send_data_owner_notification(
            recipient=owner["email"],
            template=TEMPLATE_INVALID_EMAIL,
            data_owner_name=owner["name"],
            contact_first_name=merge_fields.get("FNAME", ""),
            contact_last_name=merge_fields.get("LNAME", ""),
            contact_email=mailchimp_data["email_address"],
            config_name=self.config.name,
        )

#!/usr/bin/env python3
"""
🎯 MAILCHIMP ↔ CRM SYNC CONTROL CENTER
======================================

🎮 EXECUTION COMMANDS:
=====================
   python -m mailchimpservice.main sync toMailchimp <config>            # changed CRM records → Mailchimp
   python -m mailchimpservice.main sync toMailchimp <config> --all      # all CRM records → Mailchimp
   python -m mailchimpservice.main sync toMailchimp <config> --force    # discard a stuck run first
   python -m mailchimpservice.main sync toCrm <config>                  # import new Mailchimp members
   python -m mailchimpservice.main endpoint add <config>                # register a webhook endpoint
   python -m mailchimpservice.main endpoint list
   python -m mailchimpservice.main endpoint edit <id> <config>
   python -m mailchimpservice.main endpoint delete <id>
   python -m mailchimpservice.main webhook <secret> <payload.json>      # replay a webhook event
   python -m mailchimpservice.main webhook <secret>                     # check a webhook url
   python -m mailchimpservice.main website <config> <form.json>         # subscribe a website signup
"""

import argparse
import json
import logging
import sys

from .config import TEAMS_WEBHOOK_URL
from .crm_to_mailchimp import CrmToMailchimpSynchronizer
from .endpoints import EndpointStore, handle_webhook, validate_webhook
from .exceptions import SyncError
from .log import setup_logging
from .mailchimp_to_crm_cron import MailchimpToCrmCronSynchronizer
from .notifications import (
    initialize_notifier, get_notifier, reset_session, notify_error, notify_info, send_final_notification,
)
from .website_to_mailchimp import WebsiteToMailchimpSynchronizer

logger = logging.getLogger(__name__)

DIRECTION_TO_MAILCHIMP = "toMailchimp"
DIRECTION_TO_CRM = "toCrm"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailchimpservice", description="Mailchimp ↔ CRM sync")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run a synchronization")
    sync.add_argument("direction", choices=[DIRECTION_TO_MAILCHIMP, DIRECTION_TO_CRM])
    sync.add_argument("config", help="Name of the config file (without .json)")
    sync.add_argument("--limit", type=int, default=100, help="Records per batch")
    sync.add_argument("--offset", type=int, default=0, help="Start at this record")
    sync.add_argument("--all", action="store_true", help="Sync all records, not only the changed ones")
    sync.add_argument("--force", action="store_true", help="Discard an unfinished run before starting")
    sync.add_argument("--time-budget", type=float, default=None, help="Stop after this many seconds")
    sync.add_argument("--max", type=int, default=0, help="toCrm: stop after this many members (0 = all)")

    endpoint = commands.add_parser("endpoint", help="Manage webhook endpoints")
    endpoint_commands = endpoint.add_subparsers(dest="action", required=True)
    add = endpoint_commands.add_parser("add")
    add.add_argument("config")
    endpoint_commands.add_parser("list")
    edit = endpoint_commands.add_parser("edit")
    edit.add_argument("id", type=int)
    edit.add_argument("config")
    delete = endpoint_commands.add_parser("delete")
    delete.add_argument("id", type=int)

    webhook = commands.add_parser("webhook", help="Apply a webhook payload (JSON file) or check the webhook url")
    webhook.add_argument("secret")
    webhook.add_argument("payload", nargs="?", help="Without payload only the url is checked")

    website = commands.add_parser("website", help="Subscribe a website signup (JSON file with crm keys)")
    website.add_argument("config")
    website.add_argument("payload")

    return parser


def run_sync(args) -> bool:
    if args.direction == DIRECTION_TO_MAILCHIMP:
        synchronizer = CrmToMailchimpSynchronizer(args.config)
        done = synchronizer.run(limit=args.limit, offset=args.offset, sync_all=args.all,
                                force=args.force, time_budget=args.time_budget)
        notify_info(f"✅ CRM → Mailchimp sync of '{args.config}' {'completed' if done else 'paused'}")
        return done

    stats = MailchimpToCrmCronSynchronizer(args.config).sync_all(batch_size=args.limit, limit=args.max)
    notify_info(f"✅ Mailchimp → CRM sync of '{args.config}' completed", stats)
    return True


def run_endpoint(args):
    store = EndpointStore()
    if args.action == "add":
        endpoint = store.add(args.config)
        print(f"✅ Endpoint {endpoint['id']} added. Webhook url: /v1/mailchimp/webhook/{endpoint['secret']}")
    elif args.action == "list":
        for endpoint in store.all():
            print(f"{endpoint['id']:>4}  {endpoint['config']:<30} /v1/mailchimp/webhook/{endpoint['secret']}")
    elif args.action == "edit":
        store.update(args.id, args.config)
        print(f"✅ Endpoint {args.id} updated.")
    elif args.action == "delete":
        store.delete(args.id)
        print(f"✅ Endpoint {args.id} deleted.")


def run_webhook(args):
    if args.payload is None:
        endpoint = validate_webhook(args.secret)
        print(f"✅ Webhook url of endpoint {endpoint['id']} (config '{endpoint['config']}') is valid.")
        return

    with open(args.payload, "r", encoding="utf-8") as f:
        payload = json.load(f)
    result = handle_webhook(args.secret, payload)
    print(json.dumps(result, indent=2) if result else "No action taken.")


def run_website(args):
    with open(args.payload, "r", encoding="utf-8") as f:
        website_data = json.load(f)
    member = WebsiteToMailchimpSynchronizer(args.config).sync_single(website_data)
    notify_info(f"✅ Website signup {member.get('email_address')} subscribed in '{args.config}'")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    if TEAMS_WEBHOOK_URL:
        if get_notifier() is None:
            initialize_notifier(TEAMS_WEBHOOK_URL)
        else:
            reset_session()
    else:
        logger.debug("No Teams webhook URL configured - notifications disabled")

    try:
        if args.command == "sync":
            ok = run_sync(args)
        elif args.command == "endpoint":
            run_endpoint(args)
            ok = True
        elif args.command == "webhook":
            run_webhook(args)
            ok = True
        else:
            run_website(args)
            ok = True
    except SyncError as e:
        notify_error(f"❌ {args.command} failed: {e}")
        send_final_notification("Mailchimp CRM Sync Failed")
        return 1

    send_final_notification("Mailchimp CRM Sync Completed")
    return 0 if ok else 2


if __name__ == "__main__":
    sys.exit(main())

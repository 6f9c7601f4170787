#!/usr/bin/env python3
"""
Create the identity/document tables, one collection per catalog resource
and, optionally, a first administrator account.

    python scripts/init_db.py --admin admin-1 --email admin@example.org
"""

import argparse
import sys

from authz.config import DATABASE_ID
from authz.config_store import ConfigurationStore
from authz.database import create_schema, init_engine
from authz.exceptions import AuthorizationError
from authz.identity import SqlIdentityProvider
from authz.storage import SqlDocumentStore


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Initialise the authorization database")
    parser.add_argument("--admin", metavar="USER_ID", help="create an administrator with this id")
    parser.add_argument("--email", help="email for the administrator account")
    return parser.parse_args(argv)


def main(argv=None, db_engine=None):
    args = parse_args(argv)
    db_engine = db_engine or init_engine()

    create_schema(db_engine)
    print("[init] Tables created.")

    catalog = ConfigurationStore().load()
    storage = SqlDocumentStore(db_engine)
    existing = {c["id"] for c in storage.list_collections(DATABASE_ID)}
    for resource in sorted(catalog.resources - existing):
        rule = catalog.security_rule(resource)
        storage.create_collection(DATABASE_ID, resource, document_security=rule.document_security)
        print(f"[init] Collection created: {resource}")

    if args.admin:
        try:
            SqlIdentityProvider(db_engine).add_user(
                args.admin, email=args.email, labels=[catalog.administrator_role]
            )
        except (AuthorizationError, ValueError) as e:
            print(f"[ERROR] Could not create administrator: {e}", file=sys.stderr)
            return 1
        print(f"[init] Administrator created: {args.admin}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

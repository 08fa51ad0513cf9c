#!/usr/bin/env python3
"""
Create an admin or customer service account.
The console PIN for the role still comes from ADMIN_MPIN / CUSTOMER_SERVICE_MPIN.
"""

import argparse
import getpass
import os
import sys

from sqlmodel import Session

from db import engine, init_db
from errors import ServiceError
import auth_service


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create a SignalDesk staff account")
    parser.add_argument("email")
    parser.add_argument("--role", choices=("admin", "customer_service"), default="customer_service")
    parser.add_argument("--first-name", default="Staff")
    parser.add_argument("--last-name", default="Member")
    parser.add_argument("--password", help="Defaults to STAFF_PASSWORD, otherwise prompted")
    args = parser.parse_args(argv)

    password = args.password or os.getenv("STAFF_PASSWORD") or getpass.getpass("Password: ")

    init_db()
    with Session(engine) as session:
        try:
            result = auth_service.sign_up(
                session, args.email, password, args.first_name, args.last_name, role=args.role
            )
        except ServiceError as exc:
            print(f"Could not create {args.email}: {exc.message}", file=sys.stderr)
            return 1

    print(f"Created {args.role} {result['email']} (member ID {result['unique_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Issue a bearer token for an existing data_user id (local testing only;
production sessions come from the authentication service).
"""

import argparse
import sys

from apodata.api.auth import generate_token
from apodata.database import init_engine
from apodata.rbac import load_security_context


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("user_id")
    parser.add_argument("--no-check", action="store_true", help="skip the data_user lookup")
    args = parser.parse_args()

    if not args.no_check:
        ctx = load_security_context(init_engine(), args.user_id)
        if ctx is None:
            print(f"ERROR: no active user with id {args.user_id}", file=sys.stderr)
            sys.exit(1)
        print(f"# role={ctx.role} pharmacy_id={ctx.pharmacy_id}", file=sys.stderr)

    print(generate_token(args.user_id))


if __name__ == "__main__":
    main()

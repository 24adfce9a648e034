#!/usr/bin/env python3
"""
创建用户，或为已有用户重置密码。未指定 --password 时随机生成并打印。

用法：
    python scripts/seed_user.py --email steve@vitality.io
    python scripts/seed_user.py --email someone@example.com --password mypass
"""

import argparse
import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from vitachat.auth.password import verify_password
from vitachat.db.engine import init_db
from vitachat.stores.user_store import user_store


def main():
    parser = argparse.ArgumentParser(description="Create a user or reset its password")
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--password", default=None, help="Password (default: random)")
    args = parser.parse_args()

    init_db()
    password = args.password or secrets.token_urlsafe(12)

    existing = user_store.find_by_email(args.email)
    if existing is None:
        try:
            user_store.create_user(args.email, password)
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print("User created successfully.")
    else:
        user_store.update_password(existing["id"], password)
        print("User found. Password updated.")

    print(f"Email: {args.email}")
    print(f"Password: {password}")

    user = user_store.find_by_email(args.email)
    ok = bool(user) and verify_password(password, user.get("password") or "")
    print(f"Verification test: {'SUCCESS' if ok else 'FAILED'}")
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()

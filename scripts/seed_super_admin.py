#!/usr/bin/env python3
"""
Seed the first super-admin user.

Reads SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD from .env file.
Run from project root: python scripts/seed_super_admin.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Load .env file
from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

import bcrypt as bcrypt_lib
import psycopg2
from campaign_ingest.config import settings


def hash_password(password: str) -> str:
    """Hash password using bcrypt directly."""
    return bcrypt_lib.hashpw(password.encode(), bcrypt_lib.gensalt()).decode()


def main():
    email = os.getenv("SUPER_ADMIN_EMAIL")
    password = os.getenv("SUPER_ADMIN_PASSWORD")

    if not email or not password:
        print("Error: SUPER_ADMIN_EMAIL and SUPER_ADMIN_PASSWORD must be set in .env")
        sys.exit(1)

    conn = psycopg2.connect(settings.database_url)
    try:
        with conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM super_admins WHERE email = %s", (email,))
                if cur.fetchone():
                    print(f"Super-admin with email '{email}' already exists.")
                    return

                cur.execute(
                    "INSERT INTO super_admins (email, password_hash, name) VALUES (%s, %s, %s) "
                    "RETURNING id, email, created_at",
                    (email, hash_password(password), "Super Admin"),
                )
                super_admin = cur.fetchone()
    finally:
        conn.close()

    print("Created super-admin:")
    print(f"  ID: {super_admin[0]}")
    print(f"  Email: {super_admin[1]}")
    print(f"  Created: {super_admin[2]}")


if __name__ == "__main__":
    main()

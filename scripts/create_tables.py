#!/usr/bin/env python3
"""Create the campaign event ingestion tables (idempotent, versioned)."""

import os
import sys

import psycopg2
from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)
load_dotenv(os.path.join(project_root, ".env"))

from campaign_ingest.store.schema import MIGRATIONS, apply_migrations

DATABASE_URL = os.getenv("DATABASE_URL")


def main():
    if not DATABASE_URL:
        print("Error: DATABASE_URL must be set in .env")
        sys.exit(1)

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    try:
        print(f"Applying migrations ({len(MIGRATIONS)} known)...")
        applied = apply_migrations(conn)
        if applied:
            print(f"Applied versions: {applied}")
        else:
            print("Schema already up to date.")

        with conn.cursor() as cur:
            cur.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'public' ORDER BY table_name;"
            )
            tables = cur.fetchall()
        print(f"\nTables: {[t[0] for t in tables]}")
    finally:
        conn.close()
    print("\nDone!")


if __name__ == "__main__":
    main()

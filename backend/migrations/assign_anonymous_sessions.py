"""Migration assigning chat sessions without an owner to an existing user."""

import argparse
import sqlite3
import sys

from chatrelay.core.config import settings
from chatrelay.db.database import sqlite_path

DB_PATH = sqlite_path(settings.database_url)


def run_migration(username: str) -> bool:
    """Give every ownerless session to the user with this username."""
    if not DB_PATH.exists():
        print(f"Database not found at: {DB_PATH}")
        print("Please run create_database.py first.")
        return False

    conn = sqlite3.connect(DB_PATH)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT id FROM User WHERE username = ?", (username,))
        row = cursor.fetchone()
        if not row:
            print(f"User {username!r} not found. Create the user first.")
            return False
        user_id = row[0]

        cursor.execute("SELECT COUNT(*) FROM ChatSession WHERE userId IS NULL")
        anonymous = cursor.fetchone()[0]
        print(f"Found {anonymous} anonymous sessions")

        if anonymous:
            cursor.execute("UPDATE ChatSession SET userId = ? WHERE userId IS NULL", (user_id,))
            conn.commit()
            print(f"Migrated {cursor.rowcount} sessions to {username}")

        cursor.execute("SELECT COUNT(*) FROM ChatSession")
        total = cursor.fetchone()[0]
        cursor.execute("SELECT COUNT(*) FROM ChatSession WHERE userId = ?", (user_id,))
        owned = cursor.fetchone()[0]
        print(f"Total sessions: {total}")
        print(f"Sessions owned by {username}: {owned}")
        return True

    except sqlite3.Error as e:
        print(f"Migration failed: {e}")
        conn.rollback()
        return False
    finally:
        conn.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--username", default="admin")
    args = parser.parse_args()
    sys.exit(0 if run_migration(args.username) else 1)

"""Create the chat SQLite database and optionally seed model configs."""

import argparse
import asyncio
import json
import sqlite3
from pathlib import Path

import databases

from chatrelay.core.config import settings
from chatrelay.db.database import sqlite_path
from chatrelay.db.queries import model_configs
from chatrelay.db.schema import SCHEMA_SQL
from chatrelay.schemas.chat import ProviderConfig
from chatrelay.services.credential_vault import CredentialVault

DB_PATH = sqlite_path(settings.database_url)


async def seed_model_configs(db: databases.Database, entries: list, vault: CredentialVault) -> int:
    """
    Insert model configs listed in a JSON file.

    Each entry needs displayName, modelIdentifier and baseUrl; providerKind,
    apiKey, contextWindowTokens and isActive are optional. API keys are
    encrypted before they are stored. Models that already have a config
    are skipped.
    """
    count = 0
    for entry in entries:
        if await model_configs.get_model_config(db, entry["modelIdentifier"]):
            print(f"Skipping existing model config: {entry['modelIdentifier']}")
            continue

        api_key = entry.get("apiKey")
        await model_configs.create_model_config(
            db,
            ProviderConfig(
                displayName=entry["displayName"],
                modelIdentifier=entry["modelIdentifier"],
                providerKind=entry.get("providerKind", "ollama"),
                baseUrl=entry["baseUrl"],
                encryptedApiKey=vault.encrypt(api_key) if api_key else None,
                contextWindowTokens=entry.get("contextWindowTokens", 4096),
                isActive=entry.get("isActive", True),
            ),
        )
        count += 1
    return count


async def seed_from_file(seed_file: Path) -> int:
    with open(seed_file) as f:
        entries = json.load(f)

    db = databases.Database(settings.database_url)
    await db.connect()
    try:
        return await seed_model_configs(db, entries, CredentialVault(settings.encryption_key or None))
    finally:
        await db.disconnect()


def create_database(seed_file: Path = None):
    """Create database with schema."""
    if DB_PATH.exists():
        print(f"Database already exists at: {DB_PATH}")
        response = input("Do you want to recreate it? (y/N): ")
        if response.lower() != 'y':
            print("Skipping database creation.")
            return

        DB_PATH.unlink()
        print("Deleted existing database.")

    conn = sqlite3.connect(DB_PATH)
    cursor = conn.cursor()

    # Enable foreign keys
    cursor.execute("PRAGMA foreign_keys = ON")

    # Execute schema
    cursor.executescript(SCHEMA_SQL)

    conn.commit()
    conn.close()

    print(f"Database created successfully at: {DB_PATH}")

    if seed_file:
        count = asyncio.run(seed_from_file(seed_file))
        print(f"Seeded {count} model config(s) from {seed_file}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--seed", type=Path, help="JSON file with model configs to insert")
    args = parser.parse_args()
    create_database(args.seed)

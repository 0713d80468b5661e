#!/usr/bin/env python3
"""Initialize the database and create the compactor's tables."""

import asyncio
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from compactor.config import get_settings
from compactor.storage.database import CompactorDatabase


async def main():
    settings = get_settings()
    print("Initializing database...")
    db = CompactorDatabase(settings)
    await db.init()
    try:
        await db.create_tables()
    finally:
        await db.close()
    print("Database initialized successfully!")
    print(
        f"Tables created: {settings.target_table}, "
        f"{settings.watermark_table}, {settings.lease_table}"
    )


if __name__ == "__main__":
    asyncio.run(main())

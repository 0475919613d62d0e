"""
Seed Catalog — Loads a GeoJSON point-of-sale file and optional login users.

Run:
  python scripts/seed_catalog.py --geojson data/puntos_venta.geojson
  python scripts/seed_catalog.py --geojson data/puntos_venta.geojson \
      --user c1:ana@dimeloc.mx:secret:collaborator
"""

import argparse
import asyncio
import json
from pathlib import Path

import structlog

from catalog.reader import replace_catalog_document
from core.config import get_settings
from core.security import USER_ROLES, hash_password
from db.models import User
from db.session import Database

logger = structlog.get_logger()


def parse_user_spec(spec: str) -> dict[str, str]:
    """Parse ``user_id:email:password[:role]``."""
    parts = spec.split(":")
    if len(parts) not in (3, 4):
        raise argparse.ArgumentTypeError(f"Invalid user spec '{spec}', expected id:email:password[:role]")
    user_id, email, password = parts[:3]
    role = parts[3] if len(parts) == 4 else "collaborator"
    if role not in USER_ROLES:
        raise argparse.ArgumentTypeError(f"Invalid role '{role}', expected one of {', '.join(USER_ROLES)}")
    return {"user_id": user_id, "email": email.strip().lower(), "password": password, "role": role}


async def seed(geojson_path: Path, users: list[dict[str, str]]) -> None:
    settings = get_settings()
    database = Database(settings.database_url, echo=settings.database_echo)
    await database.open()
    try:
        await database.create_all()
        document = json.loads(geojson_path.read_text(encoding="utf-8"))
        async with database.session() as db:
            count = await replace_catalog_document(db, document)
            for spec in users:
                db.add(
                    User(
                        user_id=spec["user_id"],
                        email=spec["email"],
                        name=spec["user_id"],
                        role=spec["role"],
                        password_hash=hash_password(spec["password"]),
                    )
                )
            await db.commit()
        logger.info("seed.complete", stores=count, users=len(users))
    finally:
        await database.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Load the store catalog GeoJSON")
    parser.add_argument("--geojson", type=Path, required=True)
    parser.add_argument("--user", type=parse_user_spec, action="append", default=[])
    args = parser.parse_args()
    asyncio.run(seed(args.geojson, args.user))


if __name__ == "__main__":
    main()

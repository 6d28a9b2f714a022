"""
Database seeding script for the initial admin.

Creates an admin user holding every well-known permission (unscoped) and
opens an admin session for it, printing the bearer token.
Run this script after database is set up but before first use.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.user import User
from backend.app.services import permissions, sessions
from backend.app.services.permissions import ALL_PERMISSIONS


async def seed_admin(email: str, origin_ip: str):
    """
    Seed the initial admin.

    Idempotent for the user and its grants; every run opens a fresh session.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting admin seeding...")

        result = await db.execute(select(User).where(User.email == email))
        admin_user = result.scalar_one_or_none()

        if admin_user:
            print(f"ℹ️  Admin user {email} already exists (id={admin_user.id})")
        else:
            admin_user = User(email=email, display_name="Administrator", is_active=True)
            db.add(admin_user)
            await db.commit()
            print(f"✅ Created admin user {email} (id={admin_user.id})")

        for permission in ALL_PERMISSIONS:
            await permissions.grant(db, user_id=admin_user.id, permission=permission, granted_by=admin_user.id)
        print(f"✅ Granted {len(ALL_PERMISSIONS)} permissions")

        session = await sessions.issue(db, user_id=admin_user.id, origin_ip=origin_ip, user_agent="seed-script")

        print("\n🎉 Admin seeding completed successfully!")
        print(f"\nBearer token (expires {session.expires_at.isoformat()} UTC):")
        print(f"  {session.token}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the initial admin user")
    parser.add_argument("--email", default="admin@marketplace.local")
    parser.add_argument("--origin-ip", default="127.0.0.1")
    args = parser.parse_args()
    asyncio.run(seed_admin(args.email, args.origin_ip))

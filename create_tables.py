"""
Script to create all database tables.

This script creates all tables defined in the models.
Use it for local development; deployments run the Alembic migrations.
"""
import asyncio
from syncengine.database import engine
from syncengine.models.base import Base

# Import all models to register them with Base
from syncengine.models import commerce, job_run, ndr, notification, tenant, user, webhook  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point."""
    print("Creating database tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())

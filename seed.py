import asyncio
import logging
import sys
from datetime import datetime, timedelta
from cluckhub import ledger, schemas
from cluckhub.database import engine, SessionLocal
from cluckhub.models import UserProfile, SensorReading, Base

logger = logging.getLogger(__name__)


async def seed_data(uid: str) -> bool:
    """Seed a demo farm for a Firebase uid. Returns False if the user already has a profile."""
    async with SessionLocal() as session:
        if await session.get(UserProfile, uid):
            logger.info("Profile %s already exists. Skipping.", uid)
            return False

        logger.info("Seeding demo farm for %s...", uid)
        session.add(UserProfile(id=uid, farm_name="Demo Farm", currency="USD"))
        session.add(SensorReading(owner_id=uid, temperature=24.0, humidity=60.0, ammonia_level=15.0))
        await session.commit()

        today = datetime.utcnow().date()
        await ledger.create_flock(session, uid, schemas.FlockCreate(
            breed="Cobb 500", type=schemas.FlockTypeEnum.Broiler,
            count=500, initial_count=500,
            hatch_date=today - timedelta(weeks=4), average_weight=1.2,
        ))
        await ledger.create_flock(session, uid, schemas.FlockCreate(
            breed="ISA Brown", type=schemas.FlockTypeEnum.Layer,
            count=300, initial_count=300,
            hatch_date=today - timedelta(weeks=24), average_weight=1.8,
        ))
        logger.info("Seeding Complete!")
        return True


async def main(uid: str):
    # Ensure tables exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await seed_data(uid)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) != 2:
        sys.exit("usage: python seed.py <firebase-uid>")
    asyncio.run(main(sys.argv[1]))

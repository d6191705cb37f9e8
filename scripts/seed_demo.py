#!/usr/bin/env python3
"""Seed a demo tenant with services and a blackout date.

Usage:
    # With DATABASE_URL set (or the POSTGRES_* variables):
    python scripts/seed_demo.py

    # Custom number callers dial:
    python scripts/seed_demo.py --phone +15551234567
"""

import argparse
import asyncio
import os
import sys
from datetime import date, timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def main(phone: str, name: str) -> None:
    """Create (or refresh) the demo tenant."""
    from sqlalchemy import select

    from receptionist.db.redis import close_redis
    from receptionist.db.session import AsyncSessionLocal, engine
    from receptionist.models import BlackoutDate, Service, Tenant, default_working_hours
    from receptionist.services.tenants import TenantDirectory

    async with AsyncSessionLocal() as session:
        result = await session.execute(select(Tenant).where(Tenant.phone_number == phone))
        tenant = result.scalar_one_or_none()

        if tenant is None:
            tenant = Tenant(name=name, phone_number=phone)
            session.add(tenant)
            print(f"Creating tenant {name} ({phone})")
        else:
            print(f"Updating tenant {tenant.name} ({tenant.id})")

        tenant.business_type = "dental_clinic"
        tenant.timezone = "America/New_York"
        tenant.greeting_message = f"Thank you for calling {name}. How can I help you today?"
        tenant.system_prompt = "Our clinic offers cleanings, check-ups and whitening. Parking is free."
        tenant.working_hours = default_working_hours()
        tenant.slot_duration_minutes = 30
        tenant.buffer_minutes = 10
        tenant.fallback_phone = "+15550000000"
        await session.flush()

        existing = await session.execute(select(Service.name).where(Service.tenant_id == tenant.id))
        existing_names = set(existing.scalars().all())
        for service_name, price_cents in (("Cleaning", 9000), ("Check-up", 6000), ("Whitening", 25000)):
            if service_name not in existing_names:
                session.add(Service(tenant_id=tenant.id, name=service_name, price_cents=price_cents))

        holiday = date.today() + timedelta(days=14)
        blackout = await session.execute(
            select(BlackoutDate).where(BlackoutDate.tenant_id == tenant.id, BlackoutDate.day == holiday)
        )
        if blackout.scalar_one_or_none() is None:
            session.add(BlackoutDate(tenant_id=tenant.id, day=holiday, reason="Staff training"))

        await session.commit()
        # Live calls must not keep answering from the old snapshot
        await TenantDirectory(AsyncSessionLocal).invalidate(tenant.id)

        print(f"Tenant id: {tenant.id}")
        print(f"Twilio stream URL: wss://<host>/ws/telephony/twilio?tenant_id={tenant.id}")
        print(f"Exotel stream URL: wss://<host>/ws/telephony/exotel?tenant_id={tenant.id}")

    await engine.dispose()
    await close_redis()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--phone", default="+15551234567")
    parser.add_argument("--name", default="Bright Smile Dental")
    args = parser.parse_args()

    asyncio.run(main(args.phone, args.name))

"""Database seed script: creates and schedules a demo welcome flow.

Welcome email, wait two days, then a reminder to subjects who did not open
the welcome email.

Run: python -m scripts.seed [--subjects 5] [--in-minutes 1]
"""

import argparse
import asyncio
import sys
import os
from datetime import timedelta

# Ensure project root is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

DEMO_FLOW_NAME = "Demo: Welcome series"

DEMO_DEFINITION = {
    "nodes": [
        {"id": "start", "type": "start", "data": {}},
        {
            "id": "welcome",
            "type": "action",
            "data": {"channel": "email", "template": "welcome", "subject": "Welcome aboard!"},
        },
        {"id": "wait", "type": "delay", "data": {"amount": 2, "unit": "days"}},
        {
            "id": "opened",
            "type": "condition",
            "data": {"predicateType": "action_opened", "params": {}},
        },
        {
            "id": "reminder",
            "type": "action",
            "data": {"channel": "email", "template": "reminder", "subject": "Did you miss this?"},
        },
        {"id": "end", "type": "end", "data": {}},
    ],
    "edges": [
        {"source": "start", "target": "welcome"},
        {"source": "welcome", "target": "wait"},
        {"source": "wait", "target": "opened"},
        {"source": "opened", "target": "end", "branch": "true"},
        {"source": "opened", "target": "reminder", "branch": "false"},
        {"source": "reminder", "target": "end"},
    ],
}


def demo_audience(count: int) -> list[dict]:
    return [
        {
            "subject_id": f"demo-subject-{i}",
            "context": {"email": f"demo{i}@example.com", "first_name": f"Demo {i}"},
        }
        for i in range(1, count + 1)
    ]


async def seed(subjects: int = 5, in_minutes: int = 1):
    """Seed the database with the demo flow, scheduled ``in_minutes`` from now."""
    from sqlalchemy import select

    from core.utils import utcnow
    from db.database import AsyncSessionLocal, init_db
    from db.models.flow import Flow
    from services.flow_service import FlowService

    await init_db()

    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Flow).where(Flow.name == DEMO_FLOW_NAME))
        flow = result.scalar_one_or_none()

        svc = FlowService(db)
        if not flow:
            flow = await svc.create_flow(
                name=DEMO_FLOW_NAME,
                description="Welcome email with a reminder for non-openers",
                definition=DEMO_DEFINITION,
            )
            print(f"[seed] Created flow: {flow.name} ({flow.id})")
        else:
            print(f"[seed] Flow exists: {flow.name} ({flow.id})")

        await svc.set_audience(flow.id, demo_audience(subjects))
        scheduled_at = utcnow() + timedelta(minutes=in_minutes)
        await svc.schedule(flow.id, scheduled_at)
        await db.commit()

        print(f"[seed] Scheduled for {scheduled_at.isoformat()} with {subjects} subject(s)")
        print("[seed] Database seeded successfully!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed a demo campaign flow")
    parser.add_argument("--subjects", type=int, default=5)
    parser.add_argument("--in-minutes", type=int, default=1)
    args = parser.parse_args()
    asyncio.run(seed(args.subjects, args.in_minutes))

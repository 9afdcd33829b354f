"""Generate realistic fake page views and custom events for development and demos.

Usage:
    python -m scripts.seed_events --project-name "Demo site" [--days 7] [--sessions 500]
    python -m scripts.seed_events --project-id 1 --days 30 --sessions 2000
"""

import argparse
import asyncio
import random
import sys
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.db.base import Base
from app.db.session import AsyncSessionLocal, engine
from app.models.event import Event, EventKind
from app.models.project import Project

PAGES = [
    "/",
    "/pricing",
    "/features",
    "/about",
    "/blog",
    "/blog/getting-started",
    "/blog/best-practices",
    "/docs",
    "/docs/api",
    "/signup",
    "/login",
    "/dashboard",
]

CUSTOM_EVENTS = [
    ("button_click", 40),
    ("form_submit", 20),
    ("signup", 15),
    ("login", 10),
    ("purchase", 10),
    ("logout", 5),
]

REFERRERS = [
    "https://google.com/search?q=analytics",
    "https://twitter.com/",
    "https://github.com/",
    "https://news.ycombinator.com/item?id=1",
    "",
    "",
    "",
]

COUNTRIES = ["US", "DE", "GB", "FR", "IN", "BR", "JP", None]
BROWSERS = ["Chrome", "Safari", "Firefox", "Edge", None]
OPERATING_SYSTEMS = ["macOS", "Windows", "iOS", "Android", "Linux"]
DEVICES = ["desktop", "desktop", "mobile", "mobile", "tablet", None]


def _payload_for(name: str) -> dict | None:
    if name == "button_click":
        return {"button_id": random.choice(["cta", "nav", "signup", "pricing"])}
    if name == "purchase":
        return {
            "amount": random.choice([9.99, 29.99, 49.99, 99.99]),
            "plan": random.choice(["starter", "pro", "enterprise"]),
        }
    if name == "signup":
        return {"method": random.choice(["email", "google", "github"])}
    return None


def generate_session(project_id: int, start: datetime) -> list[Event]:
    """One visit: a run of page views with a few custom events sprinkled in."""
    session_id = f"sess_{uuid.uuid4().hex[:16]}"
    country = random.choice(COUNTRIES)
    browser = random.choice(BROWSERS)
    os_name = random.choice(OPERATING_SYSTEMS)
    device = random.choice(DEVICES)
    referrer = random.choice(REFERRERS) or None

    names = [e[0] for e in CUSTOM_EVENTS]
    weights = [e[1] for e in CUSTOM_EVENTS]

    records = []
    ts = start
    # Roughly 40% of visits bounce after one page
    views = 1 if random.random() < 0.4 else random.randint(2, 8)
    for i in range(views):
        path = random.choice(PAGES)
        common = dict(
            project_id=project_id,
            session_id=session_id,
            url=f"https://example.com{path}",
            path=path,
            referrer=referrer if i == 0 else None,
            country=country,
            browser=browser,
            os=os_name,
            device=device,
        )
        records.append(Event(kind=EventKind.PAGEVIEW.value, timestamp=ts, **common))
        if random.random() < 0.25:
            name = random.choices(names, weights=weights, k=1)[0]
            records.append(
                Event(
                    kind=EventKind.EVENT.value,
                    name=name,
                    payload=_payload_for(name),
                    timestamp=ts + timedelta(seconds=random.randint(1, 20)),
                    **common,
                )
            )
        ts += timedelta(seconds=random.randint(5, 300))
    return records


async def seed(project_id: int | None, project_name: str, sessions: int, days: int) -> int:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    now = datetime.now(timezone.utc)
    start = now - timedelta(days=days)
    total = 0

    async with AsyncSessionLocal() as db:
        if project_id is None:
            project = Project(name=project_name, domain="example.com")
            db.add(project)
            await db.flush()
            project_id = project.id
            print(f"Created project {project_id} ({project_name})")
        else:
            result = await db.execute(select(Project.id).where(Project.id == project_id))
            if result.scalar_one_or_none() is None:
                print(f"  Error: project {project_id} does not exist", file=sys.stderr)
                sys.exit(1)

        for n in range(sessions):
            visit_start = start + timedelta(seconds=random.randint(0, days * 86400))
            records = generate_session(project_id, visit_start)
            db.add_all(records)
            total += len(records)
            if (n + 1) % 100 == 0:
                await db.flush()
                print(f"  Generated {n + 1}/{sessions} sessions")
        await db.commit()

    await engine.dispose()
    return total


def main():
    parser = argparse.ArgumentParser(description="Seed analytics events")
    parser.add_argument("--project-id", type=int, default=None, help="Existing project id")
    parser.add_argument("--project-name", default="Demo site", help="Name for a new project")
    parser.add_argument("--sessions", type=int, default=500, help="Number of visits")
    parser.add_argument("--days", type=int, default=7, help="Days of history")
    args = parser.parse_args()

    print(f"Generating {args.sessions} sessions over {args.days} days...")
    total = asyncio.run(seed(args.project_id, args.project_name, args.sessions, args.days))
    print(f"Done! Seeded {total} records.")


if __name__ == "__main__":
    main()

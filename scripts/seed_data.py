#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for exercising the stats system.

Creates:
  • 10 users (free + premium) with a few weeks of login history
  • 30 stories across 6 categories (25 published, 5 drafts)
  • Likes, ratings, comments and views, all sent through the API so the
    incremental counters are maintained the way production traffic does it
  • One inline recompute to fill the stats cache

Users, stories and login logs have no write endpoints, so they are inserted
straight into the database (DATABASE_URL). Run after docker compose up:
  python scripts/seed_data.py --api-url http://localhost:8000
"""
import argparse
import asyncio
import json
import random
import time
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass
from datetime import timedelta

from storystats.database import Database
from storystats.models import LoginLog, Story, User, utcnow


BASE_USERS = [
    ("alice_reads", "premium", "United States"),
    ("bob_writes", "free", "Mexico"),
    ("carol_chapters", "premium", "India"),
    ("dave_drafts", "free", "South Korea"),
    ("eve_epics", "free", "United States"),
    ("frank_fables", "premium", "United Kingdom"),
    ("grace_genres", "free", "China"),
    ("henry_haiku", "free", "Brazil"),
    ("iris_ink", "premium", "Germany"),
    ("jack_journals", "free", "India"),
]

CATEGORIES = ["fantasy", "mystery", "romance", "sci-fi", "horror", "poetry"]

SAMPLE_TITLES = [
    "The Lighthouse at the End of the Map",
    "Nine Letters to a Stranger",
    "What the River Forgot",
    "Clockwork Orchard",
    "A Quiet Kind of Haunting",
    "The Last Train to Solace",
    "Salt and Starlight",
    "The Cartographer's Daughter",
    "Small Hours",
    "Echoes Under Glass",
]

SAMPLE_COMMENTS = [
    "Couldn't stop reading, please post the next chapter!",
    "The twist at the end got me.",
    "Beautiful prose, the imagery is stunning.",
    "I'd love more backstory on the narrator.",
    "Read this twice already.",
]


@dataclass
class ApiClient:
    base_url: str

    def send(self, method: str, path: str, data: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode() if data is not None else None
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=30) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            body = e.read().decode()
            print(f"  HTTP {e.code} on {method} {path}: {body}")
            return {}

    def post(self, path: str, data: dict | None = None) -> dict:
        return self.send("POST", path, data)

    def put(self, path: str, data: dict) -> dict:
        return self.send("PUT", path, data)

    def get(self, path: str) -> dict:
        return self.send("GET", path)


def wait_for_api(client: ApiClient, retries: int = 15) -> None:
    print(f"Waiting for API at {client.base_url} ...")
    for _ in range(retries):
        try:
            result = client.get("/health")
            if result.get("status") == "ok":
                print("  API is ready!\n")
                return
        except OSError:
            pass
        time.sleep(3)
    raise RuntimeError(f"API not reachable at {client.base_url} after {retries} retries")


async def seed_database() -> tuple[list[str], list[str]]:
    """Insert users, stories and login logs; return (user_ids, published story ids)."""
    db = Database()
    await db.init_schema()
    now = utcnow()

    users = [
        User(
            user_id=str(uuid.uuid4()),
            username=username,
            user_type=user_type,
            country=country,
            created_at=now - timedelta(days=random.randint(0, 60)),
        )
        for username, user_type, country in BASE_USERS
    ]
    stories = []
    for i in range(30):
        stories.append(
            Story(
                story_id=str(uuid.uuid4()),
                title=f"{SAMPLE_TITLES[i % len(SAMPLE_TITLES)]} #{i + 1}",
                author=random.choice(users).username,
                category=random.choice(CATEGORIES),
                access_level=random.choice(["free", "free", "premium"]),
                published=i < 25,
                created_at=now - timedelta(days=random.randint(0, 45)),
            )
        )
    logins = [
        LoginLog(
            user_id=user.user_id,
            success=random.random() > 0.1,
            country=user.country,
            created_at=now - timedelta(days=random.randint(0, 30), hours=random.randint(0, 23)),
        )
        for user in users
        for _ in range(random.randint(3, 12))
    ]

    async with db.session() as session:
        session.add_all(users)
        session.add_all(stories)
        session.add_all(logins)
    await db.dispose()

    return [u.user_id for u in users], [s.story_id for s in stories if s.published]


def main(api_url: str) -> None:
    client = ApiClient(api_url)
    wait_for_api(client)

    # ── Users, stories, login history ────────────────────────────────────
    print("Inserting users, stories and login history...")
    user_ids, story_ids = asyncio.run(seed_database())
    print(f"  ✓ {len(user_ids)} users, {len(story_ids)} published stories")

    # ── Interactions through the API ──────────────────────────────────────
    print("\nAdding likes, ratings, comments and views...")
    likes = ratings = comments = views = 0
    for story_id in story_ids:
        for user_id in random.sample(user_ids, k=random.randint(0, 6)):
            client.post(f"/stories/{story_id}/like", {"user_id": user_id})
            likes += 1
        for user_id in random.sample(user_ids, k=random.randint(0, 6)):
            client.put(
                f"/stories/{story_id}/rating",
                {"user_id": user_id, "rating": random.randint(1, 5)},
            )
            ratings += 1
        for user_id in random.sample(user_ids, k=random.randint(0, 3)):
            client.post(
                f"/stories/{story_id}/comments",
                {"user_id": user_id, "content": random.choice(SAMPLE_COMMENTS)},
            )
            comments += 1
        for _ in range(random.randint(5, 40)):
            client.post(f"/stories/{story_id}/views", {"viewer_id": random.choice(user_ids)})
            views += 1
    print(f"  ✓ {likes} likes, {ratings} ratings, {comments} comments, {views} views")

    # ── Fill the stats cache ──────────────────────────────────────────────
    print("\nRunning a full recompute...")
    report = client.post("/admin/stats/recompute")
    print(
        f"  ✓ processed={report.get('processed')} updated={report.get('updated')} "
        f"failed={report.get('failed')}"
    )

    # ── Print summary ─────────────────────────────────────────────────────
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    s = story_ids[0]
    print("# Stats for one story:")
    print(f"  curl -s '{api_url}/stories/{s}/stats' | python3 -m json.tool\n")
    print("# Listing stats for several stories:")
    print(f"  curl -s '{api_url}/stories/stats?ids={','.join(story_ids[:5])}' | python3 -m json.tool\n")
    print("# Admin dashboard:")
    print(f"  curl -s '{api_url}/admin/dashboard?window=last_month' | python3 -m json.tool\n")
    print("# Stats cache health:")
    print(f"  curl -s '{api_url}/admin/stats-cache/status' | python3 -m json.tool\n")
    print("# Check Jaeger traces: http://localhost:16686")
    print("# Check Prometheus: http://localhost:9090")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the Story Stats system")
    parser.add_argument("--api-url", default="http://localhost:8000", help="API base URL")
    args = parser.parse_args()
    main(args.api_url)

# scripts/list_dead_letters.py
import argparse
import asyncio
import json
from app.core.db import init_db, close_db
from app.models.dead_letter import DeadLetterEntry, DeadLetterSource


async def list_dead_letters(source: str = None, include_resolved: bool = False, limit: int = 50):
    query = DeadLetterEntry.all().order_by("-created_at").limit(limit)
    if source:
        query = query.filter(source_type=DeadLetterSource(source.upper()))
    if not include_resolved:
        query = query.filter(resolved_at__isnull=True)
    return await query


async def main(args):
    await init_db(generate_schemas=False)
    try:
        entries = await list_dead_letters(args.source, args.all, args.limit)
        for entry in entries:
            print(json.dumps({
                "id": str(entry.id),
                "sourceType": entry.source_type.value,
                "sourceId": entry.source_id,
                "reason": entry.reason,
                "createdAt": str(entry.created_at),
                "resolvedAt": str(entry.resolved_at) if entry.resolved_at else None,
                "payloadSnapshot": entry.payload_snapshot,
            }))
        print(f"{len(entries)} dead letter(s).")
    finally:
        await close_db()

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="List dead-lettered commands and events for triage.")
    parser.add_argument("--source", choices=["command", "event"], help="Only one source type.")
    parser.add_argument("--all", action="store_true", help="Include entries already resolved by replay tooling.")
    parser.add_argument("--limit", type=int, default=50)
    asyncio.run(main(parser.parse_args()))

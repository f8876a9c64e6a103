"""Print the current queue, pending attempts and open chats as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

import redis.asyncio as redis

from libertalk.domain.matchmaking.stats import StatsAggregator
from libertalk.domain.matchmaking.store import MatchStore, PENDING_ATTEMPTS_INDEX
from libertalk.settings import settings


async def dump(url: str) -> dict:
	client = redis.Redis.from_url(url, decode_responses=True)
	try:
		store = MatchStore(client)
		entries = await store.list_entries()
		attempts = []
		for match_id in await client.zrange(PENDING_ATTEMPTS_INDEX, 0, -1):
			attempt = await store.get_attempt(match_id)
			if attempt is not None:
				attempts.append(asdict(attempt))
		chats = []
		for chat_id in await store.open_chat_ids():
			chat = await store.get_chat(chat_id)
			if chat is not None:
				chats.append(asdict(chat))
		stats = await StatsAggregator(store).snapshot()
	finally:
		await client.aclose()
	return {
		"entries": [
			{**asdict(entry), "previous_partners": sorted(entry.previous_partners)} for entry in entries
		],
		"pending_attempts": attempts,
		"open_chats": chats,
		"stats": asdict(stats),
	}


def main() -> None:
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument("--redis-url", default=settings.redis_url)
	args = parser.parse_args()
	print(json.dumps(asyncio.run(dump(args.redis_url)), indent=2, sort_keys=True))


if __name__ == "__main__":
	main()

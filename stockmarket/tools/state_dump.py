"""CLI: print the current state tree for the configured namespace as JSON."""

from __future__ import annotations

import argparse
import asyncio
import json

from stockmarket.config import get_settings
from stockmarket.state import RedisStateStore


async def _amain(prefix: str | None) -> None:
    settings = get_settings()
    store = RedisStateStore(settings.redis_url)
    try:
        states = await store.dump(prefix or settings.state_namespace)
        print(json.dumps(states, indent=2, default=str))
    finally:
        await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Dump stockmarket state leaves")
    parser.add_argument("prefix", nargs="?", help="Path prefix (default: configured namespace)")
    asyncio.run(_amain(parser.parse_args().prefix))

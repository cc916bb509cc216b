#!/usr/bin/env python3
"""Print every persisted checkpoint, and the chain head when the RPC endpoint is configured."""

import asyncio
import json

from indexer.core.config import get_settings
from indexer.db import make_engine
from indexer.services.rpc import SorobanRpcClient
from indexer.services.state_manager import StateManager


async def latest_ledger(url: str):
    client = SorobanRpcClient(url, timeout=10.0)
    try:
        return await client.get_latest_ledger()
    except Exception as e:
        print(f"Could not fetch latest ledger: {e}")
        return None
    finally:
        await client.aclose()


def show_state():
    settings = get_settings()
    engine = make_engine(settings.DATABASE_URL)
    try:
        states = StateManager(engine).get_all_states()
    finally:
        engine.dispose()

    head = asyncio.run(latest_ledger(settings.STELLAR_RPC_URL)) if settings.STELLAR_RPC_URL else None

    rows = []
    for state in states:
        row = state.to_dict()
        if head is not None:
            row["ledgers_behind"] = head - int(state.last_position)
        rows.append(row)

    print(json.dumps({"latest_ledger": head, "checkpoints": rows}, indent=2))
    if not rows:
        print("No checkpoints yet")


if __name__ == "__main__":
    show_state()

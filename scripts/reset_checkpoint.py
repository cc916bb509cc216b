#!/usr/bin/env python3
"""
Delete the checkpoint of one source so it is re-indexed from the configured
start (INDEXER_START_LEDGER, or the chain head when unset).

Usage:
    python scripts/reset_checkpoint.py token_factory
    python scripts/reset_checkpoint.py amm_factory --yes

Stop the indexer first: a running process keeps writing checkpoints.
"""

import argparse
import sys

from indexer.core.config import get_settings
from indexer.db import make_engine
from indexer.services.state_manager import StateManager


def reset_checkpoint(source_id: str, assume_yes: bool = False) -> int:
    settings = get_settings()
    if not settings.DATABASE_URL:
        print("DATABASE_URL is not set")
        return 1

    engine = make_engine(settings.DATABASE_URL)
    state_manager = StateManager(engine)
    try:
        current = state_manager.get_state(source_id)
        if current is None:
            print(f"No checkpoint for {source_id}")
            return 0

        print(f"{source_id}: position {current.last_position} (event {current.last_event_id})")
        if not assume_yes:
            answer = input("Delete this checkpoint and force a full re-index? [y/N] ")
            if answer.strip().lower() != "y":
                print("Aborted")
                return 1

        state_manager.reset_state(source_id)
        print(f"Checkpoint for {source_id} deleted")
        return 0
    finally:
        engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reset an indexer checkpoint")
    parser.add_argument("source_id", help="Source to reset (token_factory, amm_factory)")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()
    sys.exit(reset_checkpoint(args.source_id, assume_yes=args.yes))

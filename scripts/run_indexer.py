#!/usr/bin/env python3
"""Run the indexer supervisor in the foreground (same as the `indexer` console script)."""

from indexer.main import main

if __name__ == "__main__":
    main()

"""Script to resume or fail files left in processing by a crashed worker."""

import argparse
import asyncio
import logging
import sys

sys.path.insert(0, ".")

from stemflow.db.session import create_session_maker
from stemflow.services.orchestrator import build_orchestrator


async def main(stale_after: float):
    """Run one reconciliation sweep and print what happened to each file."""
    orchestrator = build_orchestrator(create_session_maker())

    print(f"Reconciling files idle for more than {stale_after:.0f}s...")
    results = await orchestrator.reconcile(stale_after)

    if not results:
        print("Nothing to reconcile.")
        return

    print("\n" + "=" * 60)
    for result in results:
        line = f"File {result.file_id}: {result.state.value}"
        if result.error_message:
            line += f" ({result.error_message})"
        elif result.is_partial:
            line += f" ({result.fetched_count}/{result.expected_count} outputs)"
        print(line)
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--stale-after",
        type=float,
        default=1800,
        help="Seconds without task updates before a file counts as stuck",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(main(args.stale_after))

"""CLI helper for pushing locally stored top scores to Supabase."""

from __future__ import annotations

import logging
import sys
from typing import Dict

from leaderboard_core.store import ScoreStore


def _format_section(name: str, stats: Dict[str, object]) -> str:
    synced = stats.get("synced", 0)
    remaining = stats.get("remaining", 0)
    errors = stats.get("errors", [])
    lines = [f"{name}: {synced} synced, {remaining} remaining"]
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    store = ScoreStore()
    try:
        summary = store.sync_local_backlog()
    except RuntimeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    stats = summary.get("scores", {})
    print(_format_section("Top scores", stats))

    return 1 if stats.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())

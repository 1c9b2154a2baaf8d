#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from inboxai.dependencies import get_orchestrator
from inboxai.services.config import get_settings, llm_enabled
from inboxai.services.database import init_db
from inboxai.services.job_state import JobMode


async def _run(mode: str, email_id: str | None, verbose: bool) -> int:
    await init_db()
    orchestrator = get_orchestrator()

    def show(event: dict) -> None:
        if event["type"] == "step" and not verbose:
            return
        print(json.dumps(event, ensure_ascii=False, default=str))

    unsubscribe = orchestrator.subscribe(show)
    try:
        if email_id:
            snapshot = await orchestrator.start_single(email_id)
        else:
            snapshot = await orchestrator.start_batch(JobMode.parse(mode))

        if not snapshot.is_running:
            print("Nothing to process")
            return 0

        final = await orchestrator.wait_idle()
    finally:
        unsubscribe()

    print(f"Processed: {final.processed}/{final.total}, failed: {final.failed}")
    return 1 if final.failed else 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run AI processing for the inbox from CLI")
    parser.add_argument("mode", nargs="?", default="batch", choices=["batch", "process", "recalculate"])
    parser.add_argument("--email-id", help="Reprocess a single email instead of a batch")
    parser.add_argument("--verbose", action="store_true", help="Also print agent step events")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=get_settings().log_level.upper())
    if not llm_enabled():
        print("OPENAI_API_KEY is not configured")
        raise SystemExit(1)
    raise SystemExit(asyncio.run(_run(args.mode, args.email_id, args.verbose)))


if __name__ == "__main__":
    main()

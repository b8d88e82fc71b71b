"""CLI entry point for the Lumo assistant.

A terminal chat loop that runs messages through the full pipeline (web
channel, so replies are printed instead of delivered).  For production, use
the FastAPI server (``lumo/server.py``).

Usage:
    python -m lumo.main                 # normal mode (quiet)
    python -m lumo.main --debug         # debug mode (shows pipeline and HTTP logs)
    python -m lumo.main --name Asha     # chat as a named visitor
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import uuid

from dotenv import load_dotenv

from lumo.config import ASSISTANT_NAME
from lumo.pipeline import Channel, InboundMessage, create_message_pipeline

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("lumo").setLevel(logging.DEBUG if debug else logging.INFO)


async def _chat_loop(name: str) -> None:
    pipeline = create_message_pipeline()
    identity = f"cli-{uuid.uuid4().hex[:8]}"
    logger.info("Started CLI session as %s", identity)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You: ")).strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            if user_input.lower() == "new":
                identity = f"cli-{uuid.uuid4().hex[:8]}"
                print(f"\n>> New visitor identity: {identity}\n")
                continue

            result = await pipeline.process(
                InboundMessage(
                    identity=identity,
                    text=user_input,
                    display_name=name,
                    channel=Channel.WEB,
                )
            )
            if result.reply:
                print(f"\n{ASSISTANT_NAME}: {result.reply}\n")
            else:
                print(f"\n({result.action}: no reply)\n")
    finally:
        await pipeline.delivery.aclose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Lumo assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--name", default="CLI Visitor", help="Display name to chat as")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print(f"  {ASSISTANT_NAME} Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new visitor identity.")
    print("=" * 60 + "\n")

    try:
        asyncio.run(_chat_loop(args.name))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()

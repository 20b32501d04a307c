"""Allow `python -m chatpilot` to launch the agent."""

import asyncio
import sys

from chatpilot.main import main


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()

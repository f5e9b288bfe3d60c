import asyncio
import sys

from .cli import main


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

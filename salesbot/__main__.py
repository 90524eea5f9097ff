"""Run the salesbot gateway: ``python -m salesbot``."""

import asyncio

from salesbot.app import run_gateway


def main() -> None:
    try:
        asyncio.run(run_gateway())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

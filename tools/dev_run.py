"""Local launcher for the realtime service.

Example:
  python tools/dev_run.py                 # serve on :8001 with reload
  python tools/dev_run.py --port 9000 --no-reload

Picks up `.env` from the repository root through the service settings.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn


logger = logging.getLogger("devrun")

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "services" / "realtime" / "src"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the realtime service locally")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8001)
    parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s - %(message)s")
    if str(SRC_DIR) not in sys.path:
        sys.path.insert(0, str(SRC_DIR))

    logger.info("Starting realtime service on %s:%s", args.host, args.port)
    uvicorn.run(
        "livepoll_realtime.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        reload_dirs=[str(SRC_DIR)],
        app_dir=str(SRC_DIR),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

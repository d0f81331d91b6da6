import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

import uvicorn

from filing_sync.config import load_config


def main() -> None:
    ap = argparse.ArgumentParser(description="Serve the filing sync API (/sync, /sync/form345, /health).")
    ap.add_argument("--host", default=os.environ.get("API_HOST", "127.0.0.1"))
    ap.add_argument("--port", type=int, default=int(os.environ.get("API_PORT", "8000")))
    ap.add_argument("--reload", action="store_true", help="auto-reload on code changes (development)")
    args = ap.parse_args()

    cfg = load_config()
    # Behind a reverse proxy uvicorn must also trust X-Forwarded-For for client IPs.
    uvicorn.run(
        "filing_sync.api.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        proxy_headers=cfg.TRUST_PROXY_HEADERS,
    )


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""GreenOps Dashboard API.

Launch: python3 run_dashboard.py
Serves at http://0.0.0.0:8000 (or PORT env var)
"""

import logging

import uvicorn

from greenops_dashboard.config import (
    GOOGLE_CLIENT_ID,
    HOST,
    LOG_LEVEL,
    PORT,
    SUPABASE_URL,
    TOKEN_ENCRYPTION_KEY,
)


def main():
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("=" * 60)
    print("  GreenOps Dashboard API")
    print("=" * 60)

    missing = [name for name, value in [
        ("SUPABASE_URL", SUPABASE_URL),
        ("GOOGLE_CLIENT_ID", GOOGLE_CLIENT_ID),
        ("TOKEN_ENCRYPTION_KEY", TOKEN_ENCRYPTION_KEY),
    ] if not value]
    if missing:
        print(f"\n  WARNING: not set: {', '.join(missing)}")
        print("  Continuing anyway for local development...\n")

    print(f"Starting server on {HOST}:{PORT}")
    print("  Press Ctrl+C to stop\n")

    from greenops_dashboard.app import create_app
    app = create_app()
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()

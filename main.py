"""
main.py: Server launcher and entry point.

Run this file to start the pricing API:

    python main.py

Interactive API docs are served at http://127.0.0.1:8000/docs

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import uvicorn

from venue_pricing.utils.config import get_settings
from venue_pricing.utils.logger import uvicorn_log_level


HOST = "127.0.0.1"
PORT = 8000


def main() -> None:
    """Start the venue pricing server."""
    settings = get_settings()
    print("=" * 60)
    print(f"  {settings.app_name} v{settings.app_version}")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print(f"  Database : {settings.database_path}")
    print(f"  Timezone : {settings.default_timezone}")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Start uvicorn; this blocks until CTRL+C
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=True,
        log_level=uvicorn_log_level(settings.log_level),
    )


if __name__ == "__main__":
    main()

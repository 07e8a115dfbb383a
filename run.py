"""
Tally Dashboard Sync
Application Runner
"""

import argparse
import os

import uvicorn

from tally_dashboard.config import load_config
from tally_dashboard.utils.constants import APP_NAME, APP_VERSION


def main():
    parser = argparse.ArgumentParser(description=APP_NAME)
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--host", default=None, help="Host to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to bind")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()
    config = load_config(args.config)
    host = args.host or config.api.host
    port = args.port or config.api.port

    # create_app() reads the file again inside the server process
    os.environ["TALLY_DASHBOARD_CONFIG"] = args.config

    print(f"""
    ============================================================
    |              {APP_NAME} v{APP_VERSION}
    ============================================================
    |  Server: http://{host}:{port}
    |  Docs:   http://{host}:{port}/docs
    |  Tally:  {config.tally.server}:{config.tally.port}
    ============================================================
    """)

    uvicorn.run(
        "tally_dashboard.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=args.reload
    )


if __name__ == "__main__":
    main()

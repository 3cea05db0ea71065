"""Console entry point: serve the API with uvicorn and exit with the shutdown status."""

from __future__ import annotations

import logging
import os
import sys

import uvicorn

from .configuration import get_config_container


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app_config = get_config_container()["app"]

    from .main import app

    server = uvicorn.Server(uvicorn.Config(app, host=app_config["host"], port=int(app_config["port"])))
    logging.getLogger(__name__).info("Health check: http://localhost:%s/health", app_config["port"])
    server.run()
    sys.exit(app.state.exit_code)


if __name__ == "__main__":
    main()

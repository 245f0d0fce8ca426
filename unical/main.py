from __future__ import annotations

import logging
import os
import sys

import uvicorn


def setup_logging(level: str | None = None) -> None:
    level_name = (level or os.getenv("UNICAL_LOG_LEVEL", "INFO")).upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(level_name)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level_name)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    if not root_logger.hasHandlers():
        root_logger.addHandler(console_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("caldav").setLevel(logging.WARNING)


def main() -> None:
    setup_logging()
    host = os.getenv("UNICAL_HOST", "0.0.0.0")
    port = int(os.getenv("UNICAL_PORT", "8080"))
    uvicorn.run("unical.web_api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()

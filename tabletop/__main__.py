"""Run the API server: ``python -m tabletop``."""

from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    uvicorn.run(
        "tabletop.api.main:app",
        host=os.getenv("TABLETOP_HOST", "0.0.0.0"),
        port=int(os.getenv("TABLETOP_PORT", "8000")),
    )


if __name__ == "__main__":
    main()

"""Executable entrypoint for the gateway service."""

from __future__ import annotations

import logging
import os

import uvicorn

from .config import gateway_config


def _init_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:  # pragma: no cover - CLI entrypoint
    _init_logging()
    cfg = gateway_config()
    uvicorn.run(
        "wagateway.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover
    main()

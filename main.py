"""Tutorlink settlement entrypoint.

- Loads `.env` files, configures logging, and exposes the ASGI `app`
- `python main.py` serves it with uvicorn; `--mode print-config` dumps settings
"""
from __future__ import annotations

import argparse
import json
import logging

import uvicorn
from dotenv import load_dotenv

load_dotenv(".env.production")
load_dotenv(".env", override=True)

from core.config.config import get_settings  # noqa: E402
from packages.common.logging import configure_logging  # noqa: E402
from services.settlement.app import create_app  # noqa: E402

settings = get_settings()
log = configure_logging(settings.log_level, json_logs=settings.json_logs)

# ===== App (ASGI) =====
app = create_app(settings)


def main() -> None:
    ap = argparse.ArgumentParser(description="Tutorlink session settlement service")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=8000)
    ap.add_argument("--reload", action="store_true")
    ap.add_argument("--mode", choices=["serve", "print-config"], default="serve")
    args = ap.parse_args()

    if args.mode == "print-config":
        # SecretStr fields render masked
        log.info(json.dumps(settings.model_dump(mode="json"), indent=2))
        return

    logging.getLogger("tutorlink").info("serving %s on %s:%s", settings.service_name, args.host, args.port)
    uvicorn.run("main:app", host=args.host, port=args.port, reload=args.reload, log_config=None)


if __name__ == "__main__":
    main()

"""Command line entry point serving the story API with uvicorn."""

from __future__ import annotations

import argparse

from onewordstory.backend.config import BackendSettings, load_settings
from onewordstory.backend.logging import setup_logging


def parse_args(settings: BackendSettings, argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="One word story server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    settings = load_settings()
    args = parse_args(settings, argv)
    settings = settings.with_overrides(host=args.host, port=args.port, log_level=args.log_level)
    setup_logging(settings.log_level)

    import uvicorn

    from onewordstory.backend.api import create_app

    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

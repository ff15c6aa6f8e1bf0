"""Uvicorn entrypoint for the tunnelgate control plane."""

from __future__ import annotations

import argparse

import uvicorn

from .app import create_app

app = create_app()


def run() -> None:
    parser = argparse.ArgumentParser(description="Run the tunnelgate control plane")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    run()

from __future__ import annotations

import argparse
import logging
import os
import socket
import sys

import uvicorn

from linkpad.app import config
from linkpad.server import api as api_module
from linkpad.server.adapters.gist import GistDocumentStore
from linkpad.server.adapters.local import LocalDocumentStore

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Linkpad note editor server.")
    parser.add_argument("--host", default=os.getenv("LINKPAD_HOST", "127.0.0.1"), help="Host/interface to bind.")
    parser.add_argument("--port", type=int, help="Preferred port (0 = auto-select).")
    parser.add_argument("--store", choices=config.STORE_BACKENDS, help="Note store backend (default from config).")
    parser.add_argument("--db", help="SQLite file for the local note store.")
    return parser.parse_args(argv)


def _find_open_port(host: str, preferred: int) -> int:
    """Try preferred port, otherwise fall back to an ephemeral port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, preferred))
            return s.getsockname()[1]
        except OSError:
            pass
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def _configure_logging() -> None:
    level_name = os.getenv("LINKPAD_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if os.getenv("LINKPAD_DEBUG_LINKS", "0") not in ("0", "false", "False", ""):
        logging.getLogger("linkpad.app.reconciler").setLevel(logging.DEBUG)


def _select_store(args: argparse.Namespace) -> None:
    backend = args.store or config.load_store_backend()
    if backend == "gist":
        api_module.set_document_store(GistDocumentStore(config.load_github_api()))
    else:
        path = args.db or config.load_local_store_path()
        api_module.set_document_store(LocalDocumentStore(path))


def main() -> None:
    args = _parse_args(sys.argv[1:])
    _configure_logging()
    config.init_settings()
    _select_store(args)
    env_port = os.getenv("LINKPAD_PORT")
    preferred = args.port if args.port is not None else int(env_port or "8765")
    port = _find_open_port(args.host, preferred)
    logger.info(f"Linkpad listening on http://{args.host}:{port}/")
    uvicorn.run(
        api_module.get_app(),
        host=args.host,
        port=port,
        log_level=os.getenv("UVICORN_LOG_LEVEL", "info"),
    )


if __name__ == "__main__":  # pragma: no cover - manual entry point
    main()

import argparse
import logging
import os

from aiohttp import web

from . import log_banner
from .paths import DATA_DIR_ENV


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="promptdump", description="Bookmark AI image prompts.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--data-dir", default=None, help="where the databases and uploads live")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.data_dir:
        os.environ[DATA_DIR_ENV] = os.path.abspath(args.data_dir)

    # Imported late so the data directory override is seen by the stores.
    from .api import create_app

    log_banner()
    web.run_app(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()

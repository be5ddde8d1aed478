"""Run ILM ops server: python -m ilm.ops"""

import argparse

from ilm.ops.server import run_server
from ilm.utils.config import get_config


def main() -> None:
    """Main entry point for ops server."""
    config = get_config()
    parser = argparse.ArgumentParser(description="ILM Ops Server")
    parser.add_argument(
        "--host",
        default=config.ops_host,
        help="Bind host (default: ILM_OPS_HOST or 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.ops_port,
        help="Bind port (default: ILM_OPS_PORT or 8080)",
    )
    parser.add_argument("--db", default=None, help="DuckDB path (default: ILM_DB_PATH)")
    args = parser.parse_args()

    print(f"Starting ILM Ops Server on {args.host}:{args.port}")
    run_server(host=args.host, port=args.port, db_path=args.db)


if __name__ == "__main__":
    main()

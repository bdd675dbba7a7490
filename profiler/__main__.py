from __future__ import annotations

import argparse
import os

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Serve an app behind the request profiler")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "9000")), help="Bind port")
    parser.add_argument("--target", default=None, help="ASGI app to profile, as 'package.module:attr'")
    args = parser.parse_args()

    if args.target:
        os.environ["TARGET_APP"] = args.target

    uvicorn.run("profiler.main:create_app", factory=True, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()

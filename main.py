"""LLM Chat: dev launcher. Starts the API server with uvicorn."""

import argparse
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "127.0.0.1")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="LLM Chat dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--echo", action="store_true",
                        help="Answer with EchoLLM instead of calling a real backend")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", default=PORT)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    # Build env for the server process so it picks up the same settings
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.echo:
        env["LLM_ECHO"] = "1"

    cmd = [
        sys.executable, "-m", "uvicorn", "llm_chat.app:app",
        "--host", args.host, "--port", str(args.port), "--log-level", args.log_level,
    ]
    if args.reload:
        cmd.append("--reload")

    print(f"Starting API on http://{args.host}:{args.port} ...")
    try:
        sys.exit(subprocess.call(cmd, cwd=ROOT, env=env))
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()

"""Command-line entrypoint: serve the API, run one job, or report job status."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .logging_config import setup_logging
from .runtime.errors import AutobotError
from .runtime.orchestrator import OrchestratorService
from .runtime.storage import Container

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="autobot",
        description="AutoBot - run orchestrator for repository maintenance bots",
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Directory holding the .autobot state root (default: current directory)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Write daily log files to this directory")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve the HTTP and websocket API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    run = sub.add_parser("run", help="Spawn a job, wait for it, and print the run as JSON")
    run.add_argument("job_id")
    run.add_argument("--timeout", type=float, default=None, help="Seconds to wait before stopping the run")

    status = sub.add_parser("status", help="Print a job's status")
    status.add_argument("job_id")
    return parser.parse_args(argv)


async def _run_job(project_dir: Path, job_id: str, timeout: Optional[float]) -> int:
    orchestrator = OrchestratorService(Container(project_dir))
    await orchestrator.start()
    try:
        run_id = await orchestrator.spawn(job_id)
        run = await orchestrator.wait_for_run(run_id, timeout=timeout)
        if run is not None and run.status == "running":
            logger.warning("Run %s exceeded %.1fs; stopping", run_id, timeout or 0)
            await orchestrator.stop(job_id)
            run = await orchestrator.wait_for_run(run_id)
    finally:
        await orchestrator.shutdown()
    if run is None:
        return 1
    print(json.dumps(run.to_dict(), indent=2))
    return 0 if run.status == "completed" else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_dir)
    project_dir = args.project_dir.expanduser().resolve()

    if args.command == "serve":
        import uvicorn

        from .server.api import create_app

        uvicorn.run(create_app(project_dir), host=args.host, port=args.port)
        return 0

    try:
        if args.command == "run":
            return asyncio.run(_run_job(project_dir, args.job_id, args.timeout))
        orchestrator = OrchestratorService(Container(project_dir))
        print(json.dumps({"job_id": args.job_id, "status": orchestrator.query_status(args.job_id)}))
        return 0
    except AutobotError as exc:
        print(json.dumps({"error": str(exc), "kind": exc.kind}), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())

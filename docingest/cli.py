"""
docingest command line.

    docingest ingest FILE [FILE ...]   run files through the pipeline in-process
    docingest status [JOB_ID]          show job records (needs REDIS_URI)
    docingest reset-stuck              reset jobs stuck in processing (needs REDIS_URI)
    docingest serve                    run the HTTP API
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

from .ingestion.persistence import RedisJobStore
from .ingestion.queue import QueuePlacement
from .ingestion.recovery import ErrorRecovery
from .ingestion.service import IngestionService, Queued
from .shared.config import get_config, get_settings, reload_config
from .shared.observability import setup_logging


def _collect_targets(targets: List[str]) -> List[Path]:
    files: List[Path] = []
    for target in targets:
        path = Path(target)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.is_file()))
        elif path.is_file():
            files.append(path)
    return files


async def _ingest(args) -> int:
    config, settings = get_config(), get_settings()
    files = _collect_targets(args.targets)
    if not files:
        print(f"Error: No files found for targets: {args.targets}", file=sys.stderr)
        return 1

    service = IngestionService.from_config(config, settings)
    results = []
    try:
        job_ids = []
        for path in files:
            job = await service.create_job(str(path.resolve()), title=args.title or path.name)
            outcome = await service.submit_job(job.job_id)
            job_ids.append(job.job_id)
            if isinstance(outcome, Queued):
                placement: QueuePlacement = outcome.placement
                if not args.json:
                    print(
                        f"Queued: {path} -> {job.job_id} "
                        f"(position {placement.queue_position}, "
                        f"~{placement.estimated_wait_seconds}s)"
                    )
            elif not args.json:
                print(f"Started: {path} -> {job.job_id}")

        await service.wait_idle()

        for job_id in job_ids:
            job = await service.store.get_job(job_id)
            results.append(
                {
                    "job_id": job_id,
                    "source": job.source_path,
                    "status": job.status,
                    "document_id": job.document_id,
                    "chunks": job.metadata.get("chunk_count"),
                    "warnings": job.metadata.get("warnings", []),
                    "error": job.error_message,
                }
            )
    finally:
        await service.shutdown()

    failed = [r for r in results if r["status"] != "ready"]
    if args.json:
        print(json.dumps({"jobs": results, "failed": len(failed)}, indent=2))
    else:
        print(f"\n{'=' * 60}")
        for r in results:
            detail = f"{r['chunks']} chunks" if r["status"] == "ready" else r["error"]
            print(f"{r['status']:<8} {r['source']}: {detail}")
            for warning in r["warnings"]:
                print(f"         warning: {warning}")
        print(f"{'=' * 60}\nProcessed {len(results)} file(s), {len(failed)} failed")
    return 1 if failed else 0


def _require_redis_store(settings) -> RedisJobStore:
    if not settings.redis_uri:
        raise SystemExit("Error: REDIS_URI must be set for this command")
    return RedisJobStore.from_url(settings.redis_uri)


async def _status(args) -> int:
    settings = get_settings()
    store = _require_redis_store(settings)

    if args.job_id:
        job = await store.get_job(args.job_id)
        if job is None:
            print(f"Error: Job {args.job_id} not found", file=sys.stderr)
            return 1
        jobs = [job]
    else:
        jobs = await store.list_jobs()

    if args.json:
        print(json.dumps([j.to_dict() for j in jobs], indent=2))
        return 0

    print(f"{'Job ID':<34} | {'Status':<10} | {'Stage':<8} | {'Retries':<7} | Source")
    print("-" * 100)
    for job in jobs:
        marker = "" if job.is_terminal else "*"
        print(
            f"{job.job_id[:33]:<34} | {job.status + marker:<10} | {job.stage or '-':<8} | "
            f"{job.retry_count:<7} | {job.source_path}"
        )
    return 0


async def _reset_stuck(args) -> int:
    config, settings = get_config(), get_settings()
    store = _require_redis_store(settings)
    threshold = args.older_than or config.processing.stuck_job_threshold_seconds
    reset = await ErrorRecovery(store).reset_stuck_jobs(threshold)
    print(json.dumps({"reset": reset, "count": len(reset)}))
    return 0


def _serve(args) -> int:
    import uvicorn

    from .api import create_app

    config, settings = get_config(), get_settings()
    service = IngestionService.from_config(config, settings)
    app = create_app(service, reaper_interval_seconds=args.reaper_interval)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docingest",
        description="Resilient document ingestion pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest files or directories")
    ingest_parser.add_argument("targets", nargs="+", help="File paths or directories")
    ingest_parser.add_argument("--title", help="Title for the resulting document(s)")
    ingest_parser.add_argument("--json", action="store_true", help="JSON output")

    status_parser = subparsers.add_parser("status", help="Show job status")
    status_parser.add_argument("job_id", nargs="?", help="Optional job ID (shows all if omitted)")
    status_parser.add_argument("--json", action="store_true", help="JSON output")

    reset_parser = subparsers.add_parser(
        "reset-stuck", help="Reset jobs stuck in processing back to pending"
    )
    reset_parser.add_argument(
        "--older-than", type=float, metavar="SECONDS", help="Stuck threshold in seconds"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument(
        "--reaper-interval",
        type=float,
        default=60.0,
        help="Seconds between stuck-job sweeps (0 disables)",
    )

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    _, settings = reload_config()
    serving = args.command == "serve"
    # Keep stdout clean for command output
    setup_logging(
        args.log_level or settings.log_level,
        json_output=serving,
        stream=None if serving else sys.stderr,
    )

    if args.command == "serve":
        return _serve(args)
    handlers = {"ingest": _ingest, "status": _status, "reset-stuck": _reset_stuck}
    return asyncio.run(handlers[args.command](args))


if __name__ == "__main__":
    sys.exit(main())

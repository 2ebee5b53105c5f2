# src/liverc_ingest/cli.py
"""
Command-line entry point.

Every command runs against fresh in-memory repositories, so nothing is
persisted between runs: the output shows what an import would produce and
is the quickest way to spot upstream markup or payload drift.
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any

from .config import (
    ARCHIVE_ENABLED,
    MINIO_ACCESS_KEY,
    MINIO_BUCKET_RAW,
    MINIO_ENDPOINT,
    MINIO_SECRET_KEY,
    validate_configuration,
)
from .domain import ImportPlanRequest, PlanEventRef
from .exceptions import LiveRcError
from .ingestion.http_client import LiveRcClient
from .ports import NoopPayloadArchive, PayloadArchive
from .services.apply import ImportApplyService, InMemoryPlanStore
from .services.clubs import ClubCatalogueService
from .services.importer import LiveRcImportService
from .services.jobs import JobQueue
from .services.plan import ImportPlanService
from .services.summary import LiveRcSummaryImporter
from .storage.memory import InMemoryRepositories

logger = logging.getLogger(__name__)

TERMINAL_JOB_STATES = {"SUCCEEDED", "FAILED"}


def build_archive() -> PayloadArchive:
    if not ARCHIVE_ENABLED:
        return NoopPayloadArchive()
    from .storage.object_store import LiveRcPayloadArchive

    archive = LiveRcPayloadArchive(
        bucket_name=MINIO_BUCKET_RAW,
        endpoint_url=MINIO_ENDPOINT,
        access_key=MINIO_ACCESS_KEY,
        secret_key=MINIO_SECRET_KEY,
    )
    archive.create_bucket_if_not_exists()
    return archive


def build_summary_importer(client: LiveRcClient, repos: InMemoryRepositories) -> LiveRcSummaryImporter:
    return LiveRcSummaryImporter(
        client,
        events=repos.events,
        race_classes=repos.race_classes,
        sessions=repos.sessions,
        drivers=repos.drivers,
        result_rows=repos.result_rows,
        entrants=repos.entrants,
        laps=repos.laps,
    )


def build_import_service(client: LiveRcClient, repos: InMemoryRepositories) -> LiveRcImportService:
    return LiveRcImportService(
        client,
        events=repos.events,
        race_classes=repos.race_classes,
        sessions=repos.sessions,
        entrants=repos.entrants,
        laps=repos.laps,
    )


def to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def run_plan(
    client: LiveRcClient,
    repos: InMemoryRepositories,
    event_refs: list[str],
    apply: bool = False,
    wait_timeout: float = 600.0,
) -> dict[str, Any]:
    """
    Build a plan for the given events and optionally run it to completion.

    With ``apply`` the plan goes through the guardrails, is queued and the
    job runner is polled until the job reaches a terminal state.
    """
    request = ImportPlanRequest(events=[PlanEventRef(event_ref=ref) for ref in event_refs])
    plan_service = ImportPlanService(client, repos.plans)
    plan = plan_service.create_plan(request)
    result: dict[str, Any] = {"plan": asdict(plan)}
    if not apply:
        return result

    store = InMemoryPlanStore()
    store.save_plan(request, plan)
    queue = JobQueue(repos.jobs, build_summary_importer(client, repos))
    job_id = ImportApplyService(store, queue, plan_service=plan_service).apply(plan.plan_id)

    queue.start()
    try:
        deadline = time.monotonic() + wait_timeout
        job = queue.get_job(job_id)
        while job is not None and job.state not in TERMINAL_JOB_STATES and time.monotonic() < deadline:
            time.sleep(queue.poll_interval)
            job = queue.get_job(job_id)
    finally:
        queue.stop()

    result["job"] = asdict(job) if job is not None else None
    result["job_runner"] = queue.stats.to_dict()
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liverc-ingest",
        description="Dry-run LiveRC ingestion against in-memory storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Refresh the club catalogue
  liverc-ingest sync-clubs

  # Estimate an import, then run it through the job queue
  liverc-ingest plan https://mytrack.liverc.com/results/?p=view_event&id=12345 --apply

  # Import one race from its results URL
  liverc-ingest import-url https://mytrack.liverc.com/results/spring/1-8-buggy/a-main/race-1.json
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sync-clubs", help="Sync the club catalogue from the track directory")

    plan = commands.add_parser("plan", help="Build an import plan for one or more events")
    plan.add_argument("event_refs", nargs="+", metavar="EVENT_REF")
    plan.add_argument("--apply", action="store_true", help="Queue the plan and wait for the job")

    event = commands.add_parser("import-event", help="Import an event summary from its overview page")
    event.add_argument("event_ref", metavar="EVENT_REF")

    url = commands.add_parser("import-url", help="Import a single race from its results URL")
    url.add_argument("url", metavar="URL")
    url.add_argument("--include-outlaps", action="store_true", help="Keep laps flagged as outlaps")

    upload = commands.add_parser("import-file", help="Import a race result JSON file")
    upload.add_argument("path", type=Path, metavar="PATH")
    upload.add_argument("--include-outlaps", action="store_true", help="Keep laps flagged as outlaps")

    return parser


def run_command(args: argparse.Namespace, client: LiveRcClient, repos: InMemoryRepositories) -> Any:
    if args.command == "sync-clubs":
        summary = ClubCatalogueService(client, repos.clubs).sync_catalogue()
        return {**summary, "clubs": [asdict(club) for club in repos.clubs.list_active()]}
    if args.command == "plan":
        return run_plan(client, repos, args.event_refs, apply=args.apply)
    if args.command == "import-event":
        return build_summary_importer(client, repos).ingest_event_summary(args.event_ref)
    if args.command == "import-url":
        return build_import_service(client, repos).import_from_url(
            args.url, include_outlaps=args.include_outlaps
        )
    if args.command == "import-file":
        payload = json.loads(args.path.read_text(encoding="utf-8"))
        return build_import_service(client, repos).import_from_payload(
            payload, namespace_seed=args.path.name, include_outlaps=args.include_outlaps
        )
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        validate_configuration()
        client = LiveRcClient(archive=build_archive())
        result = run_command(args, client, InMemoryRepositories())
    except KeyboardInterrupt:
        logger.warning("⚠️  Interrupted by user")
        return 130
    except LiveRcError as e:
        logger.error(f"❌ {args.command} failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"❌ {args.command} failed: {e}", exc_info=True)
        return 1

    print(json.dumps(to_jsonable(result), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())

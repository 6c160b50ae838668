import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError
from tqdm import tqdm

from .config import resolve_config
from .errors import UpscaleQueueError
from .logging_config import setup_logging
from .models import UpscaleQueueConfig
from .queue.events import QueueStateEvent
from .queue.job_queue import JobQueue
from .queue.models import STATUS_GROUPS, Job, JobEvent, JobStatus, ProcessingKind
from .queue.processor import JobProcessor
from .queue.sqlite_backend import SQLiteJobRepository
from .tools import ToolLocator, check_all


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db", type=str, help="Queue database path")
    parser.add_argument("--config", type=str, help="YAML file overriding config/default.yaml")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upscale-queue", description="Durable video upscaling job queue"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Add a job to the queue")
    _add_common_args(submit_parser)
    submit_parser.add_argument("--input", "-i", type=str, required=True, help="Source video")
    submit_parser.add_argument("--output", "-o", type=str, required=True, help="Output video")
    submit_parser.add_argument(
        "--kind",
        "-k",
        choices=[kind.value for kind in ProcessingKind],
        required=True,
        help="Processing kind",
    )
    submit_parser.add_argument(
        "--settings", "-s", type=str, default="{}", help="Kind settings as a JSON object"
    )
    submit_parser.add_argument("--total-frames", type=int, help="Frame count of the source")

    # RUN
    run_parser = subparsers.add_parser("run", help="Process pending jobs until the queue is empty")
    _add_common_args(run_parser)
    run_parser.add_argument("--workers", "-w", type=int, help="Max concurrent jobs")
    run_parser.add_argument("--ffmpeg", type=str, help="Path to ffmpeg")
    run_parser.add_argument("--vspipe", type=str, help="Path to vspipe")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    _add_common_args(serve_parser)
    serve_parser.add_argument("--workers", "-w", type=int, help="Max concurrent jobs")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--watch", type=str, help="Queue videos dropped into this folder")
    serve_parser.add_argument("--watch-output", type=str, help="Output folder for watched videos")

    # CHECK TOOLS
    check_parser = subparsers.add_parser("check", help="Verify external tools")
    _add_common_args(check_parser)
    check_parser.add_argument("--ffmpeg", type=str, help="Path to ffmpeg")
    check_parser.add_argument("--vspipe", type=str, help="Path to vspipe")

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    status_parser = queue_subparsers.add_parser("status", help="Show queue statistics")
    _add_common_args(status_parser)

    list_parser = queue_subparsers.add_parser("list", help="List jobs")
    _add_common_args(list_parser)
    list_parser.add_argument("--status", choices=sorted(STATUS_GROUPS), help="Status group")

    for name, help_text in (
        ("cancel", "Cancel a job"),
        ("retry", "Retry a failed or cancelled job"),
        ("resume", "Resume a paused job"),
        ("delete", "Delete a job"),
    ):
        job_parser = queue_subparsers.add_parser(name, help=help_text)
        _add_common_args(job_parser)
        job_parser.add_argument("job_id", type=str)

    clear_parser = queue_subparsers.add_parser("clear", help="Delete completed jobs")
    _add_common_args(clear_parser)
    clear_parser.add_argument("--all", action="store_true", help="Delete every job")

    return parser


def load_config(args: argparse.Namespace) -> UpscaleQueueConfig:
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    if getattr(args, "config", None):
        return resolve_config(cli_dict, local_path=Path(args.config))
    return resolve_config(cli_dict)


def open_queue(config: UpscaleQueueConfig) -> JobQueue:
    repository = SQLiteJobRepository(config.queue.db_path)
    return JobQueue(repository, JobProcessor(config), config)


def print_statistics(job_queue: JobQueue) -> None:
    stats = job_queue.get_statistics()
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Pending:              {stats.pending}")
    print(f"Running:              {stats.running}")
    print(f"Paused:               {stats.paused}")
    print(f"Completed:            {stats.completed}")
    print(f"Failed/Cancelled:     {stats.failed}")
    print(f"Total:                {stats.total}")
    print("=" * 60)


def print_jobs(jobs: List[Job]) -> None:
    if not jobs:
        print("No jobs.")
        return
    for job in jobs:
        line = (
            f"{job.job_id}  {job.status.value:<10} {job.progress_percentage:6.2f}%  "
            f"{job.processing_kind.value:<12} {job.source_video_path}"
        )
        if job.last_error:
            line += f"  [{job.last_error}]"
        print(line)


class ProgressDisplay:
    """Broker listener that renders one tqdm bar per running job."""

    def __init__(self):
        self.bars: Dict[str, tqdm] = {}
        self.finished: Dict[str, JobStatus] = {}

    def __call__(self, event) -> None:
        if isinstance(event, QueueStateEvent) or not isinstance(event, JobEvent):
            return

        if event.status == JobStatus.RUNNING:
            bar = self.bars.get(event.job_id)
            if bar is None:
                bar = tqdm(total=100.0, desc=event.job_id[:8], unit="%", leave=True)
                self.bars[event.job_id] = bar
            bar.n = round(event.progress_percentage, 2)
            bar.set_postfix_str(f"frame {event.current_frame}/{event.total_frames or '?'}")
            return

        if event.event != "status":
            return
        bar = self.bars.pop(event.job_id, None)
        if bar is not None:
            if event.status == JobStatus.COMPLETED:
                bar.n = 100.0
                bar.refresh()
            bar.close()
        if event.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            self.finished[event.job_id] = event.status
            if event.status == JobStatus.FAILED:
                hint = " (fix settings or tools before retrying)" if event.configuration_error else ""
                tqdm.write(f"❌ {event.job_id[:8]} failed: {event.error_message}{hint}")

    def close(self) -> None:
        for bar in self.bars.values():
            bar.close()
        self.bars.clear()


async def _run_queue(config: UpscaleQueueConfig) -> Dict[str, int]:
    job_queue = open_queue(config)
    display = ProgressDisplay()
    job_queue.events.add_listener(display)
    try:
        async with job_queue:
            if job_queue.get_statistics().pending == 0:
                return {"completed": 0, "failed": 0, "cancelled": 0}
            job_queue.start_queue()
            await job_queue.wait_until_idle()
    finally:
        display.close()
        job_queue.repository.close()

    statuses = list(display.finished.values())
    return {
        "completed": statuses.count(JobStatus.COMPLETED),
        "failed": statuses.count(JobStatus.FAILED),
        "cancelled": statuses.count(JobStatus.CANCELLED),
    }


async def _job_action(job_queue: JobQueue, action: str, job_id: str) -> bool:
    operation = getattr(job_queue, action)
    return await operation(job_id)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])
        return 0

    setup_logging(args.log_level)

    try:
        config = load_config(args)
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    if args.command == "check":
        print("Checking external tools...")
        missing = 0
        for info in check_all(ToolLocator(config.tools)):
            if info.is_valid:
                print(f"✅ {info.name} found: {info.path} ({info.version})")
            else:
                missing += 1
                print(f"❌ {info.name} NOT found.")
        return 1 if missing else 0

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(open_queue(config)), host=args.host, port=args.port)
        return 0

    if args.command == "run":
        try:
            stats = asyncio.run(_run_queue(config))
        except KeyboardInterrupt:
            print("\nInterrupted; running jobs were cancelled.")
            return 130
        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        print(f"Completed:            {stats['completed']}")
        print(f"Failed:               {stats['failed']}")
        print(f"Cancelled:            {stats['cancelled']}")
        print("=" * 60)
        return 1 if stats["failed"] else 0

    job_queue = open_queue(config)
    try:
        if args.command == "submit":
            try:
                settings = json.loads(args.settings)
            except json.JSONDecodeError as e:
                print(f"❌ --settings is not valid JSON: {e}", file=sys.stderr)
                return 2
            if not isinstance(settings, dict):
                print("❌ --settings must be a JSON object", file=sys.stderr)
                return 2
            try:
                job_id = asyncio.run(
                    job_queue.submit(
                        args.input,
                        args.output,
                        ProcessingKind(args.kind),
                        settings,
                        total_frames=args.total_frames,
                    )
                )
            except (ValidationError, UpscaleQueueError) as e:
                print(f"❌ Could not submit job: {e}", file=sys.stderr)
                return 2
            print(f"Queued job {job_id}")
            return 0

        # queue subcommands
        if args.queue_command == "status":
            print_statistics(job_queue)

        elif args.queue_command == "list":
            if args.status:
                print_jobs(job_queue.get_by_status_group(args.status))
            else:
                print_jobs(job_queue.get_all())

        elif args.queue_command in ("cancel", "retry", "resume", "delete"):
            if job_queue.get_by_id(args.job_id) is None:
                print(f"❌ Job not found: {args.job_id}", file=sys.stderr)
                return 1
            if not asyncio.run(_job_action(job_queue, args.queue_command, args.job_id)):
                job = job_queue.get_by_id(args.job_id)
                print(
                    f"❌ Cannot {args.queue_command} job in state '{job.status.value}'",
                    file=sys.stderr,
                )
                return 1
            print(f"✅ {args.queue_command}: {args.job_id}")

        elif args.queue_command == "clear":
            if args.all:
                count = asyncio.run(job_queue.clear_all())
            else:
                count = asyncio.run(job_queue.clear_completed())
            print(f"Deleted {count} job(s).")
        return 0
    finally:
        job_queue.repository.close()


if __name__ == "__main__":
    sys.exit(main())

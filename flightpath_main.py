#!/usr/bin/env python3
"""
Flightpath Orchestrator - CLI Entry Point.

Usage:
    python3 flightpath_main.py run feature-spec.json --working-dir ~/code/app
    python3 flightpath_main.py status <pipeline-id>
    python3 flightpath_main.py pause <pipeline-id>
    python3 flightpath_main.py abort <pipeline-id>
    python3 flightpath_main.py resume <pipeline-id> --answer "Use JWT auth"
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

from flightpath_config import load_config
from flightpath_errors import FlightpathError
from flightpath_models import PipelineStatus
from flightpath_notify import TelegramNotifier
from flightpath_orchestrator import Orchestrator
from flightpath_paths import STORAGE_DIRNAME
from flightpath_requirements import load_feature_spec
from flightpath_store import PipelineStore
from flightpath_tools import HttpRequestProvider
from flightpath_transport import AnthropicTransport


def setup_logging(verbose: bool = False, log_file: Path = None):
    """Configure logging with colors."""
    level = logging.DEBUG if verbose else logging.INFO

    COLORS = {
        'DEBUG': '\033[36m', 'INFO': '\033[32m', 'WARNING': '\033[33m',
        'ERROR': '\033[31m', 'CRITICAL': '\033[35m', 'RESET': '\033[0m',
    }

    class ColorFormatter(logging.Formatter):
        def format(self, record):
            color = COLORS.get(record.levelname, '')
            reset = COLORS['RESET']
            record.levelname = f"{color}{record.levelname:<8}{reset}"
            return super().format(record)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColorFormatter(
        '%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s',
        datefmt='%H:%M:%S'
    ))

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            '%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s'
        ))
        root.addHandler(fh)

    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)


def build_orchestrator(config, depth: str = None) -> Orchestrator:
    store = PipelineStore(config.storage_base_dir)
    storage_root = Path(config.storage_base_dir) / STORAGE_DIRNAME
    default_model = config.model_for_tier("sonnet")
    transport = AnthropicTransport(
        history_dir=storage_root / "sessions",
        endpoint=default_model.endpoint,
        api_key_env=default_model.api_key_env,
        max_tokens=default_model.max_tokens,
        models=config.models.values(),
        timeout=config.harness.request_timeout_seconds,
        allowed_roots=[storage_root],
    )
    return Orchestrator(config, store, transport,
                        notifier=TelegramNotifier(config.notify),
                        browser=HttpRequestProvider(),
                        depth=depth)


def print_status(orchestrator: Orchestrator, pipeline_id: str):
    pipeline = orchestrator.store.get(pipeline_id)
    print(f"Pipeline {pipeline.id} ({pipeline.project_name})")
    print(f"  Status:  {pipeline.status.value}")
    print(f"  Phase:   {pipeline.phase.current.value} "
          f"(requirement {pipeline.phase.requirement_index + 1}/{pipeline.phase.total_requirements}, "
          f"retry {pipeline.phase.retry_count})")
    for req in pipeline.requirements:
        print(f"  [{req.status.value:<11}] p{req.priority} {req.id}: {req.title}")
    for epic in pipeline.epics:
        p = epic.progress
        print(f"  epic {epic.id} [{epic.status.value}] {p.completed}/{p.total} done, {p.failed} failed")


async def _run(args, orchestrator: Orchestrator) -> int:
    try:
        if args.command == "run":
            spec = load_feature_spec(args.spec)
            pipeline = orchestrator.start_pipeline(spec, args.working_dir.resolve())
            print(f"Pipeline {pipeline.id} started")
            pipeline = await orchestrator.run(pipeline.id)
        elif args.command == "resume":
            pipeline = await orchestrator.resume_pipeline(args.pipeline_id, answer=args.answer)
        else:
            raise ValueError(f"Unknown command: {args.command}")
    finally:
        await orchestrator.transport.aclose()

    print_status(orchestrator, pipeline.id)
    return 0 if pipeline.status in (PipelineStatus.COMPLETED, PipelineStatus.PAUSED) else 1


def main():
    parser = argparse.ArgumentParser(
        description="Flightpath Orchestrator - autonomous Explore/Plan/Execute/Test pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run feature-spec.json --working-dir ~/code/app
  %(prog)s run feature-spec.json --depth thorough -v
  %(prog)s abort 3f2c9a1e-...
  %(prog)s resume 3f2c9a1e-... --answer "Use the existing auth middleware"
        """
    )
    parser.add_argument("--config", type=Path, default=None, help="Configuration JSON file path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose/debug logging")
    parser.add_argument("--log-file", type=Path, default=None, help="Write logs to file")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Start a pipeline from a feature spec")
    run_p.add_argument("spec", type=Path, help="Feature spec JSON (requirements + epics)")
    run_p.add_argument("--working-dir", type=Path, default=Path.cwd(),
                       help="Target project directory (default: current directory)")
    run_p.add_argument("--depth", choices=["quick", "medium", "thorough"], default=None,
                       help="Exploration depth / model tier policy (default: from config)")

    resume_p = sub.add_parser("resume", help="Resume a paused pipeline")
    resume_p.add_argument("pipeline_id")
    resume_p.add_argument("--answer", default=None, help="Answer to the agent's pending question")

    for name, text in (("status", "Show pipeline status"), ("pause", "Request a pause"),
                       ("abort", "Request an abort")):
        p = sub.add_parser(name, help=text)
        p.add_argument("pipeline_id")

    args = parser.parse_args()

    setup_logging(verbose=args.verbose, log_file=args.log_file)
    config = load_config(args.config)
    orchestrator = build_orchestrator(config, depth=getattr(args, "depth", None))

    try:
        if args.command == "status":
            print_status(orchestrator, args.pipeline_id)
            sys.exit(0)
        if args.command == "pause":
            orchestrator.request_pause(args.pipeline_id)
            sys.exit(0)
        if args.command == "abort":
            orchestrator.request_abort(args.pipeline_id)
            sys.exit(0)
        sys.exit(asyncio.run(_run(args, orchestrator)))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("\n⚠️ Interrupted by user")
        sys.exit(130)
    except FlightpathError as e:
        logging.getLogger(__name__).error(f"❌ {e}")
        sys.exit(1)
    except Exception as e:
        logging.getLogger(__name__).exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

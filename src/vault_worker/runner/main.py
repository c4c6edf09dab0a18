"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from ..analytics import InvalidMonthError
from ..config import Config, create_default_config, load_config
from ..docupipe_client import DocupipeClient
from ..pipeline import DocumentJobLoop
from ..queues import create_queue_driver
from ..services import VaultWorkerService
from ..state_store import StateStore
from ..storage import FilesystemObjectStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="vault-worker",
        description="Process uploaded financial documents into monthly analytics",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a starter config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # run command
    subparsers.add_parser("run", help="Run the queue driver and document job loop")

    # enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a document job")
    enqueue_parser.add_argument("user_id", help="Owner of the document")
    enqueue_parser.add_argument("file_id", help="Uploaded file id (object key user/file)")
    enqueue_parser.add_argument("original_name", help="Original file name")
    enqueue_parser.add_argument(
        "--collection",
        type=str,
        default=None,
        help="Collection id (may be prefixed with a catalogue key, e.g. payslip:2024)",
    )
    enqueue_parser.add_argument(
        "--display-name",
        type=str,
        default=None,
        help="Name shown in the vault (default: original name)",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show pipeline status of a document")
    status_parser.add_argument(
        "document_id",
        nargs="?",
        help="Document id (omit for queue and pipeline statistics)",
    )

    # snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Show a monthly analytics snapshot")
    snapshot_parser.add_argument("user_id", help="Owner")
    snapshot_parser.add_argument("month", help="Month as YYYY-MM")

    # rebuild command
    rebuild_parser = subparsers.add_parser(
        "rebuild", help="Rebuild a monthly analytics snapshot now"
    )
    rebuild_parser.add_argument("user_id", help="Owner")
    rebuild_parser.add_argument("month", help="Month as YYYY-MM")

    # dead-letters command
    dead_parser = subparsers.add_parser("dead-letters", help="List dead-lettered documents")
    dead_parser.add_argument(
        "--user",
        type=str,
        default=None,
        help="Only show this user's documents",
    )

    # requeue command
    requeue_parser = subparsers.add_parser(
        "requeue", help="Send a dead-lettered document through the pipeline again"
    )
    requeue_parser.add_argument("document_id", help="Dead-lettered document id")

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_init_config(config_path: Path, force: bool) -> int:
    """Write a starter config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote {config_path}")
    return 0


def cmd_run(config: Config) -> int:
    """Run workers until SIGINT/SIGTERM."""
    errors = config.validate()
    if errors:
        print("❌ Invalid configuration:")
        for error in errors:
            print(f"   - {error}")
        return 1

    store = StateStore(config.state_db_path)
    queue = create_queue_driver(config, store)
    docupipe = DocupipeClient(
        base_url=config.docupipe.base_url,
        api_key=config.docupipe.api_key,
        timeout=config.docupipe.timeout_seconds,
        default_workflow_id=config.docupipe.workflow_id,
    )
    loop = DocumentJobLoop(
        config=config,
        store=store,
        object_store=FilesystemObjectStore(config.storage_root),
        docupipe=docupipe,
        queue=queue,
    )

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        shutdown.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    print("🚀 Vault worker running (Ctrl+C to stop)")
    queue.start()
    loop.start()
    try:
        while not shutdown.wait(1.0):
            pass
    finally:
        loop.stop()
        queue.shutdown()
        docupipe.close()

    print("✓ Vault worker stopped")
    return 0


def cmd_enqueue(
    service: VaultWorkerService,
    user_id: str,
    file_id: str,
    original_name: str,
    collection_id: str | None,
    display_name: str | None,
) -> int:
    """Enqueue a document job."""
    try:
        document_id = service.enqueue_document_job(
            user_id, file_id, original_name, collection_id=collection_id, display_name=display_name
        )
    except ValueError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Enqueued document {document_id}")
    return 0


def cmd_status(service: VaultWorkerService, document_id: str | None) -> int:
    """Show pipeline status."""
    if document_id is None:
        pipeline = service.store.get_pipeline_stats()
        outbox = service.store.get_outbox_stats()

        print("\n📊 Vault Worker Status")
        print("=" * 40)
        for status, count in sorted(pipeline.items()):
            print(f"  Jobs {status + ':':<20} {count}")
        for state, count in sorted(outbox.items()):
            print(f"  Outbox {state + ':':<18} {count}")
        print()
        return 0

    status = service.get_pipeline_status(document_id)
    if status is None:
        print(f"❌ Unknown document {document_id}")
        return 1
    _print_json(status)
    return 0


def cmd_snapshot(service: VaultWorkerService, user_id: str, month: str) -> int:
    """Print a stored monthly snapshot."""
    try:
        snapshot = service.get_monthly_snapshot(user_id, month)
    except InvalidMonthError as e:
        print(f"❌ {e}")
        return 1
    if snapshot is None:
        print(f"No snapshot for {user_id} {month}")
        return 1
    _print_json(snapshot)
    return 0


def cmd_rebuild(service: VaultWorkerService, user_id: str, month: str) -> int:
    """Rebuild a monthly snapshot synchronously."""
    try:
        snapshot = service.rebuild_monthly_analytics(user_id, month)
    except InvalidMonthError as e:
        print(f"❌ {e}")
        return 1
    _print_json(snapshot)
    return 0


def cmd_dead_letters(service: VaultWorkerService, user_id: str | None) -> int:
    """List open dead letters."""
    letters = service.list_dead_letters(user_id)
    if not letters:
        print("✓ No dead letters")
        return 0
    for letter in letters:
        print(
            f"  💀 [{letter['document_id']}] {letter['reason']} "
            f"({letter['description']}) at {letter['created_at']}"
        )
        if letter["details"]:
            print(f"     {json.dumps(letter['details'], sort_keys=True, default=str)}")
    print(f"\n{len(letters)} dead letter(s)")
    return 0


def cmd_requeue(service: VaultWorkerService, document_id: str) -> int:
    """Requeue a dead-lettered document."""
    if not service.requeue_dead_letter(document_id):
        print(f"❌ {document_id} is not a dead-lettered document")
        return 1
    print(f"✓ Requeued {document_id}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    if parsed.command == "run":
        return cmd_run(config)

    store = StateStore(config.state_db_path)
    service = VaultWorkerService(config, store)

    # Route to command
    if parsed.command == "enqueue":
        return cmd_enqueue(
            service,
            parsed.user_id,
            parsed.file_id,
            parsed.original_name,
            parsed.collection,
            parsed.display_name,
        )
    elif parsed.command == "status":
        return cmd_status(service, parsed.document_id)
    elif parsed.command == "snapshot":
        return cmd_snapshot(service, parsed.user_id, parsed.month)
    elif parsed.command == "rebuild":
        return cmd_rebuild(service, parsed.user_id, parsed.month)
    elif parsed.command == "dead-letters":
        return cmd_dead_letters(service, parsed.user)
    elif parsed.command == "requeue":
        return cmd_requeue(service, parsed.document_id)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())

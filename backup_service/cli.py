"""
Command-line interface for the backup service.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from .client import DropboxClient
from .config import BackupConfig, load_config
from .coordinator import BackupCoordinator
from .errors import BackupError
from .models import BackupSummary, FileRef
from .progress import (
    LoggingProgressObserver,
    RichProgressObserver,
    create_progress,
    format_bytes,
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
        console: Route log lines through this rich console, so they render
            above live progress bars
    """
    level = logging.DEBUG if verbose else logging.INFO
    if console is not None:
        logging.basicConfig(
            level=level,
            format='%(name)s - %(message)s',
            handlers=[RichHandler(console=console, show_path=False)],
            force=True
        )
    else:
        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            force=True
        )
    # Per-request lines from httpx would drown the progress output.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def load_environment(env_file: Optional[Path] = None) -> None:
    """Load variables from a .env file into the environment."""
    env_path = str(env_file) if env_file else find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(dotenv_path=env_path, override=False)


def create_config(args: argparse.Namespace) -> BackupConfig:
    """Build the backup configuration from the config file, environment and flags.

    Args:
        args: Command line arguments

    Returns:
        Validated BackupConfig
    """
    overrides = {
        'local_dir': getattr(args, 'local_dir', None),
        'remote_dir': getattr(args, 'remote_dir', None),
        'max_concurrent': getattr(args, 'max_concurrent', None),
        'chunk_size': getattr(args, 'chunk_size', None),
        'log_dir': getattr(args, 'log_dir', None),
    }
    return load_config(args.config, overrides=overrides)


async def run_backup(config: BackupConfig, progress_mode: str = "log",
                     console: Optional[Console] = None) -> BackupSummary:
    """Run a backup with the requested progress display.

    Args:
        config: Backup settings
        progress_mode: ``bar``, ``log`` or ``none``
        console: Console for the progress bars

    Returns:
        BackupSummary of the run
    """
    async with DropboxClient.from_config(config) as client:
        if progress_mode == "bar":
            with create_progress(console=console) as progress:
                coordinator = BackupCoordinator(
                    config, client,
                    observer_factory=lambda file_ref: RichProgressObserver(progress, file_ref)
                )
                return await coordinator.run()

        factory = LoggingProgressObserver if progress_mode == "log" else None
        coordinator = BackupCoordinator(config, client, observer_factory=factory)
        return await coordinator.run()


async def list_pending(config: BackupConfig) -> List[FileRef]:
    """Resolve the pending set without uploading anything."""
    async with DropboxClient.from_config(config) as client:
        return await BackupCoordinator(config, client).pending()


def handle_run(args: argparse.Namespace, console: Optional[Console] = None) -> None:
    """Handle the run command.

    Args:
        args: Command line arguments
        console: Console shared with the log handler in ``bar`` mode
    """
    try:
        config = create_config(args)
        summary = asyncio.run(run_backup(config, args.progress, console))
    except KeyboardInterrupt:
        logger.warning("Backup interrupted by user")
        sys.exit(130)
    except (BackupError, ValueError) as e:
        logger.error(f"Backup failed: {e}")
        sys.exit(1)

    if summary.failed_uploads:
        sys.exit(1)


def handle_pending(args: argparse.Namespace) -> None:
    """Handle the pending command.

    Args:
        args: Command line arguments
    """
    try:
        config = create_config(args)
        pending = asyncio.run(list_pending(config))
    except (BackupError, ValueError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    if not pending:
        print("No pending files")
        return
    for file_ref in pending:
        print(f"{file_ref.name}\t{format_bytes(file_ref.size_bytes)}")


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Back up a local folder to remote storage")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to JSON config file")
    parser.add_argument('--env-file', type=Path,
                        help="Path to .env file (default: search from the working directory)")

    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_location_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument('--local-dir', type=Path,
                         help="Local folder to back up (LOCAL_DIR)")
        sub.add_argument('--remote-dir', type=str,
                         help="Remote destination folder (REMOTE_DIR)")

    # Run command
    run_parser = subparsers.add_parser('run',
                                       help="Upload files missing from the remote folder")
    add_location_args(run_parser)
    run_parser.add_argument('-j', '--max-concurrent', type=int,
                            help="Maximum number of concurrent uploads (default: 5)")
    run_parser.add_argument('--chunk-size', type=int,
                            help="Bytes per append request")
    run_parser.add_argument('--log-dir', type=Path,
                            help="Directory for JSON run logs")
    run_parser.add_argument('--progress', choices=['bar', 'log', 'none'], default=None,
                            help="Progress display (default: bar on a terminal, log otherwise)")

    # Pending command
    pending_parser = subparsers.add_parser('pending',
                                           help="List files that would be uploaded")
    add_location_args(pending_parser)

    args = parser.parse_args(argv)
    load_environment(args.env_file)

    console = None
    if args.command == 'run':
        if args.progress is None:
            args.progress = 'bar' if sys.stderr.isatty() else 'log'
        if args.progress == 'bar':
            console = Console(stderr=True)
    setup_logging(args.verbose, console)

    if args.command == 'run':
        handle_run(args, console)
    elif args.command == 'pending':
        handle_pending(args)


if __name__ == '__main__':
    main()

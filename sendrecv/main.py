"""Main application entry point for the WebRTC send/receive peer."""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from sendrecv import __version__
from sendrecv.config import Settings, get_settings
from sendrecv.core.call_profile import CallProfile
from sendrecv.core.call_state import CallState
from sendrecv.core.errors import CallFailed, MediaEngineError
from sendrecv.media.engine_base import MediaEngine
from sendrecv.signalling.channel import SessionChannel
from sendrecv.signalling.coordinator import NegotiationCoordinator

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_dir: Optional[Path] = None
) -> Optional[Path]:
    """Configure structured logging with optional file output.

    Args:
        log_level: Standard logging level name
        log_format: ``console`` or ``json``
        log_dir: Directory for a timestamped log file (stdout only when None)

    Returns:
        Path of the log file, if one was created
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file: Optional[Path] = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"sendrecv_{timestamp}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=level,
        handlers=handlers,
        force=True
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_file is not None:
        structlog.get_logger(__name__).info("Logging to file", log_file=str(log_file))
    return log_file


def load_profile(settings: Settings, profile_file: Optional[Path] = None) -> CallProfile:
    """Resolve the call profile from CLI/config, applying the STUN override."""
    profile = CallProfile.from_yaml_or_default(profile_file or settings.media.profile_file)
    if settings.media.stun_server:
        profile.stun_server = settings.media.stun_server
    return profile


def create_media_engine(profile: CallProfile) -> MediaEngine:
    """Create the GStreamer media engine.

    Raises:
        MediaEngineError: If GStreamer or one of its required plugins is missing
    """
    from sendrecv.media.gst_engine import GstMediaEngine, missing_plugins

    missing = missing_plugins()
    if missing:
        raise MediaEngineError(f"Required gstreamer plugins not found: {', '.join(missing)}")
    return GstMediaEngine(profile=profile)


async def run_call(
    peer_id: str,
    settings: Settings,
    media: MediaEngine,
    channel: Optional[SessionChannel] = None
) -> CallState:
    """Run one call to ``peer_id``.

    Returns:
        Final call state on normal termination

    Raises:
        CallFailed: If the call ends with a fatal fault
    """
    logger = structlog.get_logger(__name__)
    signalling = settings.signalling

    if channel is None:
        channel = SessionChannel(
            url=signalling.server,
            open_timeout=signalling.open_timeout,
            verify_tls=signalling.verify_tls
        )

    coordinator = NegotiationCoordinator(
        peer_id=peer_id,
        channel=channel,
        media=media,
        id_range=(signalling.id_min, signalling.id_max),
        response_timeout=signalling.response_timeout
    )

    task = asyncio.create_task(coordinator.run(), name="call")
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGTERM handler not supported on this platform")

    logger.info("Calling peer", peer_id=peer_id, server=signalling.server)
    return await task


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="WebRTC send/receive peer: calls a peer through a signalling server"
    )
    parser.add_argument(
        "--peer-id",
        required=True,
        help="String ID of the peer to connect to"
    )
    parser.add_argument(
        "--server",
        default=None,
        help="Signalling server to connect to (default from config)"
    )
    parser.add_argument(
        "--profile",
        type=Path,
        default=None,
        help="YAML call profile"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default from config)"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def cli(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    settings = get_settings()
    if args.server:
        settings.signalling.server = args.server

    # Setup logging BEFORE anything else
    setup_logging(
        log_level=args.log_level or settings.system.log_level,
        log_format=settings.system.log_format,
        log_dir=settings.system.log_dir
    )
    logger = structlog.get_logger(__name__)
    logger.info("Starting sendrecv", version=__version__, peer_id=args.peer_id)

    try:
        profile = load_profile(settings, args.profile)
        media = create_media_engine(profile)
    except (FileNotFoundError, ValueError, MediaEngineError) as e:
        logger.error("Startup check failed, not calling", error=str(e))
        sys.exit(EXIT_FAILURE)

    try:
        state = asyncio.run(run_call(args.peer_id, settings, media))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except asyncio.CancelledError:
        logger.info("Terminated")
        sys.exit(EXIT_OK)
    except CallFailed as e:
        logger.error("Call failed", error=str(e), error_type=type(e).__name__)
        sys.exit(EXIT_FAILURE)

    logger.info("Shutdown complete", state=state.name)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    cli()

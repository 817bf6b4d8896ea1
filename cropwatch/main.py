"""Entry point: CLI argument parsing, logging, model load, and stream run."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from cropwatch.config import load_config
from cropwatch.errors import CropwatchError, ModelLoadError
from cropwatch.pipeline import PipelineController
from cropwatch.processing.detector import OnnxDetector
from cropwatch.processing.dispatcher import DetectionDispatcher
from cropwatch.processing.sampler import FrameSampleGate
from cropwatch.recording.crop_writer import CropWriter


def setup_logging(log_dir: str, verbose: bool = False) -> None:
    """Configure logging to the console and, when log_dir is set, a file."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path / "cropwatch.log"))

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cropwatch",
        usage="%(prog)s [-c CONFIG] [-v] <RTSP URL>",
        description="Sample frames from a live RTSP stream, detect objects, "
                    "and save a cropped image per detection",
    )
    parser.add_argument(
        "uri",
        nargs="*",
        help="RTSP stream URI (exactly one)",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("CONFIG_PATH", "config/default.yaml"),
        help="Path to YAML config file (default: config/default.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Wrong arity is a no-op, not an error
    if len(args.uri) != 1:
        parser.print_usage(sys.stderr)
        return 0
    stream_uri = args.uri[0]

    try:
        config = load_config(args.config)
    except CropwatchError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    setup_logging(config.logging.log_dir, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info("Starting cropwatch")
    logger.info("Stream source: %s", stream_uri)
    logger.info("Sampling every %d frames, crops to %s",
                config.sampling.interval, config.export.output_dir)

    # The model must load before any connection attempt
    try:
        detector = OnnxDetector.load(config.inference)
    except ModelLoadError as exc:
        logger.error("Failed to load YOLO model: %s", exc)
        return 1

    controller = PipelineController(
        config,
        gate=FrameSampleGate(config.sampling),
        dispatcher=DetectionDispatcher(detector),
        writer=CropWriter(config.export),
    )

    try:
        controller.start(stream_uri)
        outcome = controller.run_until_terminal()
    except CropwatchError as exc:
        logger.error("Pipeline aborted: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 0
    finally:
        controller.shutdown()
        logger.info("Shutdown complete")

    if not outcome.ok:
        logger.error("Error from %s: %s", outcome.source, outcome.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

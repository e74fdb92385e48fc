#!/usr/bin/env python3
"""
Command-line interface for cellpose-timelapse.

Usage:
    cellpose-timelapse run movie.tif --tool cellpose --model nuclei --diameter 8
    cellpose-timelapse run movie.tif --tool omnipose --cpu --num-threads 4 --t-start 10
    cellpose-timelapse info movie.tif
    cellpose-timelapse validate results/detections.json

Subcommands:
    run         Segment every timepoint of a TIFF time-lapse
    info        Show shape, axes and calibration of an image
    validate    Validate detections.json files

Exit codes: 0 on success, 1 on failure, 130 when interrupted.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from cellpose_timelapse.detection.registry import ToolRegistry
from cellpose_timelapse.io.export import write_detections_csv, write_detections_json
from cellpose_timelapse.io.images import read_volume, write_label_volume
from cellpose_timelapse.processing.frames import ImageVolume, Interval
from cellpose_timelapse.processing.memory import log_memory_status
from cellpose_timelapse.processing.orchestrator import TimelapseSegmenter
from cellpose_timelapse.utils.config import ConfigValidationError, load_config, save_config
from cellpose_timelapse.utils.logging import ProcessingTimer, get_logger, setup_logging
from cellpose_timelapse.utils.progress import TqdmProgressSink
from cellpose_timelapse.utils.schemas import validate_detection_file

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    """Add arguments for the run command."""
    parser.add_argument("image", type=Path, help="TIFF time-lapse to segment")

    # Tool
    tool_group = parser.add_argument_group("Tool")
    tool_group.add_argument(
        "--tool", default="cellpose", choices=ToolRegistry.list_tools(),
        help="Segmentation tool (default: cellpose)",
    )
    tool_group.add_argument("--executable", help="Python interpreter or tool executable")
    model_group = tool_group.add_mutually_exclusive_group()
    model_group.add_argument("--model", help="Pretrained model name (e.g. cyto, nuclei)")
    model_group.add_argument("--custom-model", type=Path, help="Path to a custom model")
    tool_group.add_argument("--chan", type=int, help="Channel to segment (0 = grayscale)")
    tool_group.add_argument("--chan2", type=int, help="Optional nuclear channel (-1 = none)")
    tool_group.add_argument(
        "--diameter", type=float,
        help="Object diameter in physical units (0 = let the tool estimate it)",
    )
    gpu_group = tool_group.add_mutually_exclusive_group()
    gpu_group.add_argument("--gpu", dest="use_gpu", action="store_true", default=None, help="Run on GPU")
    gpu_group.add_argument("--cpu", dest="use_gpu", action="store_false", help="Run on CPU")
    tool_group.add_argument("--3d", dest="do_3d", action="store_true", help="Segment Z stacks as volumes")
    tool_group.add_argument(
        "--output-format", choices=["png", "tif"], default=None,
        help="Mask format requested from the tool (default: png; --3d always saves tif)",
    )
    tool_group.add_argument("--flow-threshold", type=float, help="Flow threshold (advanced tools)")
    tool_group.add_argument("--cellprob-threshold", type=float, help="Cell probability threshold (advanced tools)")
    tool_group.add_argument(
        "--stitch-threshold", type=float,
        help="Segment Z stacks slice by slice and stitch labels above this overlap (advanced tools, with --3d)",
    )
    tool_group.add_argument(
        "--no-resample", dest="resample", action="store_false", default=None,
        help="Compute masks on the network output instead of the resampled image (advanced tools)",
    )
    tool_group.add_argument(
        "--no-simplify-contours", dest="simplify_contours", action="store_false", default=None,
        help="Keep full-resolution contours",
    )

    # Image
    image_group = parser.add_argument_group("Image")
    image_group.add_argument("--axes", help="Axis order of the image, e.g. TCYX (default: from file)")
    image_group.add_argument("--pixel-size", type=float, help="Pixel size in XY (default: from file)")
    image_group.add_argument("--z-spacing", type=float, help="Z step (default: from file)")
    image_group.add_argument("--frame-interval", type=float, help="Time between frames (default: from file)")
    image_group.add_argument("--t-start", type=int, help="First timepoint to process")
    image_group.add_argument("--t-end", type=int, help="Last timepoint to process (inclusive)")

    # Processing
    proc_group = parser.add_argument_group("Processing")
    proc_group.add_argument("--num-threads", type=int, help="Concurrent CPU tool processes")
    proc_group.add_argument("--config", type=Path, help="JSON config file")

    # Output
    output_group = parser.add_argument_group("Output")
    output_group.add_argument(
        "--output-dir", "-o", type=Path,
        help="Output directory (default: <image>_<tool> next to the image)",
    )
    output_group.add_argument("--save-masks", action="store_true", help="Also save the label volume as TIFF")


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""

    parser = argparse.ArgumentParser(
        prog="cellpose-timelapse",
        description="Run Cellpose or Omnipose over every timepoint of a time-lapse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Segment nuclei on a GPU
  cellpose-timelapse run movie.tif --model nuclei --diameter 8

  # Omnipose on CPU with 4 concurrent processes, timepoints 10 to 20
  cellpose-timelapse run movie.tif --tool omnipose --cpu --num-threads 4 --t-start 10 --t-end 20

  # Inspect an image
  cellpose-timelapse info movie.tif
""",
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress most output")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides -v/-q)",
    )
    parser.add_argument("--log-file", type=Path, help="Write logs to file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # === RUN command ===
    run_parser = subparsers.add_parser(
        "run",
        help="Segment a time-lapse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_run_arguments(run_parser)

    # === INFO command ===
    info_parser = subparsers.add_parser("info", help="Show information about an image")
    info_parser.add_argument("path", type=Path, help="TIFF file")
    info_parser.add_argument("--axes", help="Axis order of the image, e.g. TCYX")

    # === VALIDATE command ===
    validate_parser = subparsers.add_parser("validate", help="Validate detections.json files")
    validate_parser.add_argument("files", type=Path, nargs="+", help="JSON files to validate")
    validate_parser.add_argument("--strict", action="store_true", help="Fail on first validation error")

    return parser


def build_tool_params(args: argparse.Namespace) -> Dict[str, Any]:
    """Tool parameters given on the command line; unset ones are omitted."""
    params = {
        "executable": args.executable,
        "model": args.model,
        "custom_model": str(args.custom_model) if args.custom_model else None,
        "chan": args.chan,
        "chan2": args.chan2,
        "diameter_um": args.diameter,
        "use_gpu": args.use_gpu,
        "do_3d": args.do_3d or None,
        "output_format": args.output_format,
        "flow_threshold": args.flow_threshold,
        "cellprob_threshold": args.cellprob_threshold,
        "stitch_threshold": args.stitch_threshold,
        "resample": args.resample,
        "simplify_contours": args.simplify_contours,
    }
    return {k: v for k, v in params.items() if v is not None}


def _load_volume(args: argparse.Namespace) -> ImageVolume:
    volume = read_volume(args.image, axes=args.axes, frame_interval=args.frame_interval)
    if args.pixel_size is not None or args.z_spacing is not None:
        cx, cy, cz = volume.calibration
        if args.pixel_size is not None:
            cx = cy = args.pixel_size
        if args.z_spacing is not None:
            cz = args.z_spacing
        volume = replace(volume, calibration=(cx, cy, cz))
    return volume


def build_interval(volume: ImageVolume, t_start: Optional[int], t_end: Optional[int]) -> Interval:
    """Whole image, optionally restricted in time."""
    interval = Interval.full(volume)
    if interval.t is None or (t_start is None and t_end is None):
        return interval
    lo = t_start if t_start is not None else interval.t[0]
    hi = t_end if t_end is not None else interval.t[1]
    return replace(interval, t=(lo, hi))


def cmd_run(args: argparse.Namespace) -> int:
    """Execute the run command."""
    logger = get_logger(__name__)

    try:
        config = load_config(args.config)
    except ConfigValidationError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    try:
        volume = _load_volume(args)
        interval = build_interval(volume, args.t_start, args.t_end)
        settings = ToolRegistry.settings_from_dict(
            args.tool, build_tool_params(args), volume.calibration, config=config
        )
    except (OSError, ValueError, KeyError) as e:
        logger.error(str(e))
        return EXIT_FAILURE

    output_dir = args.output_dir or args.image.parent / f"{args.image.stem}_{args.tool}"

    with TqdmProgressSink(desc=settings.display_name) as sink:
        segmenter = TimelapseSegmenter(
            volume, interval, settings,
            sink=sink,
            num_threads=args.num_threads,
            config=config,
        )
        if not segmenter.check_input():
            return EXIT_FAILURE
        log_memory_status("Before run")
        try:
            with ProcessingTimer(logger, f"{settings.display_name} segmentation of {volume.name}"):
                ok = segmenter.process()
        except KeyboardInterrupt:
            logger.warning("Interrupted")
            return EXIT_INTERRUPTED

    if not ok:
        if segmenter.is_canceled:
            logger.warning(f"Cancelled: {segmenter.cancel_reason}")
            return EXIT_INTERRUPTED
        return EXIT_FAILURE

    outcome = segmenter.outcome
    parameters = {k: v for k, v in asdict(settings).items() if k != "model"}
    parameters["model"] = settings.model.path
    parameters["interval"] = asdict(interval)

    write_detections_json(
        outcome,
        output_dir / "detections.json",
        image=volume.name,
        tool=args.tool,
        calibration=volume.calibration,
        frame_interval=volume.frame_interval,
        parameters=parameters,
    )
    write_detections_csv(outcome.objects, output_dir / "detections.csv")
    if args.save_masks and outcome.label_volume is not None:
        write_label_volume(outcome.label_volume, output_dir / f"{volume.name}_masks.tif")
    save_config(config, output_dir / "config.json")
    logger.info(f"Wrote {len(outcome.objects)} detection(s) to {output_dir}")

    return EXIT_OK


def cmd_info(args: argparse.Namespace) -> int:
    """Execute the info command."""
    logger = get_logger(__name__)
    try:
        volume = read_volume(args.path, axes=args.axes)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {args.path}: {e}")
        return EXIT_FAILURE

    print(f"File: {args.path}")
    print(f"Shape: {volume.data.shape}")
    print(f"Axes: {volume.axes}")
    print(f"Dtype: {volume.data.dtype}")
    print(f"Calibration (x, y, z): {volume.calibration}")
    print(f"Frame interval: {volume.frame_interval}")
    print(f"Timepoints: {volume.size('T')}")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    """Execute the validate command."""
    logger = get_logger(__name__)

    errors = 0
    for file_path in args.files:
        try:
            result = validate_detection_file(file_path, raise_on_error=True)
            logger.info(f"{file_path}: valid, {result.n_detections} detection(s)")
        except (FileNotFoundError, ValueError) as e:
            logger.error(f"{file_path}: {e}")
            errors += 1
            if args.strict:
                return EXIT_FAILURE

    if errors:
        logger.error(f"{errors} file(s) failed validation")
        return EXIT_FAILURE

    logger.info(f"All {len(args.files)} file(s) valid")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Setup logging
    level = args.log_level or ("DEBUG" if args.verbose else ("WARNING" if args.quiet else "INFO"))
    setup_logging(level=level, log_file=args.log_file)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "info":
        return cmd_info(args)
    elif args.command == "validate":
        return cmd_validate(args)
    else:
        parser.print_help()
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())

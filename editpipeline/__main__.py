"""Command line entry point.

    python -m editpipeline photo.jpg --mask mask.png --out edited.png
    python -m editpipeline photo.jpg --metrics-file run.prom

Runs one request through the pipeline against the configured AI service
(AI_BASE_URL / AI_API_KEY), printing progress events as they arrive.
Ctrl+C cancels the request cleanly.

Exit codes: 0 success, 1 failure, 2 usage error, 130 cancelled.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from editpipeline.core.cancellation import CancellationToken
from editpipeline.core.config import Settings, get_settings
from editpipeline.core.logging import get_logger, setup_logging
from editpipeline.core.metrics import get_metrics_response
from editpipeline.services.http_ai_client import HttpRemoteAIClient
from editpipeline.services.orchestrator import (
    AIPipelineOrchestrator,
    PipelineFailure,
    PipelineRequest,
    PipelineStatus,
    ProgressEvent,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="editpipeline",
        description="Analyze an image and generate an edited version through the remote AI service",
    )
    parser.add_argument("image", type=Path, help="Source image file")
    parser.add_argument("--mask", type=Path, default=None, help="Mask marking the area to edit")
    parser.add_argument(
        "--prompt",
        default=None,
        help="Generation prompt (skips using the analysis text as the prompt)",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=None,
        help="Output file (default: <image>_edited<suffix>)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall deadline in seconds (default: PIPELINE_TIMEOUT)",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        default=None,
        help="Write Prometheus metrics for the run to this file when it finishes",
    )
    return parser


def _print_event(event: ProgressEvent) -> None:
    parts = [f"[{event.sequence:02d}]", event.type.value]
    if event.stage:
        parts.append(f"({event.stage.value})")
    if event.attempt:
        parts.append(f"attempt {event.attempt}")
    if event.message:
        parts.append(f"- {event.message}")
    print(" ".join(parts), flush=True)


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    image = args.image.read_bytes()
    mask = args.mask.read_bytes() if args.mask else None
    request = PipelineRequest.create(image, mask=mask, prompt=args.prompt, timeout=args.timeout)

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    async with HttpRemoteAIClient(settings=settings) as client:
        orchestrator = AIPipelineOrchestrator(client, settings=settings)
        result = await orchestrator.run(request, token=token, on_event=_print_event)

    if isinstance(result, PipelineFailure):
        print(f"{result.status.value}: {result.kind.value} - {result.message}", file=sys.stderr)
        return EXIT_CANCELLED if result.status == PipelineStatus.CANCELLED else EXIT_FAILED

    out_path = args.out or args.image.with_name(f"{args.image.stem}_edited{args.image.suffix}")
    out_path.write_bytes(result.generated_image)
    print(f"analysis: {result.analysis_text}")
    print(f"wrote {out_path} ({len(result.generated_image)} bytes) in {result.elapsed:.1f}s")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    for path in (args.image, args.mask):
        if path is not None and not path.is_file():
            parser.error(f"file not found: {path}")

    settings = get_settings()
    setup_logging(settings)
    exit_code = asyncio.run(_run(args, settings))

    if args.metrics_file is not None:
        args.metrics_file.write_bytes(get_metrics_response())
        logger.info(f"Wrote metrics to {args.metrics_file}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())

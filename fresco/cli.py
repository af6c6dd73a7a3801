# fresco.cli: "fresco" entrypoint (inspect, diagnose, run)
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from . import __version__
from .config import ModelIOSpec, PipelineSettings, StabilizerSettings
from .errors import FrescoError, ModelLoadError
from .logging_config import current_log_path, log_event, setup_logging
from .pipeline import FrameStatus, SegmentationPipeline
from .runtime.engine import OnnxInferenceEngine, configure_onnxruntime
from .runtime.model_config import auto_configure
from .shapes import describe_diagnosis, diagnose_shape_mismatch, scan_square_shapes, suggest_input_dimensions
from .sinks import MaskDirectorySink, MaskSink, MaskVideoSink, MultiSink
from .sources import FrameSource, open_camera, synthetic_source
from .tensor import parse_layout

LOGGER = logging.getLogger(__name__)
LOGGER.addHandler(logging.NullHandler())

app = typer.Typer(add_completion=False, help="Wall segmentation inference-to-mask pipeline.")


def _log(event: str, **info: object) -> None:
    log_event(LOGGER, event, **info)


def _parse_size(value: Optional[str], flag: str) -> Optional[Tuple[int, int]]:
    if value is None:
        return None
    token = value.strip().lower()
    parts = token.split("x")
    if len(parts) != 2:
        raise typer.BadParameter(f"{flag} must look like WIDTHxHEIGHT, got {value!r}")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        raise typer.BadParameter(f"{flag} must look like WIDTHxHEIGHT, got {value!r}") from None
    if width <= 0 or height <= 0:
        raise typer.BadParameter(f"{flag} dimensions must be positive")
    return width, height


def _parse_aspect(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    if "x" in value.lower():
        size = _parse_size(value, "--aspect")
        assert size is not None
        return size[0] / size[1]
    try:
        aspect = float(value)
    except ValueError:
        raise typer.BadParameter(f"--aspect must be WIDTHxHEIGHT or a number, got {value!r}") from None
    if aspect <= 0:
        raise typer.BadParameter("--aspect must be positive")
    return aspect


def _open_engine(model: Path) -> OnnxInferenceEngine:
    try:
        return OnnxInferenceEngine(model)
    except ModelLoadError as exc:
        typer.secho(f"error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(__version__)


@app.command()
def inspect(
    model: Path = typer.Argument(..., help="Path to an .onnx model."),
    classes: Optional[int] = typer.Option(None, "--classes", min=1, help="Class count (skips the probe)."),
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Run a zero frame to read the class count."),
) -> None:
    """Show model inputs/outputs and the auto-configured I/O contract."""
    engine = _open_engine(model)
    try:
        info = engine.model
        typer.echo(f"model: {info.source}")
        for item in info.inputs:
            dims = "x".join("?" if d is None else str(d) for d in item.declared_shape)
            typer.echo(f"input: {item.name} [{dims}]")
        for name in info.outputs:
            typer.echo(f"output: {name}")
        try:
            spec = auto_configure(engine, classes, probe=probe)
        except FrescoError as exc:
            typer.secho(f"auto-configure failed: {exc}", err=True, fg=typer.colors.YELLOW)
            raise typer.Exit(code=1) from exc
        typer.echo(f"spec: {spec.describe()}")
    finally:
        engine.close()


@app.command()
def diagnose(
    count: int = typer.Argument(..., min=1, help="Number of elements in the output buffer."),
    classes: int = typer.Option(..., "--classes", "-c", min=1, help="Expected class count."),
    aspect: Optional[str] = typer.Option(None, "--aspect", help="Target aspect as WIDTHxHEIGHT or a ratio."),
    limit: int = typer.Option(10, "--limit", min=1, help="Candidates to print."),
    channels: int = typer.Option(3, "--channels", min=1, help="Input channels for the size suggestion."),
    scan: bool = typer.Option(False, "--scan", help="Also list class counts giving a square output."),
) -> None:
    """Explain which output shapes could produce COUNT elements."""
    diagnosis = diagnose_shape_mismatch(count, classes, target_aspect=_parse_aspect(aspect))
    for line in describe_diagnosis(diagnosis, limit=limit):
        typer.echo(line)
    suggestion = suggest_input_dimensions(count, classes, channels)
    if suggestion is not None:
        kind = "matches" if suggestion.exact else "guess"
        typer.echo(
            f"suggested input: {suggestion.input_width}x{suggestion.input_height}x{suggestion.input_channels} "
            f"-> output {suggestion.output_width}x{suggestion.output_height} "
            f"(scale {suggestion.scale:.3f}, {kind})"
        )
    if scan:
        for class_count, side in scan_square_shapes(count):
            typer.echo(f"square: {class_count} classes -> {side}x{side}")
    if diagnosis.format_mismatch:
        raise typer.Exit(code=1)


def _make_source(source: str, frames: Optional[int], size: Optional[Tuple[int, int]]) -> FrameSource:
    if source.strip().lower() in {"synthetic", "synth"}:
        return synthetic_source(size=size or (640, 480), count=frames)
    width, height = size if size else (None, None)
    return open_camera(source, width=width, height=height)


@app.command()
def run(
    model: Path = typer.Argument(..., help="Path to an .onnx model."),
    source: str = typer.Option("synthetic", "--source", "-s", help="'synthetic', a camera index or a video path."),
    frames: Optional[int] = typer.Option(None, "--frames", "-n", min=1, help="Stop after this many frames."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Directory for mask PNGs."),
    video: Optional[Path] = typer.Option(None, "--video", help="Write masks to a grayscale video."),
    frame_size: Optional[str] = typer.Option(None, "--frame-size", help="Capture/synthetic size WIDTHxHEIGHT."),
    input_size: Optional[str] = typer.Option(None, "--input-size", help="Model input WIDTHxHEIGHT (overrides detection)."),
    layout: Optional[str] = typer.Option(None, "--layout", help="nhwc or nchw (overrides detection)."),
    classes: Optional[int] = typer.Option(None, "--classes", min=1, help="Output class count."),
    output_name: Optional[str] = typer.Option(None, "--output-name", help="Output tensor to decode."),
    target_class: Optional[int] = typer.Option(None, "--target-class", min=0, help="Class to mask."),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Activation threshold."),
    argmax: bool = typer.Option(False, "--argmax", help="Decode with argmax instead of a threshold."),
    interval: Optional[int] = typer.Option(None, "--interval", min=1, help="Process every Nth frame."),
    smoothing: Optional[bool] = typer.Option(None, "--smoothing/--no-smoothing", help="Temporal smoothing."),
    ort_threads: Optional[int] = typer.Option(None, "--ort-threads", min=1, help="ONNX Runtime intra-op threads."),
    ort_execution: Optional[str] = typer.Option(None, "--ort-execution", help="sequential or parallel."),
) -> None:
    """Run frames from SOURCE through MODEL and save the masks."""
    if ort_execution is not None and ort_execution.strip().lower() not in {"sequential", "parallel"}:
        raise typer.BadParameter("--ort-execution must be sequential or parallel")
    try:
        layout_value = parse_layout(layout) if layout else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None
    model_size = _parse_size(input_size, "--input-size")
    capture_size = _parse_size(frame_size, "--frame-size")
    configure_onnxruntime(threads=ort_threads, execution=ort_execution)

    defaults = PipelineSettings.from_env()
    settings = PipelineSettings(
        target_class_id=defaults.target_class_id if target_class is None else target_class,
        threshold=defaults.threshold if threshold is None else threshold,
        frame_interval=defaults.frame_interval if interval is None else interval,
        stabilizer=StabilizerSettings(
            enabled=defaults.stabilizer.enabled if smoothing is None else smoothing,
            base_factor=defaults.stabilizer.base_factor,
            snap_threshold=defaults.stabilizer.snap_threshold,
        ),
    )

    engine = _open_engine(model)
    try:
        spec: ModelIOSpec = auto_configure(engine, classes, output_name=output_name)
    except FrescoError as exc:
        engine.close()
        typer.secho(f"auto-configure failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    overrides: dict = {}
    if model_size is not None:
        overrides.update(input_width=model_size[0], input_height=model_size[1])
    if layout_value is not None:
        overrides["layout"] = layout_value
    if argmax:
        overrides["decode_mode"] = "argmax"
    if overrides:
        spec = spec.with_changes(**overrides)
    _log("fresco.cli.run", model=model, source=source, spec=spec.describe())

    sinks: List[MaskSink] = []
    if out is not None:
        sinks.append(MaskDirectorySink(out))
    if video is not None:
        sinks.append(MaskVideoSink(video))
    sink = MultiSink(*sinks)

    try:
        frame_source = _make_source(source, frames, capture_size)
    except RuntimeError as exc:
        engine.close()
        typer.secho(f"error: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc

    statuses: dict = {}
    with SegmentationPipeline(engine, spec, settings) as pipeline:
        pipeline.add_listener(sink.write)
        try:
            seen = 0
            for pixels, stamp in frame_source.frames():
                height, width = pixels.shape[:2]
                report = pipeline.submit_frame(pixels, width, height, stamp)
                statuses[report.status] = statuses.get(report.status, 0) + 1
                seen += 1
                if frames is not None and seen >= frames:
                    break
        except KeyboardInterrupt:
            typer.echo("interrupted")
        finally:
            frame_source.release()
            sink.close()
        stats = pipeline.stats
        diagnosis = pipeline.last_diagnosis

    typer.echo(
        f"frames: submitted={stats.submitted} processed={stats.processed} "
        f"skipped={stats.skipped} failed={stats.failed}"
    )
    if stats.mean_latency_ms is not None:
        typer.echo(f"latency: {stats.mean_latency_ms:.1f} ms (last {len(stats.latencies_ms)})")
    if stats.last_coverage is not None:
        typer.echo(f"coverage: {stats.last_coverage:.3f}")
    for status in FrameStatus:
        if statuses.get(status):
            typer.echo(f"status {status.value}: {statuses[status]}")
    if diagnosis is not None:
        for line in describe_diagnosis(diagnosis, limit=5):
            typer.echo(line)
    log_path = current_log_path()
    if log_path is not None and stats.failed:
        typer.echo(f"log: {log_path}")
    if stats.processed == 0 and stats.failed:
        raise typer.Exit(code=1)


def main() -> None:  # pragma: no cover
    setup_logging()
    try:
        app()
    except KeyboardInterrupt:
        raise SystemExit(0)


if __name__ == "__main__":  # pragma: no cover
    main()

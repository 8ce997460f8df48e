from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional

import typer
from pydantic import BaseModel, TypeAdapter

from promtsdb_adapter.client import OpenTSDBClient
from promtsdb_adapter.config import Settings, load_settings
from promtsdb_adapter.logging_utils import (
    JsonlLogger,
    RunContext,
    command_failed_event,
    default_log_path,
    new_run_context,
    run_summary_event,
)
from promtsdb_adapter.matcher import MatchType, new_label_matcher, parse_matcher
from promtsdb_adapter.model import METRIC_NAME_LABEL, Query, WriteSample

app = typer.Typer(add_completion=False, help="promtsdb_adapter CLI (Prometheus samples <-> OpenTSDB)")


class _SampleRecord(BaseModel):
    labels: Dict[str, str]
    timestamp_ms: int
    value: float


_SAMPLE_RECORDS = TypeAdapter(List[_SampleRecord])


def load_write_samples(path: Path) -> List[WriteSample]:
    """Load a JSON array of {labels, timestamp_ms, value} objects."""

    # json.loads accepts NaN/Infinity literals, which the write path filters out.
    raw = json.loads(path.read_text(encoding="utf-8"))
    records = _SAMPLE_RECORDS.validate_python(raw)
    return [WriteSample(labels=r.labels, timestamp_ms=r.timestamp_ms, value=r.value) for r in records]


def build_queries(*, metrics: List[str], matches: List[str], start_ms: int, end_ms: int) -> List[Query]:
    """One query per metric, all sharing the extra matchers.

    Without --metric the matchers must carry the __name__ matcher themselves.
    """

    shared = [parse_matcher(m) for m in matches]
    if not metrics:
        return [Query(start_timestamp_ms=start_ms, end_timestamp_ms=end_ms, matchers=tuple(shared))]

    return [
        Query(
            start_timestamp_ms=start_ms,
            end_timestamp_ms=end_ms,
            matchers=(new_label_matcher(MatchType.EQUAL, METRIC_NAME_LABEL, metric), *shared),
        )
        for metric in metrics
    ]


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        exists=True,
        dir_okay=False,
        file_okay=True,
        readable=True,
        help="Path to YAML config (optional)",
    ),
) -> None:
    """Load settings and store them in Typer context."""

    settings = load_settings(config)
    settings.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    ctx.obj = {"settings": settings}


def _start(settings: Settings, command: str, **fields: object) -> tuple[RunContext, JsonlLogger]:
    run_ctx = new_run_context(command)
    logger = JsonlLogger(default_log_path(settings.paths.logs_dir, now_utc=run_ctx.started_at_utc))
    logger.log(
        {
            "event": "command_start",
            "command": command,
            "run_id": run_ctx.run_id,
            "opentsdb_url": settings.opentsdb.url,
            **fields,
        }
    )
    return run_ctx, logger


def _fail(logger: JsonlLogger, run_ctx: RunContext, exc: Exception) -> typer.Exit:
    logger.log(command_failed_event(ctx=run_ctx, exc=exc))
    logger.log(run_summary_event(ctx=run_ctx, ok=False))
    typer.echo(f"{run_ctx.command} failed: {type(exc).__name__}: {exc}", err=True)
    return typer.Exit(code=1)


@app.command()
def write(
    ctx: typer.Context,
    file: Path = typer.Option(
        ..., "--file", exists=True, dir_okay=False, readable=True, help="JSON array of samples"
    ),
) -> None:
    """Send a batch of samples to OpenTSDB /api/put."""

    settings: Settings = ctx.obj["settings"]
    run_ctx, logger = _start(settings, "write", file=str(file))

    try:
        samples = load_write_samples(file)
        with OpenTSDBClient(settings.opentsdb) as client:
            sent = client.write(samples)
    except Exception as exc:
        raise _fail(logger, run_ctx, exc) from exc

    counts = {"submitted": len(samples), "sent": sent, "dropped": len(samples) - sent}
    logger.log({"event": "write_done", "run_id": run_ctx.run_id, **counts})
    logger.log(run_summary_event(ctx=run_ctx, ok=True, counts=counts))
    typer.echo(f"sent {sent} of {len(samples)} samples")


@app.command()
def read(
    ctx: typer.Context,
    metric: Optional[List[str]] = typer.Option(None, "--metric", help="Metric name; one query per metric"),
    match: Optional[List[str]] = typer.Option(None, "--match", "-m", help='Label matcher, e.g. job="api" or env!=dev'),
    start: int = typer.Option(..., "--start", help="Range start (unix ms)"),
    end: int = typer.Option(..., "--end", help="Range end (unix ms)"),
) -> None:
    """Query OpenTSDB and print the merged series as JSON."""

    settings: Settings = ctx.obj["settings"]
    run_ctx, logger = _start(settings, "read", metrics=metric, matchers=match, start=start, end=end)

    try:
        queries = build_queries(metrics=metric or [], matches=match or [], start_ms=start, end_ms=end)
        with OpenTSDBClient(settings.opentsdb) as client:
            series = client.read(queries)
    except Exception as exc:
        raise _fail(logger, run_ctx, exc) from exc

    counts = {"queries": len(queries), "series": len(series), "samples": sum(len(s.samples) for s in series)}
    logger.log({"event": "read_done", "run_id": run_ctx.run_id, **counts})
    logger.log(run_summary_event(ctx=run_ctx, ok=True, counts=counts))
    typer.echo(json.dumps([s.to_dict() for s in series], indent=2, sort_keys=True))


@app.command()
def name(ctx: typer.Context) -> None:
    """Print the storage backend name."""

    settings: Settings = ctx.obj["settings"]
    with OpenTSDBClient(settings.opentsdb) as client:
        typer.echo(client.name())


if __name__ == "__main__":
    app()

"""Bhasha CLI - curate Indic-language corpora and fine-tune models on them."""

import asyncio
from pathlib import Path
from typing import Optional
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from bhasha import __version__
from bhasha.config import BhashaConfig, validate_config
from bhasha.core.context import RequestContext
from bhasha.core.errors import BhashaError, classify_error
from bhasha.logging import setup_logging

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "running": "cyan",
    "failed": "red",
    "cancelled": "yellow",
    "pending": "dim",
}


def _color(status: str) -> str:
    color = STATUS_COLORS.get(status, "blue")
    return f"[{color}]{status}[/{color}]"


def _parse_mappings(mappings: tuple[str, ...]) -> dict[str, str]:
    parsed = {}
    for mapping in mappings:
        target, sep, source = mapping.partition("=")
        if not sep or not target:
            raise click.BadParameter(f"Expected TARGET=COLUMN, got {mapping!r}", param_hint="--map")
        parsed[target.strip()] = source.strip()
    return parsed


def _parse_split(split: str) -> tuple[float, float, float]:
    parts = [p for p in split.split("/") if p]
    if len(parts) != 3:
        raise click.BadParameter("Expected TRAIN/VALIDATION/TEST, e.g. 80/10/10", param_hint="--split")
    try:
        values = [float(p) for p in parts]
    except ValueError:
        raise click.BadParameter(f"Not numeric: {split}", param_hint="--split")
    total = sum(values)
    if total <= 0:
        raise click.BadParameter("Split ratios must sum to more than zero", param_hint="--split")
    return tuple(v / total for v in values)


class Session:
    """Per-invocation state shared by all commands."""

    def __init__(self, config: BhashaConfig, user: str):
        self.config = config
        self.ctx = RequestContext(user_id=user)
        self._app = None

    @property
    def app(self):
        if self._app is None:
            from bhasha.app import BhashaApp

            self._app = BhashaApp(self.config)
        return self._app

    def run(self, coro):
        """Run a coroutine, turning Bhasha errors into a clean exit."""
        try:
            return asyncio.run(coro)
        except BhashaError as e:
            classified = classify_error(e)
            console.print(f"[red]✗ {e}[/red]")
            if classified.suggestion:
                console.print(f"[dim]{classified.suggestion}[/dim]")
            raise SystemExit(1)


pass_session = click.make_pass_decorator(Session)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to bhasha.toml")
@click.option("--user", "-u", envvar="BHASHA_USER", default="local", help="Acting user id")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(click_ctx: click.Context, config_path: Optional[str], user: str, verbose: bool):
    """Bhasha - curation and fine-tuning for low-resource languages"""
    config = BhashaConfig.load(config_path)
    setup_logging(
        level="DEBUG" if verbose else config.log_level,
        log_file=str(config.log_file) if config.log_file else None,
        json_format=config.log_json,
    )
    click_ctx.obj = Session(config, user)


@cli.command()
@pass_session
def check(session: Session):
    """Check configuration and print warnings."""
    config = session.config
    console.print(f"[dim]Database:[/] {config.db_path}")
    console.print(f"[dim]Poll interval:[/] {config.poll_interval_seconds:.0f}s")

    warnings = validate_config(config)
    if not warnings:
        console.print("[green]✓ Configuration OK[/]")
        return
    for warning in warnings:
        console.print(f"[yellow]⚠ {warning}[/]")


# ========================================
# Import pipelines
# ========================================


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "-n", help="Dataset name (defaults to the file name)")
@click.option(
    "--source",
    type=click.Choice(["upload", "kaggle", "url"]),
    default="upload",
    help="Where the data came from",
)
@click.option("--map", "mappings", multiple=True, metavar="TARGET=COLUMN", help="Field mapping")
@click.option("--detect-language", is_flag=True, help="Guess missing languages from the script")
@click.option("--keep-duplicates", is_flag=True, help="Keep exact-text duplicates")
@click.option("--analyze", is_flag=True, help="Queue AI quality analysis for imported content")
@click.option("--content-type", default="text", help="Default content type")
@click.option(
    "--status", type=click.Choice(["draft", "published"]), default="draft", help="Imported content status"
)
@click.option("--min-quality", default=0.0, help="Quality score for rows without one")
@click.option("--create-dataset", is_flag=True, help="Build a dataset from the imported content")
@click.option("--dataset-name", help="Name of the automatic dataset")
@click.option("--finetune", is_flag=True, help="Start fine-tuning on the automatic dataset")
@click.option("--provider", default="openai", help="Fine-tuning provider")
@click.option("--model", "-m", default="gpt-3.5-turbo", help="Base model")
@click.option("--connection", help="LLM connection id for the custom provider")
@click.option("--wait/--no-wait", default=True, help="Run the pipeline now instead of leaving it to the worker")
@pass_session
def import_data(
    session: Session,
    path: str,
    name: Optional[str],
    source: str,
    mappings: tuple[str, ...],
    detect_language: bool,
    keep_duplicates: bool,
    analyze: bool,
    content_type: str,
    status: str,
    min_quality: float,
    create_dataset: bool,
    dataset_name: Optional[str],
    finetune: bool,
    provider: str,
    model: str,
    connection: Optional[str],
    wait: bool,
):
    """Import a CSV, JSON or JSON Lines file through the pipeline."""
    from bhasha.pipeline.models import DatasetSettings, FinetuneSettings, PipelineConfig

    if finetune and not create_dataset:
        raise click.UsageError("--finetune needs --create-dataset")

    file_path = Path(path).resolve()
    config = PipelineConfig(
        field_mappings=_parse_mappings(mappings),
        auto_detect_language=detect_language,
        remove_duplicates=not keep_duplicates,
        enable_ai_analysis=analyze,
        default_content_type=content_type,
        default_status=status,
        min_quality_threshold=min_quality,
        auto_create_dataset=create_dataset,
        dataset=DatasetSettings(name=dataset_name),
        auto_finetune=finetune,
        finetune=FinetuneSettings(provider=provider, model=model, connection_id=connection),
    )

    async def execute():
        app = session.app
        external_id = await app.externals.create(
            session.ctx,
            name=name or file_path.stem,
            source=source,
            source_identifier=str(file_path),
            file_path=str(file_path),
        )
        pipeline_id = await app.pipelines.create(session.ctx, external_id, config)
        console.print(f"[dim]Pipeline: {pipeline_id}[/dim]")

        if wait:
            await app.scheduler.drain()
        return await app.pipelines.get_status(session.ctx, pipeline_id)

    console.print(Panel(f"[bold blue]Importing:[/] {file_path.name}", title="Bhasha"))
    pipeline = session.run(execute())
    _print_pipeline(pipeline)


def _print_pipeline(pipeline) -> None:
    console.print(f"Status: {_color(pipeline.status.value)}")
    console.print(f"Step: {pipeline.current_step}/{pipeline.total_steps}")
    console.print(f"Content ingested: {len(pipeline.content_ids)}")
    if pipeline.dataset_id:
        console.print(f"Dataset: {pipeline.dataset_id}")
    if pipeline.finetune_job_id:
        console.print(f"Fine-tune job: {pipeline.finetune_job_id}")
    if pipeline.error_log:
        console.print(f"\n[yellow]{len(pipeline.error_log)} error(s):[/]")
        for error in pipeline.error_log[:10]:
            console.print(f"  • {error}")
        if len(pipeline.error_log) > 10:
            console.print(f"  [dim]... and {len(pipeline.error_log) - 10} more[/dim]")


@cli.group()
def pipeline():
    """Inspect and cancel import pipelines."""
    pass


@pipeline.command("status")
@click.argument("pipeline_id")
@pass_session
def pipeline_status(session: Session, pipeline_id: str):
    """Show a pipeline's progress."""
    result = session.run(session.app.pipelines.get_status(session.ctx, pipeline_id))
    _print_pipeline(result)


@pipeline.command("cancel")
@click.argument("pipeline_id")
@pass_session
def pipeline_cancel(session: Session, pipeline_id: str):
    """Cancel a running pipeline."""
    session.run(session.app.pipelines.cancel(session.ctx, pipeline_id))
    console.print(f"[green]✓ Pipeline {pipeline_id} cancelled[/]")


@pipeline.command("list")
@click.option("--status", help="Only pipelines in this status")
@pass_session
def pipeline_list(session: Session, status: Optional[str]):
    """List your import pipelines."""
    pipelines = session.run(session.app.pipelines.list_pipelines(session.ctx, status))
    if not pipelines:
        console.print("[yellow]No pipelines found[/]")
        return

    table = Table(title="Import Pipelines", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Step", justify="right")
    table.add_column("Content", justify="right")
    table.add_column("Errors", justify="right")
    for p in pipelines:
        table.add_row(
            p.id,
            _color(p.status.value),
            f"{p.current_step}/{p.total_steps}",
            str(len(p.content_ids)),
            str(len(p.error_log)),
        )
    console.print(table)


# ========================================
# Datasets
# ========================================


@cli.group()
def dataset():
    """Build, normalize and export datasets."""
    pass


@dataset.command("create")
@click.argument("name")
@click.option("--language", "-l", required=True, help="Language of the dataset")
@click.option("--content-type", help="Only this content type")
@click.option("--min-quality", type=float, help="Minimum content quality score")
@pass_session
def dataset_create(session: Session, name: str, language: str, content_type: Optional[str], min_quality: Optional[float]):
    """Build a dataset from published content."""

    async def execute():
        dataset_id = await session.app.datasets.build(
            session.ctx, name, language.lower(), content_type=content_type, min_quality=min_quality
        )
        return await session.app.datasets.get(dataset_id)

    created = session.run(execute())
    console.print(f"[green]✓ Dataset {created.id} created[/]")
    console.print(f"Entries: {created.size}")
    console.print(f"Quality: {created.quality_score:.2f}")
    if created.metadata.duplicates_removed:
        console.print(f"[dim]Duplicates removed: {created.metadata.duplicates_removed}[/dim]")


@dataset.command("normalize")
@click.argument("dataset_id")
@click.option("--min-length", default=10, help="Minimum text length")
@click.option("--max-length", default=10000, help="Maximum text length")
@click.option("--min-quality", type=float, help="Minimum quality score")
@click.option("--keep-duplicates", is_flag=True, help="Skip duplicate removal")
@pass_session
def dataset_normalize(
    session: Session,
    dataset_id: str,
    min_length: int,
    max_length: int,
    min_quality: Optional[float],
    keep_duplicates: bool,
):
    """Re-filter a dataset and recompute its statistics."""
    report = session.run(
        session.app.datasets.normalize(
            session.ctx,
            dataset_id,
            min_length=min_length,
            max_length=max_length,
            min_quality=min_quality,
            remove_duplicates=not keep_duplicates,
        )
    )
    console.print(f"[green]✓ {report.original_size} → {report.new_size} entries ({report.removed} removed)[/]")


@dataset.command("stats")
@click.argument("dataset_id")
@pass_session
def dataset_stats(session: Session, dataset_id: str):
    """Show dataset statistics and token distribution."""
    stats = session.run(session.app.datasets.stats(dataset_id))

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Language", stats["language"])
    table.add_row("Content type", stats["content_type"])
    table.add_row("Entries", str(stats["total_entries"]))
    table.add_row("Quality", f"{stats['quality_score']:.2f}")
    table.add_row("Avg tokens", str(stats["avg_tokens"]))
    if stats["regions"]:
        table.add_row("Regions", ", ".join(stats["regions"]))

    distribution = stats["token_distribution"]
    if distribution:
        table.add_row("Median / std dev", f"{distribution['median']} / {distribution['std_dev']}")
        table.add_row("Min / max", f"{distribution['min']} / {distribution['max']}")
        table.add_row("p25 / p75 / p95", f"{distribution['p25']} / {distribution['p75']} / {distribution['p95']}")
        buckets = distribution["distribution"]
        table.add_row("Short / medium / long", f"{buckets['short']} / {buckets['medium']} / {buckets['long']}")
    console.print(table)


@dataset.command("export")
@click.argument("dataset_id")
@click.option("--format", "fmt", type=click.Choice(["jsonl", "json", "csv"]), default="jsonl")
@click.option("--split", "split", help="TRAIN/VALIDATION/TEST ratios, e.g. 80/10/10")
@click.option("--seed", type=int, help="Shuffle seed")
@click.option("--output", "-o", type=click.Path(file_okay=False), default=".", help="Output directory")
@pass_session
def dataset_export(session: Session, dataset_id: str, fmt: str, split: Optional[str], seed: Optional[int], output: str):
    """Write train/validation/test files for a dataset."""
    ratios = _parse_split(split) if split else session.config.curation.default_dataset_split
    export = session.run(session.app.datasets.export(dataset_id, split=ratios, seed=seed))

    out_dir = Path(output)
    out_dir.mkdir(parents=True, exist_ok=True)
    for name in ("train", "validation", "test"):
        records = getattr(export, name)
        if not records:
            continue
        target = out_dir / f"{dataset_id}_{name}.{fmt}"
        target.write_text(export.render(name, fmt), encoding="utf-8")
        console.print(f"[green]✓[/] {target} ({len(records)} records)")


@cli.command()
@click.argument("dataset_id")
@pass_session
def recommend(session: Session, dataset_id: str):
    """Recommend fine-tuning hyperparameters for a dataset."""
    result = session.run(session.app.manager.recommend(dataset_id))
    params = result.parameters

    table = Table(title="Recommended Hyperparameters", show_header=True, header_style="bold cyan")
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Learning rate", f"{params.learning_rate:g}")
    table.add_row("Batch size", str(params.batch_size))
    table.add_row("Epochs", str(params.epochs))
    table.add_row("LoRA rank", str(params.lora_rank))
    table.add_row("LoRA alpha", str(params.lora_alpha))
    console.print(table)

    for key, reason in result.reasoning.items():
        console.print(f"[dim]{key}:[/] {reason}")
    console.print(
        f"\nEstimated cost: ${result.estimated_cost:.2f}  "
        f"time: ~{result.estimated_time_minutes} min  "
        f"confidence: {result.confidence:.0%}"
    )


# ========================================
# Fine-tuning
# ========================================


@cli.group()
def finetune():
    """Create, poll and cancel fine-tune jobs."""
    pass


@finetune.command("create")
@click.argument("dataset_id")
@click.option("--provider", default="openai", help="Fine-tuning provider")
@click.option("--model", "-m", default="gpt-3.5-turbo", help="Base model")
@click.option("--connection", help="LLM connection id for the custom provider")
@click.option("--epochs", type=int, help="Override recommended epochs")
@click.option("--batch-size", type=int, help="Override recommended batch size")
@click.option("--learning-rate", type=float, help="Override recommended learning rate")
@pass_session
def finetune_create(
    session: Session,
    dataset_id: str,
    provider: str,
    model: str,
    connection: Optional[str],
    epochs: Optional[int],
    batch_size: Optional[int],
    learning_rate: Optional[float],
):
    """Start a fine-tune job with recommended hyperparameters."""
    from bhasha.curation.recommender import Hyperparameters

    overrides = {
        "epochs": epochs,
        "batch_size": batch_size,
        "learning_rate": learning_rate,
    }

    async def execute():
        manager = session.app.manager
        recommendation = await manager.recommend(dataset_id)
        params = recommendation.parameters.to_dict()
        params.update({k: v for k, v in overrides.items() if v is not None})
        job_id = await manager.start(
            session.ctx,
            dataset_id,
            Hyperparameters.from_dict(params),
            provider=provider,
            model=model,
            connection_id=connection,
        )
        return await manager.get_job(job_id)

    job = session.run(execute())
    console.print(f"[green]✓ Job {job.id} submitted[/]")
    console.print(f"Provider job: {job.provider_job_id}")
    console.print(f"Estimated cost: ${job.estimated_cost:.2f}, ~{job.estimated_time_minutes} min")


@finetune.command("poll")
@click.argument("job_id", required=False)
@pass_session
def finetune_poll(session: Session, job_id: Optional[str]):
    """Refresh one job, or every running job."""
    manager = session.app.manager
    if job_id is None:
        count = session.run(manager.poll_running_jobs())
        console.print(f"[dim]Polled {count} running job(s)[/dim]")
        return

    async def execute():
        await manager.get_status(session.ctx, job_id)
        await manager.poll(job_id)
        return await manager.get_job(job_id)

    job = session.run(execute())
    console.print(f"Status: {_color(job.status.value)}")
    if job.metrics.loss:
        console.print(f"Loss: {job.metrics.loss[-1]:.4f} (step {job.metrics.steps})")
    if job.model_id:
        console.print(f"Model: {job.model_id}")
    if job.error:
        console.print(f"[red]Error: {job.error}[/]")


@finetune.command("cancel")
@click.argument("job_id")
@pass_session
def finetune_cancel(session: Session, job_id: str):
    """Cancel a fine-tune job."""
    session.run(session.app.manager.cancel(session.ctx, job_id))
    console.print(f"[green]✓ Job {job_id} cancelled[/]")


@finetune.command("list")
@click.option("--status", help="Only jobs in this status")
@click.option("--limit", "-l", default=20, help="Number of jobs to list")
@pass_session
def finetune_list(session: Session, status: Optional[str], limit: int):
    """List your fine-tune jobs."""
    jobs = session.run(session.app.manager.list_jobs(session.ctx.user_id, status, limit))
    if not jobs:
        console.print("[yellow]No fine-tune jobs found[/]")
        return

    table = Table(title="Fine-tune Jobs", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Cost", justify="right")
    for job in jobs:
        table.add_row(
            job.id,
            job.provider,
            job.model,
            _color(job.status.value),
            f"${job.estimated_cost:.2f}",
        )
    console.print(table)


@cli.command()
@pass_session
def worker(session: Session):
    """Run the background worker until interrupted."""
    app = session.app
    console.print(
        Panel(
            f"Polling running jobs every {session.config.poll_interval_seconds:.0f}s",
            title="Bhasha worker",
        )
    )
    try:
        asyncio.run(app.scheduler.run_forever(idle_seconds=session.config.worker_idle_seconds))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/]")


if __name__ == "__main__":
    cli()

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
import uvicorn

from deploy_pipeline.definitions import load_pipeline, load_targets
from deploy_pipeline.errors import PipelineError
from deploy_pipeline.models import RunStatus, Trigger, TriggerOrigin
from deploy_pipeline.run_store import RunStore
from deploy_pipeline.service import build_engine
from deploy_pipeline.settings import get_settings

logger = logging.getLogger(__name__)


def _load_definitions(pipeline_files: Tuple[str, ...], targets_file: Optional[str]):
    pipelines = [load_pipeline(path) for path in pipeline_files]
    targets = load_targets(targets_file) if targets_file else {}
    return pipelines, targets


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to PIPELINE_LOG_LEVEL)')
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """Deploy Pipeline orchestrator CLI"""
    settings = get_settings()
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = settings


@cli.command()
@click.argument('pipeline_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--targets', 'targets_file', type=click.Path(exists=True, dir_okay=False),
              help='Deployment targets definition file')
@click.option('--revision', required=True, help='Source revision to build and deploy')
@click.option('--environment', required=True, help='Target environment')
@click.pass_obj
def run(settings, pipeline_file: str, targets_file: Optional[str], revision: str, environment: str):
    """Run a pipeline to completion in the foreground"""
    try:
        pipelines, targets = _load_definitions((pipeline_file,), targets_file)
    except PipelineError as e:
        raise click.ClickException(str(e))

    async def _run():
        engine = build_engine(pipelines, targets, settings=settings,
                              hooks_dir=Path(pipeline_file).resolve().parent)
        trigger = Trigger(source_revision=revision, environment=environment, origin=TriggerOrigin.MANUAL.value)
        pipeline_run = engine.trigger(trigger)
        task = engine.start(pipeline_run)
        try:
            await task
        finally:
            await engine.notifier.drain(timeout=60)
        return pipeline_run

    try:
        pipeline_run = asyncio.run(_run())
    except PipelineError as e:
        raise click.ClickException(str(e))

    click.echo(f"Run {pipeline_run.id}: {pipeline_run.status}")
    for stage in pipeline_run.stages:
        line = f"  {stage.name:<20} {stage.status:<12} attempts={stage.attempts}"
        if stage.error:
            line += f"  {stage.error}"
        click.echo(line)

    if pipeline_run.status != RunStatus.SUCCEEDED.value:
        sys.exit(1)


@cli.command()
@click.argument('run_id')
@click.option('--logs/--no-logs', default=False, help='Print per-stage logs')
@click.option('--json', 'as_json', is_flag=True, help='Print the run as JSON')
@click.pass_obj
def status(settings, run_id: str, logs: bool, as_json: bool):
    """Show the status of a pipeline run"""
    try:
        pipeline_run = RunStore(settings.state_dir).load_run(run_id)
    except PipelineError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(pipeline_run.to_dict(), indent=2))
        return

    click.echo(f"Run {pipeline_run.id} ({pipeline_run.pipeline}): {pipeline_run.status}")
    click.echo(f"  revision {pipeline_run.trigger.source_revision} -> {pipeline_run.trigger.environment}")
    if pipeline_run.error:
        click.echo(f"  error: {pipeline_run.error}")
    for stage in pipeline_run.stages:
        click.echo(f"  {stage.name:<20} {stage.status:<12} attempts={stage.attempts}")
        if logs:
            for line in stage.logs:
                click.echo(f"    | {line}")


@cli.command(name='runs')
@click.option('--pipeline', default=None, help='Only show runs of this pipeline')
@click.option('--limit', default=20, type=int, help='Maximum runs to show')
@click.pass_obj
def list_runs(settings, pipeline: Optional[str], limit: int):
    """List recent pipeline runs"""
    for pipeline_run in RunStore(settings.state_dir).list_runs(pipeline)[:limit]:
        click.echo(
            f"{pipeline_run.id}  {pipeline_run.pipeline:<16} {pipeline_run.status:<12} "
            f"{pipeline_run.trigger.source_revision} -> {pipeline_run.trigger.environment}"
        )


@cli.command()
@click.argument('target')
@click.option('--targets', 'targets_file', type=click.Path(exists=True, dir_okay=False),
              help='Deployment targets definition file')
@click.option('--reason', default='manual rollback', help='Reason recorded on the rollout')
@click.pass_obj
def rollback(settings, target: str, targets_file: Optional[str], reason: str):
    """Roll back a pending rollout on TARGET (no-op when none is pending)"""
    try:
        _, targets = _load_definitions((), targets_file)
        engine = build_engine([], targets, settings=settings)
        rolled_back = asyncio.run(engine.controller.rollback(target, reason))
    except PipelineError as e:
        raise click.ClickException(str(e))

    if rolled_back:
        click.echo(f"{target} rolled back to {engine.controller.registry.get(target).revision}")
    else:
        click.echo(f"{target} has no pending rollout; nothing to do")


@cli.command()
@click.argument('pipeline_files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--targets', 'targets_file', type=click.Path(exists=True, dir_okay=False),
              help='Deployment targets definition file')
@click.option('--host', default='0.0.0.0', help='API host address')
@click.option('--port', default=8000, type=int, help='API port')
@click.pass_obj
def serve(settings, pipeline_files: Tuple[str, ...], targets_file: Optional[str], host: str, port: int):
    """Serve the HTTP trigger API for one or more pipelines"""
    from deploy_pipeline.main import create_app

    try:
        pipelines, targets = _load_definitions(pipeline_files, targets_file)
    except PipelineError as e:
        raise click.ClickException(str(e))

    engine = build_engine(pipelines, targets, settings=settings,
                          hooks_dir=Path(pipeline_files[0]).resolve().parent)
    app = create_app(engine, settings)

    logger.info(f"Serving {len(pipelines)} pipelines on {host}:{port}")
    config = uvicorn.Config(app=app, host=host, port=port)
    server = uvicorn.Server(config)
    asyncio.run(server.serve())


if __name__ == '__main__':
    cli()

"""genqueue CLI main entry point."""

import asyncio
import signal
import sys
from datetime import datetime
from typing import Optional

import click
import uvicorn

from ..core.config import QueueConfig
from ..core.exceptions import GenQueueError
from ..service import GenerationService
from ..utils.logging_config import setup_cli_logging, setup_rotating_logger
from .output import OutputFormatter


async def _with_service(config: QueueConfig, action):
    """Run ``action(service)`` against the store without starting loops."""
    service = GenerationService(config)
    try:
        return await action(service)
    finally:
        await service.store.close()


async def serve_with_api(service: GenerationService, server: uvicorn.Server, shutdown_event: asyncio.Event):
    """Run the queue and the API server until either one stops."""
    server_task = asyncio.create_task(server.serve())
    # uvicorn traps SIGINT/SIGTERM while serving, so its exit also ends the queue
    server_task.add_done_callback(lambda _: shutdown_event.set())
    try:
        await service.run_forever(shutdown_event)
    finally:
        server.should_exit = True
        await server_task


def _run(config: QueueConfig, action):
    try:
        return asyncio.run(_with_service(config, action))
    except GenQueueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)


@click.group()
@click.option('--env-file', type=click.Path(dir_okay=False), help='Path to a .env file')
@click.option('--log-level', default='INFO', help='Logging level')
@click.option('--json', 'as_json', is_flag=True, help='Print machine-readable JSON')
@click.pass_context
def cli(ctx, env_file: Optional[str], log_level: str, as_json: bool):
    """genqueue - image generation job queue"""
    setup_cli_logging(log_level)
    ctx.obj = {
        'config': QueueConfig.from_env(env_file),
        'output': OutputFormatter(output_format='json' if as_json else 'table'),
    }


@cli.command()
@click.option('--api/--no-api', default=True, help='Serve the read-only HTTP API')
@click.option('--host', default='0.0.0.0', help='API host')
@click.option('--port', default=8000, type=int, help='API port')
@click.option('--log-file', type=click.Path(dir_okay=False), help='Rotating log file')
@click.pass_obj
def run(obj, api: bool, host: str, port: int, log_file: Optional[str]):
    """Run the dispatcher, reclaimer and delivery loops."""
    config: QueueConfig = obj['config']
    setup_rotating_logger('genqueue', log_file=log_file, console_output=False)

    async def serve():
        service = GenerationService(config)
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

        click.echo("🚀 Generation queue running. Press Ctrl+C to stop.")
        if api:
            from ..api.app import create_app

            server = uvicorn.Server(
                uvicorn.Config(create_app(service, manage_service=False), host=host, port=port, log_level="info")
            )
            click.echo(f"🌐 API listening on http://{host}:{port}")
            await serve_with_api(service, server, shutdown_event)
        else:
            await service.run_forever(shutdown_event)
        click.echo("👋 Generation queue stopped")

    asyncio.run(serve())


@cli.command()
@click.pass_obj
def jobs(obj):
    """Show the queue with positions."""
    items = _run(obj['config'], lambda service: service.list_jobs())
    obj['output'].print_jobs(items)


@cli.command()
@click.pass_obj
def backends(obj):
    """Show registered backends and their health."""
    items = _run(obj['config'], lambda service: service.list_backends())
    obj['output'].print_backends(items)


@cli.group()
def backend():
    """Manage backends."""
    pass


@backend.command('add')
@click.argument('backend_id')
@click.option('--url', required=True, help='Backend base URL')
@click.option('--name', help='Display name (defaults to id)')
@click.option('--user', help='Basic auth user')
@click.option('--password', help='Basic auth password')
@click.option('--auth-header', help='Raw Authorization header value')
@click.option('--max-resolution', type=int, help='Maximum pixel count per image')
@click.pass_obj
def backend_add(obj, backend_id: str, url: str, name: Optional[str], user: Optional[str],
                password: Optional[str], auth_header: Optional[str], max_resolution: Optional[int]):
    """Register or update a backend."""
    if user and auth_header:
        click.echo("❌ Use either --user/--password or --auth-header, not both", err=True)
        sys.exit(1)

    auth = None
    if user:
        auth = {'user': user, 'password': password or ''}
    elif auth_header:
        auth = {'header': auth_header}

    _run(obj['config'], lambda service: service.registry.upsert(
        backend_id, name or backend_id, url, auth=auth, max_resolution=max_resolution
    ))
    obj['output'].success(f"Backend {backend_id} registered at {url}")


@backend.command('remove')
@click.argument('backend_id')
@click.pass_obj
def backend_remove(obj, backend_id: str):
    """Remove a backend."""
    removed = _run(obj['config'], lambda service: service.registry.remove(backend_id))
    if not removed:
        obj['output'].error(f"Backend {backend_id} not found")
        sys.exit(1)
    obj['output'].success(f"Backend {backend_id} removed")


@cli.command()
@click.argument('prompt')
@click.option('--negative', help='Negative prompt')
@click.option('--width', type=int, help='Image width')
@click.option('--height', type=int, help='Image height')
@click.option('--steps', type=int, help='Sampling steps')
@click.option('--user', 'user_id', default='cli', help='Submitter id used for queue limits')
@click.pass_obj
def submit(obj, prompt: str, negative: Optional[str], width: Optional[int], height: Optional[int],
           steps: Optional[int], user_id: str):
    """Queue a txt2img job."""
    params = {'prompt': prompt}
    if negative:
        params['negative_prompt'] = negative
    for key, value in (('width', width), ('height', height), ('steps', steps)):
        if value is not None:
            params[key] = value

    job = _run(obj['config'], lambda service: service.submit_job(
        {'type': 'txt2img', 'params': params}, {'user_id': user_id}
    ))
    click.echo(f"✅ Queued job {job.job_id}")


@cli.command()
@click.argument('job_id')
@click.pass_obj
def cancel(obj, job_id: str):
    """Remove a job that has not started."""
    cancelled = _run(obj['config'], lambda service: service.cancel_job(job_id))
    if not cancelled:
        obj['output'].error(f"Job {job_id} is not pending")
        sys.exit(1)
    obj['output'].success(f"Job {job_id} cancelled")


@cli.command()
@click.option('--day', help='UTC day (YYYY-MM-DD)')
@click.option('--user', 'user_id', help='Submitter id')
@click.pass_obj
def stats(obj, day: Optional[str], user_id: Optional[str]):
    """Show generation statistics (all-time by default)."""
    output: OutputFormatter = obj['output']

    if day:
        try:
            parsed = datetime.strptime(day, '%Y-%m-%d')
        except ValueError as e:
            click.echo(f"❌ Invalid date format. Use YYYY-MM-DD format: {e}", err=True)
            sys.exit(1)
        result = _run(obj['config'], lambda service: service.daily_stats.get_daily_stats(
            parsed.year, parsed.month, parsed.day
        ))
        data = result.to_dict()
        data['user_count'] = len(data.pop('user_ids'))
        data.pop('timestamp')
        output.print_stats(f"Stats for {day}", data)
    elif user_id:
        result = _run(obj['config'], lambda service: service.user_stats.get_user_stats(user_id))
        data = {'image_count': result.image_count, 'pixel_count': result.pixel_count}
        for tag, count in result.top_tags(5):
            data[f"tag: {tag}"] = count
        output.print_stats(f"Stats for user {user_id}", data)
    else:
        result = _run(obj['config'], lambda service: service.get_global_stats())
        data = result.to_dict()
        data['user_count'] = len(data.pop('user_ids'))
        data.pop('timestamp')
        output.print_stats("All-time stats", data)


def main():
    cli()


if __name__ == '__main__':
    main()

"""
Command Line Interface for svcorch.
"""
import logging
import os
import signal
import threading

import click

from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..PARSERS.compose_parser import ComposeParser
from ..errors import (
    ConfigError,
    CyclicDependencyError,
    LaunchError,
    RegistryError,
    StartupAbortedError,
    TeardownErrors,
)


class ConfigurationFailed(click.ClickException):
    """The compose file could not be turned into a valid, acyclic stack."""
    exit_code = 2


@click.group()
@click.option('--file', '-f', default='docker-compose.yml', help='Compose file path')
@click.option('--project-name', '-p', default=None, help='Project name (defaults to the directory name)')
@click.option('--verbose', '-v', is_flag=True, help='Log supervisor activity at debug level')
@click.pass_context
def cli(ctx, file, project_name, verbose):
    """
    svcorch - run a compose stack as locally supervised services.

    Services start in dependency order, each waiting until its dependencies
    are ready, and restart according to their restart policy.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['project_name'] = project_name


def _orchestrator(ctx) -> ServiceOrchestrator:
    """
    Parses the compose file and builds the orchestrator, once per invocation.
    """
    if 'orchestrator' not in ctx.obj:
        file = ctx.obj['file']
        if not os.path.exists(file):
            raise ConfigurationFailed(f"{file} not found.")
        try:
            config = ComposeParser().parse(file, project_name=ctx.obj['project_name'])
            orchestrator = ServiceOrchestrator.from_config(config)
            orchestrator.resolver.resolve(orchestrator.registry)
        except (ConfigError, RegistryError, CyclicDependencyError) as e:
            raise ConfigurationFailed(str(e)) from e
        ctx.obj['orchestrator'] = orchestrator
    return ctx.obj['orchestrator']


def _teardown(ctx, orchestrator: ServiceOrchestrator):
    try:
        stopped = orchestrator.stop_all()
        click.echo(f"Stopped {len(stopped)} service(s).")
    except TeardownErrors as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


@cli.command('start-all')
@click.option('--detach', '-d', is_flag=True, help='Return once all services are ready')
@click.option('--keep-on-failure', is_flag=True, help='Leave started services running if startup aborts')
@click.pass_context
def start_all(ctx, detach, keep_on_failure):
    """Start services defined in the compose file."""
    orchestrator = _orchestrator(ctx)
    shutdown = threading.Event()

    def handle_signal(signum, frame):
        shutdown.set()
        orchestrator.request_shutdown()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        try:
            order = orchestrator.start_all()
        except (StartupAbortedError, LaunchError) as e:
            click.echo(f"Error: {e}", err=True)
            if not keep_on_failure:
                click.echo("Stopping services that were started...")
                _teardown(ctx, orchestrator)
            ctx.exit(1)

        if orchestrator.already_running:
            click.echo(f"Already running: {', '.join(orchestrator.already_running)}")
        click.echo(f"Services started: {', '.join(order)}")
        if detach:
            return

        click.echo("Running... Press Ctrl+C to stop.")
        while not shutdown.wait(1):
            pass
        click.echo("\nStopping services...")
        _teardown(ctx, orchestrator)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@cli.command('stop-all')
@click.pass_context
def stop_all(ctx):
    """Stop all running services, dependents first."""
    orchestrator = _orchestrator(ctx)
    orchestrator.attach_all()
    _teardown(ctx, orchestrator)


@cli.command()
@click.pass_context
def status(ctx):
    """List service status"""
    orchestrator = _orchestrator(ctx)
    orchestrator.attach_all()
    click.echo(f"{'SERVICE':15} {'PHASE':10} {'RESTARTS':9} {'PID':8} LAST ERROR")
    click.echo("-" * 60)
    for name, state in orchestrator.states().items():
        pid = str(state.pid) if state.pid else '-'
        click.echo(f"{name:15} {state.phase.value:10} {state.restart_count:<9} {pid:8} {state.last_error or ''}")


@cli.command()
@click.argument('services', nargs=-1)
@click.option('--tail', '-n', default=50, show_default=True, help='Lines to show per service')
@click.option('--follow', is_flag=True, help='Keep printing new lines')
@click.pass_context
def logs(ctx, services, tail, follow):
    """Show service logs"""
    orchestrator = _orchestrator(ctx)
    names = list(services) or orchestrator.registry.names()
    unknown = [name for name in names if name not in orchestrator.registry]
    if unknown:
        raise click.BadParameter(f"unknown service(s): {', '.join(unknown)}", param_hint='SERVICES')

    settings = orchestrator.settings
    aggregator = LogAggregator(os.path.join(orchestrator.base_dir, settings.state_dir, "logs"))
    for name in names:
        for line in aggregator.read_tail(name, tail):
            click.echo(f"{name:15} | {line}")
    if follow:
        try:
            aggregator.follow(names, lambda name, line: click.echo(f"{name:15} | {line}"))
        except KeyboardInterrupt:
            pass


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()

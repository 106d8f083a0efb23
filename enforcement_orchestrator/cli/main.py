"""
Main CLI entry point for Enforcement Orchestrator

Provides command-line interface for plan submission, job status, rollback,
dead-letter handling, running workers and inspecting provider health.
"""

import asyncio
import importlib
import json
import signal
import sys
from typing import Optional, Dict, Any, List

import click
import yaml

from ..core.orchestrator import EnforcementOrchestrator
from ..models.job import JobPriority
from ..providers.base import ProviderAdapter
from ..utils.config import load_config
from ..utils.logger import setup_logger


# Global orchestrator instance
orchestrator: Optional[EnforcementOrchestrator] = None


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--adapter', '-a', 'adapters', multiple=True,
              help='Provider adapter factory as module:callable (repeatable)')
@click.option('--log-level', '-l', default='INFO', help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, adapters, log_level, verbose):
    """Enforcement Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    # Set up logging
    logger = setup_logger("enforcement_orchestrator", level=log_level, structured=not verbose)
    ctx.obj['logger'] = logger

    # Store configuration
    ctx.obj['config'] = config
    ctx.obj['database_url'] = database_url
    ctx.obj['adapters'] = list(adapters)
    ctx.obj['log_level'] = log_level
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def job(ctx):
    """Job management commands"""
    pass


@cli.group('dead-letter')
@click.pass_context
def dead_letter(ctx):
    """Dead-letter queue commands"""
    pass


@cli.group()
@click.pass_context
def worker(ctx):
    """Worker commands"""
    pass


@cli.group()
@click.pass_context
def provider(ctx):
    """Provider commands"""
    pass


# Job Commands
@job.command('submit')
@click.argument('plan_file', type=click.Path(exists=True))
@click.option('--priority', type=click.Choice([p.value for p in JobPriority]),
              default='normal', help='Job priority')
@click.option('--run', 'run_inline', is_flag=True, help='Process the job in this process before exiting')
@click.pass_context
def submit_job(ctx, plan_file, priority, run_inline):
    """Submit an enforcement plan (JSON or YAML) for execution"""

    async def _submit():
        try:
            await _initialize_orchestrator(ctx)

            plan = _read_plan(plan_file)
            job_id = await orchestrator.enqueue_batch(plan, priority=JobPriority(priority))

            click.echo("Plan submitted successfully!")
            click.echo(f"Job ID: {job_id}")
            click.echo(f"Owner: {plan.get('owner_id')}")
            click.echo(f"Provider: {plan.get('provider')}")
            click.echo(f"Actions: {len(plan.get('actions') or [])}")

            if run_inline:
                processed = await orchestrator.process_pending_jobs()
                click.echo(f"Processed {processed} job(s)")
                _display_job_details(await orchestrator.get_job_status(job_id), ctx.obj['verbose'])

        except Exception as e:
            click.echo(f"Error submitting plan: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_submit())


@job.command('status')
@click.argument('job_id', required=False)
@click.option('--status', 'status_filter',
              type=click.Choice(['queued', 'running', 'succeeded', 'failed', 'dead_letter', 'cancelled']),
              help='Filter the job list by status')
@click.option('--limit', type=int, default=10, help='Limit number of jobs to show')
@click.pass_context
def job_status(ctx, job_id, status_filter, limit):
    """Get job status and details"""

    async def _status():
        try:
            await _initialize_orchestrator(ctx)

            if job_id:
                job_info = await orchestrator.get_job_status(job_id)
                if job_info:
                    _display_job_details(job_info, ctx.obj['verbose'])
                else:
                    click.echo(f"Job {job_id} not found", err=True)
                    sys.exit(1)
            else:
                jobs = await orchestrator.list_jobs(status_filter, limit)
                _display_jobs_table(jobs, ctx.obj['verbose'])

        except Exception as e:
            click.echo(f"Error getting job status: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_status())


@job.command('cancel')
@click.argument('job_id')
@click.pass_context
def cancel_job(ctx, job_id):
    """Cancel a queued job or stop a running one after its current sub-batch"""

    async def _cancel():
        try:
            await _initialize_orchestrator(ctx)

            success = await orchestrator.cancel_job(job_id)

            if success:
                click.echo(f"Cancellation requested for job {job_id}")
            else:
                click.echo(f"Failed to cancel job {job_id}", err=True)
                sys.exit(1)

        except Exception as e:
            click.echo(f"Error cancelling job: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_cancel())


@job.command('rollback')
@click.argument('batch_id')
@click.option('--item', 'item_ids', multiple=True, help='Item ID to roll back (repeatable; default all)')
@click.option('--reason', help='Reason recorded on the rollback batch')
@click.option('--run', 'run_inline', is_flag=True, help='Process the job in this process before exiting')
@click.pass_context
def rollback_batch(ctx, batch_id, item_ids, reason, run_inline):
    """Roll back a finished batch, or some of its items"""

    async def _rollback():
        try:
            await _initialize_orchestrator(ctx)

            job_id = await orchestrator.rollback(batch_id, list(item_ids) or None, reason=reason)

            click.echo("Rollback enqueued")
            click.echo(f"Job ID: {job_id}")
            click.echo(f"Items: {', '.join(item_ids) if item_ids else 'all'}")

            if run_inline:
                await orchestrator.process_pending_jobs()
                _display_job_details(await orchestrator.get_job_status(job_id), ctx.obj['verbose'])

        except Exception as e:
            click.echo(f"Error enqueueing rollback: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_rollback())


@job.command('cleanup')
@click.option('--older-than', 'older_than', type=float, required=True,
              help='Delete finished jobs older than this many seconds')
@click.pass_context
def cleanup_jobs(ctx, older_than):
    """Delete finished and dead-letter jobs past a retention window"""

    async def _cleanup():
        try:
            await _initialize_orchestrator(ctx)

            deleted = await orchestrator.cleanup_jobs(older_than)
            click.echo(f"Deleted {deleted} jobs")

        except Exception as e:
            click.echo(f"Error cleaning up jobs: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_cleanup())


# Dead Letter Commands
@dead_letter.command('list')
@click.option('--limit', type=int, default=50, help='Limit number of jobs to show')
@click.pass_context
def list_dead_letter(ctx, limit):
    """List jobs that exhausted their retries"""

    async def _list():
        try:
            await _initialize_orchestrator(ctx)

            jobs = await orchestrator.list_dead_letter_jobs(limit)
            _display_jobs_table(jobs, ctx.obj['verbose'])

        except Exception as e:
            click.echo(f"Error listing dead-letter jobs: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_list())


@dead_letter.command('requeue')
@click.argument('job_id')
@click.pass_context
def requeue_dead_letter(ctx, job_id):
    """Give a dead-letter job a fresh attempt budget"""

    async def _requeue():
        try:
            await _initialize_orchestrator(ctx)

            if await orchestrator.requeue_dead_letter_job(job_id):
                click.echo(f"Job {job_id} requeued")
            else:
                click.echo(f"Job {job_id} is not in the dead-letter queue", err=True)
                sys.exit(1)

        except Exception as e:
            click.echo(f"Error requeueing job: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_requeue())


# Worker Commands
@worker.command('run')
@click.option('--concurrency', type=int, help='Number of concurrent workers')
@click.pass_context
def run_worker(ctx, concurrency):
    """Run the worker pool until interrupted"""

    async def _run():
        try:
            overrides = {}
            if concurrency:
                overrides['concurrency'] = concurrency
            await _initialize_orchestrator(ctx, start_workers=True, worker_overrides=overrides)

            click.echo(f"Workers started: {', '.join(orchestrator.worker_pool.worker_ids())}")
            click.echo("Press Ctrl+C to stop.")

            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop_event.set)

            await stop_event.wait()
            click.echo("Shutting down workers...")

        except Exception as e:
            click.echo(f"Error running workers: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_run())


# Provider Commands
@provider.command('health')
@click.pass_context
def provider_health(ctx):
    """Show circuit and rate-limit state per provider"""

    async def _health():
        try:
            await _initialize_orchestrator(ctx)
            _display_provider_health(orchestrator.get_provider_health(), ctx.obj['verbose'])

        except Exception as e:
            click.echo(f"Error getting provider health: {str(e)}", err=True)
            sys.exit(1)
        finally:
            await _shutdown_orchestrator()

    asyncio.run(_health())


# Helper Functions
async def _initialize_orchestrator(ctx, start_workers: bool = False,
                                   worker_overrides: Optional[Dict[str, Any]] = None):
    """Initialize the global orchestrator instance"""
    global orchestrator

    if not orchestrator:
        overrides: Dict[str, Any] = {
            'database_url': ctx.obj['database_url'],
            'log_level': ctx.obj['log_level']
        }
        config = load_config(ctx.obj['config'], overrides=overrides)
        if worker_overrides:
            config.workers = config.workers.model_copy(update=worker_overrides)

        providers = _load_adapters(ctx.obj['adapters'])
        orchestrator = EnforcementOrchestrator.from_config(config, providers, start_workers=start_workers)
        await orchestrator.start()


async def _shutdown_orchestrator():
    """Stop and forget the global orchestrator instance"""
    global orchestrator

    if orchestrator:
        await orchestrator.stop()
        orchestrator = None


def _load_adapters(specs: List[str]) -> List[ProviderAdapter]:
    """Import ``module:callable`` factories and collect the adapters they return."""
    adapters: List[ProviderAdapter] = []
    for spec in specs:
        module_name, _, attr = spec.partition(':')
        if not module_name or not attr:
            raise click.BadParameter(f"expected module:callable, got {spec!r}", param_hint='--adapter')

        factory = getattr(importlib.import_module(module_name), attr)
        created = factory()
        if isinstance(created, ProviderAdapter):
            adapters.append(created)
        else:
            adapters.extend(created)
    return adapters


def _read_plan(plan_file: str) -> Dict[str, Any]:
    """Read a plan from a JSON or YAML file"""
    with open(plan_file, 'r', encoding='utf-8') as f:
        plan = yaml.safe_load(f)
    if not isinstance(plan, dict):
        raise click.BadParameter("plan file must contain a mapping", param_hint='PLAN_FILE')
    return plan


def _display_job_details(job_info: Dict[str, Any], verbose: bool):
    """Display detailed job information"""
    click.echo(f"Job ID: {job_info['job_id']}")
    click.echo(f"Type: {job_info['job_type']}")
    click.echo(f"Status: {job_info['status']}")
    click.echo(f"Priority: {job_info['priority']}")
    click.echo(f"Attempts: {job_info['attempt_count']}/{job_info['max_attempts']}")

    progress = job_info.get('progress') or {}
    click.echo(f"Progress: {progress.get('percentage', 0):.1f}% ({progress.get('current_step', 'queued')})")

    if job_info.get('batch_id'):
        click.echo(f"Batch: {job_info['batch_id']} ({job_info.get('batch_status')})")

    summary = job_info.get('summary')
    if summary:
        click.echo(f"Items: {summary['completed']} completed, {summary['failed']} failed, "
                   f"{summary['skipped']} skipped of {summary['total']}")

    if job_info.get('error'):
        click.echo(f"Error: [{job_info['error']['code']}] {job_info['error']['message']}")

    if verbose and job_info.get('result'):
        click.echo("Result:")
        click.echo(json.dumps(job_info['result'], indent=2, default=str))


def _display_jobs_table(jobs: list, verbose: bool):
    """Display jobs in table format"""
    if not jobs:
        click.echo("No jobs found")
        return

    # Header
    if verbose:
        click.echo(f"{'Job ID':<38} {'Type':<20} {'Status':<12} {'Priority':<9} {'Attempts':<9} {'Created':<20}")
        click.echo("-" * 111)
    else:
        click.echo(f"{'Job ID':<38} {'Type':<20} {'Status':<12} {'Progress':<10}")
        click.echo("-" * 83)

    # Rows
    for job in jobs:
        progress = f"{job['progress'].get('percentage', 0):.1f}%"

        if verbose:
            created = job['created_at'][:19] if job.get('created_at') else 'Unknown'
            attempts = f"{job['attempt_count']}/{job['max_attempts']}"
            click.echo(f"{job['job_id']:<38} {job['job_type']:<20} {job['status']:<12} "
                       f"{job['priority']:<9} {attempts:<9} {created:<20}")
        else:
            click.echo(f"{job['job_id']:<38} {job['job_type']:<20} {job['status']:<12} {progress:<10}")


def _display_provider_health(health: Dict[str, Dict[str, Any]], verbose: bool):
    """Display provider circuit and rate-limit state"""
    if not health:
        click.echo("No providers registered")
        return

    click.echo(f"{'Provider':<16} {'Circuit':<10} {'Failures':<9} {'Remaining':<10} {'Wait (s)':<9}")
    click.echo("-" * 58)
    for name, entry in sorted(health.items()):
        circuit = entry['circuit']
        rate = entry['rate_limit']
        click.echo(f"{name:<16} {circuit['state']:<10} {circuit['consecutive_failures']:<9} "
                   f"{rate['requests_remaining']:<10} {entry['wait_seconds']:<9}")
        if verbose:
            click.echo(json.dumps(entry, indent=2, default=str))


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()

"""
CLI interface for converge.

Provides commands to plan, apply and inspect desired-state stacks, and to
run releases.

Stacks are YAML/JSON documents, passed as a path or looked up by name under
the configured stacks directory.

Exit codes:
    0  success
    1  apply/release failed, or the state lock is held
    2  the document failed to parse or validate
"""

import json
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click
from rich.table import Table

from converge import __version__
from converge.adapters.registry import AdapterRegistry
from converge.errors import ConfigError, LockHeldError, ParseError, ValidationError
from converge.reconciler import Reconciler, ReconcileResult
from converge.schemas import INFRA_KINDS, RELEASE_KINDS, ChangeSet, DesiredState, ReleaseTrigger
from converge.utils import console, format_duration, setup_logging


EXIT_FAILED = 1
EXIT_INVALID = 2

SCOPES = {
    "all": None,
    "infra": INFRA_KINDS,
    "release": RELEASE_KINDS,
}


@click.group()
@click.version_option(version=__version__, prog_name="converge")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file (default: $CONVERGE_HOME/config.yaml)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), help="Override logging.level")
@click.pass_context
def main(ctx, config_path: Optional[Path], log_level: Optional[str]):
    """
    converge - Declarative infrastructure-and-release reconciler.

    Plan and apply desired-state stacks against AWS and Kubernetes.
    """
    from converge.config import load_config

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        # init does not need a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)
        setup_logging(log_level or "WARNING")
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level or config.logging.level,
        log_format=config.logging.format,
        log_file=config.logging.file,
        console_output=config.logging.console,
    )


def _get_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'converge init' to create a configuration file.", err=True)
        raise SystemExit(EXIT_FAILED)
    return ctx.obj["config"]


def build_adapter_registry(config) -> AdapterRegistry:
    """Adapters used by plan/apply/release."""
    return AdapterRegistry.create_default(config)


def build_reconciler(config) -> Reconciler:
    return Reconciler.from_config(config, adapters=build_adapter_registry(config))


def build_orchestrator(config, reconciler: Reconciler):
    """Release orchestrator wired to docker, ECR and kubectl."""
    from converge.adapters.aws import AwsClientFactory
    from converge.adapters.kube import CommandRunner
    from converge.orchestrator import ReleaseOrchestrator
    from converge.release import DockerBuilder, EcrPublisher, KubectlRolloutProbe

    clients = AwsClientFactory(
        region=config.aws.region,
        endpoint_url=config.aws.endpoint_url,
        profile=config.aws.profile,
    )
    runner = CommandRunner(kube_context=config.kube.context, timeout=config.kube.command_timeout)
    return ReleaseOrchestrator(
        reconciler=reconciler,
        builder=DockerBuilder(docker_binary=config.release.docker_binary, build_args=config.release.build_args),
        publisher=EcrPublisher(clients, docker_binary=config.release.docker_binary),
        probe=KubectlRolloutProbe(runner),
        readiness_timeout=config.release.readiness_timeout,
        readiness_interval=config.release.readiness_interval,
    )


def _load_stack(config, stack: str) -> DesiredState:
    from converge.loader import StackRegistry

    try:
        return StackRegistry(config.stacks_dir).load(stack)
    except (ParseError, ValidationError) as e:
        click.echo(f"✗ {type(e).__name__}: {e}", err=True)
        raise SystemExit(EXIT_INVALID)


def _echo_plan(change_set: ChangeSet) -> None:
    if change_set.is_empty:
        click.echo("No changes. Live state matches the desired state.")
        return

    click.echo(f"Plan for '{change_set.desired_name}' (observed serial {change_set.observed_serial}):")
    for op in change_set:
        line = f"  {op.describe()}"
        if op.after:
            line += f"  (after: {', '.join(op.after)})"
        click.echo(line)
    summary = change_set.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete."
    )


def _echo_lock_held(e: LockHeldError) -> None:
    click.echo(f"✗ {e}", err=True)
    if e.holder is not None:
        click.echo(f"  Lock id: {e.holder.token_id}", err=True)
        click.echo("  If the holder is gone, run 'converge unlock <lock id>'.", err=True)


@contextmanager
def _cancel_on_interrupt(reconciler: Reconciler) -> Iterator[None]:
    """First SIGINT/SIGTERM cancels the apply; in-flight ops still finish."""

    def handler(signum, frame):
        click.echo("\nCancelling: waiting for in-flight operations to finish...", err=True)
        reconciler.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@main.command("validate")
@click.argument("stack")
@click.pass_context
def validate(ctx, stack: str):
    """
    Parse and validate a stack document.

    STACK is a path or a stack name under the stacks directory.
    """
    config = _get_config(ctx)
    desired = _load_stack(config, stack)
    click.echo(f"✓ {desired.name}: {len(desired)} resources, dependency graph is acyclic")


@main.command("plan")
@click.argument("stack")
@click.option("--scope", type=click.Choice(sorted(SCOPES)), default="all", help="Restrict to infra or release kinds")
@click.option("--json", "as_json", is_flag=True, help="Print the ChangeSet as JSON")
@click.pass_context
def plan_cmd(ctx, stack: str, scope: str, as_json: bool):
    """
    Show the changes apply would make.

    Plans against the last committed state without taking the lock.

    Examples:

        converge plan stacks/webapp.yaml

        converge plan webapp --scope infra --json
    """
    config = _get_config(ctx)
    desired = _load_stack(config, stack)
    reconciler = build_reconciler(config)
    try:
        change_set = reconciler.plan(desired, kinds=SCOPES[scope])
    except ValidationError as e:
        click.echo(f"✗ {type(e).__name__}: {e}", err=True)
        raise SystemExit(EXIT_INVALID)

    if as_json:
        click.echo(json.dumps(change_set.to_dict(), indent=2))
    else:
        _echo_plan(change_set)


@main.command("apply")
@click.argument("stack")
@click.option("--scope", type=click.Choice(sorted(SCOPES)), default="all", help="Restrict to infra or release kinds")
@click.option("--no-refresh", is_flag=True, help="Skip refreshing observed state from providers")
@click.option("--json", "as_json", is_flag=True, help="Print the ApplyResult as JSON")
@click.pass_context
def apply_cmd(ctx, stack: str, scope: str, no_refresh: bool, as_json: bool):
    """
    Lock, refresh, plan and apply a stack.

    Failed ops skip their dependents; independent branches still apply.
    Nothing is rolled back.
    """
    config = _get_config(ctx)
    desired = _load_stack(config, stack)
    reconciler = build_reconciler(config)

    try:
        with _cancel_on_interrupt(reconciler):
            result = reconciler.reconcile(desired, kinds=SCOPES[scope], refresh=not no_refresh)
    except LockHeldError as e:
        _echo_lock_held(e)
        raise SystemExit(EXIT_FAILED)
    except ValidationError as e:
        click.echo(f"✗ {type(e).__name__}: {e}", err=True)
        raise SystemExit(EXIT_INVALID)

    if as_json:
        click.echo(json.dumps({
            "plan": result.change_set.to_dict(),
            "result": result.apply_result.to_dict(),
            "serial": result.observed.serial,
        }, indent=2))
    else:
        _echo_apply(result)

    if not result.success:
        raise SystemExit(EXIT_FAILED)


def _echo_apply(result: ReconcileResult) -> None:
    if result.reclaimed_from:
        click.echo(f"⚠ Took over an expired lock from {result.reclaimed_from}; its apply may have been partial")
    _echo_plan(result.change_set)
    if result.change_set.is_empty:
        return

    apply_result = result.apply_result
    click.echo()
    for outcome in apply_result.applied:
        duration = outcome.duration_ms or 0
        click.echo(f"✓ {outcome.action.value} {outcome.name} ({format_duration(duration / 1000)})")
    for line in apply_result.failure_report():
        click.echo(f"✗ {line}", err=True)

    click.echo(
        f"\nApply {'complete' if apply_result.success else 'incomplete'}: "
        f"{len(apply_result.applied)} applied, {len(apply_result.failed)} failed, "
        f"{len(apply_result.skipped)} skipped. State serial {result.observed.serial}."
    )


@main.command("status")
@click.option("--json", "as_json", is_flag=True, help="Print observed state as JSON")
@click.pass_context
def status(ctx, as_json: bool):
    """Show the last committed observed state and lock."""
    from converge.state_store import FileStateStore

    config = _get_config(ctx)
    store = FileStateStore(config.state.path)
    observed = store.read_observed()
    lock = store.current_lock()

    if as_json:
        data = observed.to_dict()
        data["lock"] = lock.to_dict() if lock else None
        click.echo(json.dumps(data, indent=2, default=str))
        return

    click.echo(f"State: {config.state.path} (serial {observed.serial}, lineage {observed.lineage})")
    if lock:
        click.echo(f"Locked by {lock.owner} (lock id {lock.token_id})")

    if not observed.resources:
        click.echo("No resources recorded.")
    else:
        table = Table(title="Resources")
        table.add_column("Name", style="cyan")
        table.add_column("Kind")
        table.add_column("Provider ID")
        table.add_column("Config hash")
        table.add_column("Updated")
        for resource in observed.resources:
            table.add_row(
                resource.name,
                resource.kind.value,
                resource.provider_id,
                resource.config_hash[:12],
                resource.updated_at.strftime("%Y-%m-%d %H:%M:%S") if resource.updated_at else "",
            )
        console.print(table)

    if observed.releases:
        table = Table(title="Releases")
        table.add_column("Release", style="cyan")
        table.add_column("Image")
        table.add_column("Version")
        table.add_column("Deployed")
        for descriptor in observed.releases:
            table.add_row(
                descriptor.release,
                descriptor.image_ref,
                descriptor.version_label or descriptor.tag,
                descriptor.deployed_at.strftime("%Y-%m-%d %H:%M:%S") if descriptor.deployed_at else "",
            )
        console.print(table)


@main.command("release")
@click.argument("stack")
@click.option("--image", "artifact_ref", required=True, help="Image repository (without tag)")
@click.option("--version", "version", required=True, help="Version label, also the image tag")
@click.option("--context", "build_context", type=click.Path(exists=True, file_okay=False), help="Docker build context")
@click.option("--release", "release_name", help="Release resource name (if the stack has several)")
@click.option("--no-build", is_flag=True, help="Redeploy an existing image tag without building")
@click.pass_context
def release(ctx, stack: str, artifact_ref: str, version: str, build_context: Optional[str],
            release_name: Optional[str], no_build: bool):
    """
    Build, publish and deploy a new version of the stack's release.

    Examples:

        converge release webapp --image 123456789012.dkr.ecr.us-east-1.amazonaws.com/web --version 1.4.0 --context .

        converge release webapp --image 123456789012.dkr.ecr.us-east-1.amazonaws.com/web --version 1.3.2 --no-build
    """
    config = _get_config(ctx)
    desired = _load_stack(config, stack)
    if not no_build and not build_context:
        raise click.UsageError("--context is required unless --no-build is given")

    reconciler = build_reconciler(config)
    orchestrator = build_orchestrator(config, reconciler)
    trigger = ReleaseTrigger(
        artifact_ref=artifact_ref,
        version=version,
        context=build_context,
        rebuild=not no_build,
    )

    try:
        run = orchestrator.run(trigger, desired, release=release_name)
    except ValidationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_INVALID)

    if run.succeeded:
        click.echo(f"✓ {run.release} {version} deployed ({run.descriptor.image_ref})")
        return

    click.echo(f"✗ {run.release} {version} failed in {run.failed_in.value}: {run.error}", err=True)
    kept = run.previous.image_ref if run.previous else "none"
    click.echo(f"  Deployed version unchanged: {kept}", err=True)
    raise SystemExit(EXIT_FAILED)


@main.command("unlock")
@click.argument("token_id")
@click.pass_context
def unlock(ctx, token_id: str):
    """
    Force-remove the state lock.

    TOKEN_ID must match the current lock id shown by 'converge status'.
    Only use this when the holder is known to be gone.
    """
    from converge.state_store import FileStateStore

    config = _get_config(ctx)
    store = FileStateStore(config.state.path)
    if store.force_unlock(token_id):
        click.echo(f"✓ Removed lock {token_id}")
        return
    click.echo(f"✗ Lock {token_id} is not the current lock", err=True)
    raise SystemExit(EXIT_FAILED)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize converge configuration."""
    from converge.config import DEFAULT_CONFIG_FILENAME, get_converge_home, write_default_config

    cfg_path = get_converge_home() / DEFAULT_CONFIG_FILENAME
    try:
        write_default_config(cfg_path, force=force)
    except ConfigError:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_FAILED)

    click.echo(f"Initialized converge config at {cfg_path}")


if __name__ == "__main__":
    sys.exit(main())

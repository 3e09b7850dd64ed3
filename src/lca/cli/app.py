# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/cli/app.py
from __future__ import annotations

import functools
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from lca.backuprestore.velero import VeleroBackupRestore
from lca.clusterinfo.clusterinfo import export_seed_reconfiguration
from lca.clusterinfo.network import fetch_network_config
from lca.config.loader import load_config
from lca.config.models import AgentConfig, ErrorMode
from lca.controllers.cleanup import CleanupCoordinator
from lca.controllers.resource import IBUClient
from lca.controllers.stages import StageStateMachine, UpgradeActions
from lca.errors import LcaError
from lca.execution.ops import HostOps
from lca.execution.runner import CommandRunner
from lca.healthcheck.healthcheck import HealthChecker
from lca.ibi.prepare import IBIOptions, IBIPrepare
from lca.k8s.client import KubeClients, get_clients
from lca.logging.log import init_logging
from lca.observers.console import ConsoleObserver
from lca.observers.dispatcher import EventBus
from lca.observers.jsonfile import JsonFileObserver
from lca.observers.logger import LoggerObserver
from lca.ostree.client import OstreeClient, RpmOstreeClient
from lca.ostree.paths import get_stateroot_path
from lca.ostree.stateroots import StaterootManager
from lca.precache.task import PrecacheController, PrecacheTask
from lca.prep.prep import setup_stateroot
from lca.seedcreator.seedcreator import SeedCreator
from lca.seedreconfig.models import SEED_RECONFIGURATION_FILE_NAME
from lca.utils.execution import ExecutionContext

app = typer.Typer(help="Lifecycle agent: image based upgrade and install")


# ------------------------------------------------------------------------------
# Wiring
# ------------------------------------------------------------------------------

def _bus(logger, run_id: str, console: bool = True) -> EventBus:
    observers = [
        LoggerObserver(logger),
        JsonFileObserver(Path.home() / ".lca/logs" / f"{run_id}.jsonl"),
    ]
    if console:
        observers.insert(0, ConsoleObserver())
    return EventBus(observers=observers)


def _ops(cfg: AgentConfig, exec_ctx: ExecutionContext, logger) -> HostOps:
    runner = CommandRunner(logger=logger, dry_run=exec_ctx.dry_run, label=cfg.environment)
    return HostOps(runner=runner, in_host_namespace=exec_ctx.in_host_namespace)


@dataclass
class Agent:
    cfg: AgentConfig
    clients: KubeClients
    ops: HostOps
    task: PrecacheTask
    stateroots: StaterootManager
    cleanup: CleanupCoordinator
    machine: StageStateMachine
    ibu_client: IBUClient


def build_agent(cfg: AgentConfig, clients: KubeClients, ops: HostOps, bus: EventBus) -> Agent:
    paths = cfg.paths
    rpm_ostree = RpmOstreeClient(ops)
    ostree = OstreeClient(ops)
    task = PrecacheTask()

    stateroots = StaterootManager(
        rpm_ostree, ostree, ops, host_root=paths.host_root, deploy_path=paths.ostree_deploy_path, bus=bus
    )
    precache = PrecacheController(ops, cfg.precache, paths, bus)
    backup_restore = VeleroBackupRestore(clients.custom, clients.core, manifests_dir=paths.backup_manifests_dir)
    cleanup = CleanupCoordinator(
        task=task,
        stateroots=stateroots,
        precache=precache,
        backup_restore=backup_restore,
        workspace=paths.workspace,
        host_root=paths.host_root,
        bus=bus,
    )

    def stateroot_opt_dir(target: str) -> str:
        return os.path.join(get_stateroot_path(target, paths.ostree_deploy_path), "var", "opt", "openshift")

    def export_reconfig(target: str) -> None:
        dest = os.path.join(stateroot_opt_dir(target), "cluster-configuration", SEED_RECONFIGURATION_FILE_NAME)
        export_seed_reconfiguration(clients.core, clients.custom, os.path.join(paths.host_root, dest.lstrip("/")))

    actions = UpgradeActions(
        setup_stateroot=functools.partial(
            setup_stateroot, ops, ostree, rpm_ostree, image_list_file=paths.image_list_file, paths=paths
        ),
        backup_application_data=backup_restore.start_backups,
        export_seed_reconfiguration=export_reconfig,
        export_network_config=lambda target: fetch_network_config(stateroot_opt_dir(target), paths.host_root),
        reboot=ops.reboot,
    )

    ibu_client = IBUClient(clients.custom, cfg.resource_name)
    machine = StageStateMachine(
        ibu_client,
        cleanup=cleanup,
        health_check=HealthChecker(clients.core, clients.apps, cfg.health_check.namespaces).check,
        stateroots=stateroots,
        precache=precache,
        task=task,
        actions=actions,
        config=cfg,
        bus=bus,
    )
    return Agent(cfg, clients, ops, task, stateroots, cleanup, machine, ibu_client)


def _start(config: Optional[Path], debug: bool, dry_run: bool, environment: str):
    logger, run_id, log_path = init_logging(verbose=debug, environment=environment)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")

    cfg = load_config(config)
    cfg = cfg.model_copy(update={"environment": environment, "dry_run": cfg.dry_run or dry_run})
    exec_ctx = ExecutionContext(dry_run=cfg.dry_run)
    return cfg, logger, run_id, exec_ctx


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def create(
    image: str = typer.Option(..., "--image", "-i", help="Seed image reference to build and push"),
    authfile: Optional[str] = typer.Option(None, "--authfile", "-a"),
    recert_image: Optional[str] = typer.Option(None, "--recert-image"),
    skip_recert_validation: bool = typer.Option(False, "--skip-recert-validation"),
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    context: Optional[str] = typer.Option(None, "--context"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Create a seed image from this single node cluster."""
    cfg, logger, run_id, exec_ctx = _start(config, debug, dry_run, "seed")
    seed = cfg.seed.model_copy(
        update={
            "container_registry": image,
            "auth_file": authfile or cfg.seed.auth_file,
            "recert_image": recert_image or cfg.seed.recert_image,
            "recert_skip_validation": skip_recert_validation or cfg.seed.recert_skip_validation,
        }
    )
    cfg = cfg.model_copy(update={"seed": seed})

    clients = get_clients(context or cfg.context)
    ops = _ops(cfg, exec_ctx, logger)
    creator = SeedCreator(ops, RpmOstreeClient(ops), clients.core, clients.custom, cfg, _bus(logger, run_id))
    try:
        creator.create_seed_image()
    except LcaError as exc:
        typer.secho(f"seed creation failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho("Seed image created", bold=True)


@app.command()
def ibi(
    seed_image: str = typer.Option(..., "--seed-image", "-s"),
    seed_version: str = typer.Option(..., "--seed-version"),
    authfile: str = typer.Option(..., "--authfile", "-a"),
    pull_secret_file: str = typer.Option(..., "--pullSecretFile", "-p"),
    installation_disk: str = typer.Option(..., "--installation-disk"),
    precache_best_effort: bool = typer.Option(False, "--precache-best-effort"),
    precache_disabled: bool = typer.Option(False, "--precache-disabled"),
    skip_shutdown: bool = typer.Option(False, "--skip-shutdown"),
    create_extra_partition: bool = typer.Option(True, "--create-extra-partition/--no-create-extra-partition"),
    extra_partition_number: int = typer.Option(5, "--extra-partition-number"),
    extra_partition_start: str = typer.Option("40G", "--extra-partition-start"),
    extra_partition_label: str = typer.Option("varlibcontainers", "--extra-partition-label"),
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Prepare an installation disk from a seed image."""
    cfg, logger, run_id, exec_ctx = _start(config, debug, dry_run, "ibi")
    precache = cfg.precache.model_copy(
        update={
            "mode": ErrorMode.BEST_EFFORT if precache_best_effort else cfg.precache.mode,
            "disabled": precache_disabled or cfg.precache.disabled,
        }
    )
    cfg = cfg.model_copy(update={"precache": precache})

    ops = _ops(cfg, exec_ctx, logger)
    options = IBIOptions(
        seed_image=seed_image,
        seed_version=seed_version,
        auth_file=authfile,
        pull_secret_file=pull_secret_file,
        installation_disk=installation_disk,
        skip_shutdown=skip_shutdown,
        create_extra_partition=create_extra_partition,
        extra_partition_number=extra_partition_number,
        extra_partition_start=extra_partition_start,
        extra_partition_label=extra_partition_label,
    )
    logger.info("IBI preparation process has started")
    runner = IBIPrepare(ops, OstreeClient(ops, ibi=True), RpmOstreeClient(ops), options, cfg, _bus(logger, run_id))
    try:
        runner.run()
    except LcaError as exc:
        typer.secho(f"ibi preparation failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    logger.info("IBI preparation process finished successfully!")


@app.command()
def reconcile(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    context: Optional[str] = typer.Option(None, "--context"),
    once: bool = typer.Option(False, "--once", help="Run a single reconcile pass"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Drive the ImageBasedUpgrade resource until no requeue is requested."""
    cfg, logger, run_id, exec_ctx = _start(config, debug, dry_run, "ibu")
    agent = build_agent(cfg, get_clients(context or cfg.context), _ops(cfg, exec_ctx, logger), _bus(logger, run_id))

    while True:
        ibu = agent.ibu_client.get()
        try:
            result = agent.machine.reconcile(ibu)
        except LcaError as exc:
            logger.error("reconcile failed: %s", exc)
            result = None
            delay: Optional[float] = cfg.requeue.short_seconds
        else:
            delay = result.requeue_after

        if once or delay is None:
            break
        logger.info("Requeue in %ss", delay)
        time.sleep(delay)

    typer.echo(f"stage={ibu.spec.stage} requeue={result.requeue if result else 'error'}")


@app.command()
def cleanup(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    context: Optional[str] = typer.Option(None, "--context"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Run every cleanup action once and report the failures."""
    cfg, logger, run_id, exec_ctx = _start(config, debug, dry_run, "ibu")
    agent = build_agent(cfg, get_clients(context or cfg.context), _ops(cfg, exec_ctx, logger), _bus(logger, run_id))
    report = agent.cleanup.cleanup()
    if not report.successful:
        typer.secho(f"cleanup failed: {report.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    typer.secho("Cleanup completed", bold=True)


if __name__ == "__main__":
    app()

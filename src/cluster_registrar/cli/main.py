"""cluster-registrar CLI: command-line interface for cluster-registrar.

Commands:
    init            Scaffold a new cluster-registrar project
    reconcile       Run a single reconciliation pass for one cluster
    run             Run the controller loop (or one resync with --once)
    records list    Show registration records
    records show    Show one registration record
    records delete  Force-remove a registration record
    journal verify  Verify journal chain integrity
    journal show    Show recent journal entries
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click

from cluster_registrar import __version__
from cluster_registrar.cluster.source import ClusterSource, ClusterSourceError, load_inventory
from cluster_registrar.config import CONFIG_FILENAME, RegistrarConfig, load_config
from cluster_registrar.controller.controller import Controller
from cluster_registrar.controller.queue import RequeueQueue
from cluster_registrar.journal.journal import Journal, JournalError, verify_journal
from cluster_registrar.models import (
    ClusterKey,
    JournalAction,
    ReconcileOutcome,
    ReconcileResult,
    RegistrationRecord,
)
from cluster_registrar.reconciler.collaborators import (
    CollaboratorError,
    DryRunConfigurator,
    DryRunRegistrator,
    load_collaborator,
)
from cluster_registrar.reconciler.filter import NotificationFilter
from cluster_registrar.reconciler.reconciler import Reconciler
from cluster_registrar.status.classifier import FAILED_STATE, PROCESSING_STATE, READY_STATE
from cluster_registrar.store.record_store import (
    FileRecordStore,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)

# --- Defaults ---

DEFAULT_INVENTORY = "./inventory.yaml"
DEFAULT_RECORD_STORE = "./records.jsonl"
DEFAULT_JOURNAL = "./journal.jsonl"
DEFAULT_NAMESPACE = "kcp-system"

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _resolve_cfg(config_path: str | None) -> RegistrarConfig:
    """Load config from an explicit path, or auto-discover it."""
    try:
        return load_config(config_path)
    except Exception as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _or(explicit: str | None, cfg_val: str | None, fallback: str) -> str:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    return explicit or cfg_val or fallback


def _build_source(cfg: RegistrarConfig) -> ClusterSource:
    if cfg.backend == "kubernetes":
        from cluster_registrar.cluster.k8s_source import K8sClusterSource

        return K8sClusterSource(
            kubeconfig=cfg.kubeconfig, context=cfg.context, in_cluster=cfg.in_cluster,
        )
    return load_inventory(_or(None, cfg.inventory, DEFAULT_INVENTORY))


def _build_store(cfg: RegistrarConfig) -> RecordStore:
    if cfg.backend == "kubernetes":
        from cluster_registrar.store.k8s_store import K8sRecordStore

        return K8sRecordStore(
            kubeconfig=cfg.kubeconfig, context=cfg.context, in_cluster=cfg.in_cluster,
        )
    return FileRecordStore(_or(None, cfg.record_store, DEFAULT_RECORD_STORE))


def _build_reconciler(
    cfg: RegistrarConfig, source: ClusterSource, store: RecordStore, dry_run: bool,
) -> Reconciler:
    if dry_run or not cfg.registrator:
        registrator: Any = DryRunRegistrator()
    else:
        registrator = load_collaborator(cfg.registrator)
    if dry_run or not cfg.configurator:
        configurator: Any = DryRunConfigurator()
    else:
        configurator = load_collaborator(cfg.configurator)

    return Reconciler(
        source,
        store,
        registrator,
        configurator,
        requeue_seconds=cfg.requeue_seconds,
        enabled_registration=cfg.enabled_registration,
        journal=Journal(_or(None, cfg.journal, DEFAULT_JOURNAL)),
    )


def _open_backends(cfg: RegistrarConfig) -> tuple[ClusterSource, RecordStore]:
    try:
        return _build_source(cfg), _build_store(cfg)
    except (ClusterSourceError, RecordStoreError, ImportError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _state_badge(state: str) -> str:
    """Return a coloured state badge for CLI output."""
    color = {
        READY_STATE: "green",
        PROCESSING_STATE: "yellow",
        FAILED_STATE: "red",
    }.get(state, "white")
    return click.style(f"[{state or 'unknown'}]", fg=color)


def _echo_result(result: ReconcileResult) -> None:
    color = {
        ReconcileOutcome.COMPLETED: "green",
        ReconcileOutcome.RETRY: "yellow",
        ReconcileOutcome.ERROR: "red",
    }[result.outcome]
    line = click.style(f"{result.outcome.value.upper():<9}", fg=color, bold=True)
    line += f" {str(result.key):<40} {result.reason}"
    if result.requeue_after is not None:
        line += f" (requeue in {result.requeue_after:g}s)"
    click.echo(line)
    if result.error:
        click.echo(f"          error: {result.error}")


def _echo_record(record: RegistrationRecord) -> None:
    click.echo(f"  {str(record.key):<40} " + _state_badge(record.status.state))
    click.echo(f"    runtime:    {record.runtime_id or '-'}")
    click.echo(f"    account:    {record.global_account_id or '-'}")
    click.echo(f"    subaccount: {record.subaccount_id or '-'}")
    click.echo(
        f"    registered: {record.status.registered}  "
        f"configured: {record.status.configured}"
    )
    if record.deletion_requested_at is not None:
        click.echo(f"    deleting since {record.deletion_requested_at.isoformat()[:19]}")


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None,
    help=f"Path to {CONFIG_FILENAME} (default: auto-discover)",
)
@click.option(
    "--log-level", default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level for the registrar's own messages",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str) -> None:
    """cluster-registrar: register managed clusters with the runtime directory."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# --- init command ---


_INIT_INVENTORY = """\
# Cluster inventory for the file backend.
# Each cluster is a descriptor; credentials are matched by the
# operator.kyma-project.io/kyma-name label.

clusters:
  - namespace: kcp-system
    name: example-cluster
    modules:
      - applicationconnector
    labels:
      kyma-project.io/global-account-id: example-global-account
      kyma-project.io/subaccount-id: example-subaccount
      kyma-project.io/shoot-name: example-shoot
      operator.kyma-project.io/kyma-name: example-cluster

credentials:
  - namespace: kcp-system
    name: kubeconfig-example-cluster
    labels:
      operator.kyma-project.io/kyma-name: example-cluster
    kubeconfig: |
      apiVersion: v1
      kind: Config
      clusters: []
"""

_INIT_GITIGNORE = """\
# cluster-registrar state
records.jsonl
records.jsonl.tmp
journal.jsonl
"""


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Scaffold a new cluster-registrar project with example config."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    created: list[str] = []
    skipped: list[str] = []

    # --- cluster-registrar.yaml ---
    config_file = root / CONFIG_FILENAME
    if not config_file.exists():
        config_file.write_text(
            "# cluster-registrar configuration\n"
            "\n"
            "# Backend: file (inventory + JSONL records) or kubernetes\n"
            "backend: file\n"
            f"namespace: {DEFAULT_NAMESPACE}\n"
            "\n"
            "# Paths (relative to this file)\n"
            "inventory: ./inventory.yaml\n"
            "record_store: ./records.jsonl\n"
            "journal: ./journal.jsonl\n"
            "\n"
            "# Seconds between passes while a cluster is in progress\n"
            "requeue_seconds: 5\n"
            "resync_seconds: 60\n"
            "max_backoff_seconds: 300\n"
            "\n"
            "# Register runtimes that have no runtime ID yet\n"
            "enabled_registration: false\n"
            "\n"
            "# Collaborators as module:factory (default: dry-run)\n"
            "# registrator: mypackage.directory:build_registrator\n"
            "# configurator: mypackage.directory:build_configurator\n",
            encoding="utf-8",
        )
        created.append(CONFIG_FILENAME)
    else:
        skipped.append(CONFIG_FILENAME)

    # --- .gitignore ---
    gitignore = root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(_INIT_GITIGNORE, encoding="utf-8")
        created.append(".gitignore")
    else:
        skipped.append(".gitignore")

    # --- inventory.yaml ---
    inventory_file = root / "inventory.yaml"
    if not inventory_file.exists():
        inventory_file.write_text(_INIT_INVENTORY, encoding="utf-8")
        created.append("inventory.yaml")
    else:
        skipped.append("inventory.yaml")

    # --- Output ---
    if created:
        click.echo(click.style("Created:", fg="green", bold=True))
        for f in created:
            click.echo(f"  + {f}")

    for s in skipped:
        click.echo(f"  skip  {s} (already exists)")

    if created:
        click.echo("\n" + click.style("Next steps:", bold=True))
        click.echo("  cluster-registrar run --once")
        click.echo("  cluster-registrar records list")


# --- reconcile command ---


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default=None, help="Cluster namespace")
@click.option("--dry-run", is_flag=True, help="Use dry-run collaborators")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def reconcile(
    obj: dict[str, Any], name: str, namespace: str | None, dry_run: bool, json_output: bool,
) -> None:
    """Run a single reconciliation pass for one cluster."""
    cfg = _resolve_cfg(obj["config_path"])
    key = ClusterKey.parse(name, _or(namespace, cfg.namespace, DEFAULT_NAMESPACE))
    source, store = _open_backends(cfg)
    try:
        reconciler = _build_reconciler(cfg, source, store, dry_run)
    except (CollaboratorError, JournalError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    result = reconciler.reconcile(key)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _echo_result(result)

    if result.outcome == ReconcileOutcome.ERROR:
        sys.exit(1)


# --- run command ---


@cli.command()
@click.option("--once", is_flag=True, help="Resync once, process due passes, then exit")
@click.option("--dry-run", is_flag=True, help="Use dry-run collaborators")
@click.pass_obj
def run(obj: dict[str, Any], once: bool, dry_run: bool) -> None:
    """Run the controller loop."""
    cfg = _resolve_cfg(obj["config_path"])
    source, store = _open_backends(cfg)
    try:
        reconciler = _build_reconciler(cfg, source, store, dry_run)
    except (CollaboratorError, JournalError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    controller = Controller(
        reconciler,
        source,
        store,
        notification_filter=NotificationFilter(cfg.feature_module),
        queue=RequeueQueue(
            base_delay=cfg.requeue_seconds, max_delay=cfg.max_backoff_seconds,
        ),
        namespace=cfg.namespace,
    )

    if not once:
        click.echo(f"Watching clusters (resync every {cfg.resync_seconds:g}s), Ctrl+C to stop")
        try:
            controller.run(resync_seconds=cfg.resync_seconds)
        except KeyboardInterrupt:
            click.echo("Stopped.")
        return

    queued = controller.resync()
    results = controller.process_due()
    for result in results:
        _echo_result(result)
    click.echo(f"\n{len(queued)} cluster(s) scheduled, {len(results)} pass(es) run.")
    if any(r.outcome == ReconcileOutcome.ERROR for r in results):
        sys.exit(1)


# --- records commands ---


@cli.group()
def records() -> None:
    """Registration record commands."""


@records.command("list")
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def records_list(obj: dict[str, Any], namespace: str | None, json_output: bool) -> None:
    """Show registration records."""
    cfg = _resolve_cfg(obj["config_path"])
    store = _open_store(cfg)
    try:
        found = store.list(namespace or cfg.namespace)
    except RecordStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps([r.model_dump(mode="json") for r in found], indent=2))
        return

    if not found:
        click.echo("No registration records found.")
        return
    for record in found:
        click.echo(
            f"  {str(record.key):<40} "
            + _state_badge(record.status.state)
            + f"  runtime={record.runtime_id or '-'}"
        )
    click.echo(f"\n{len(found)} record(s).")


@records.command("show")
@click.argument("name")
@click.option("--namespace", "-n", default=None, help="Cluster namespace")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def records_show(
    obj: dict[str, Any], name: str, namespace: str | None, json_output: bool,
) -> None:
    """Show one registration record."""
    cfg = _resolve_cfg(obj["config_path"])
    key = ClusterKey.parse(name, _or(namespace, cfg.namespace, DEFAULT_NAMESPACE))
    store = _open_store(cfg)
    try:
        record = store.get(key)
    except RecordStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if record is None:
        click.echo(f"Registration record not found: {key}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(record.model_dump(mode="json"), indent=2))
    else:
        _echo_record(record)


@records.command("delete")
@click.argument("name")
@click.option("--namespace", "-n", default=None, help="Cluster namespace")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def records_delete(obj: dict[str, Any], name: str, namespace: str | None, yes: bool) -> None:
    """Force-remove a registration record without deregistering its runtime."""
    cfg = _resolve_cfg(obj["config_path"])
    key = ClusterKey.parse(name, _or(namespace, cfg.namespace, DEFAULT_NAMESPACE))
    store = _open_store(cfg)

    try:
        record = store.get(key)
    except RecordStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    if record is None:
        click.echo(f"Registration record not found: {key}")
        sys.exit(1)

    if record.runtime_id and not yes:
        click.confirm(
            f"Runtime {record.runtime_id} will stay registered in the directory. "
            f"Remove record {key}?",
            abort=True,
        )

    journal_log = None
    if record.runtime_id:
        try:
            journal_log = Journal(_or(None, cfg.journal, DEFAULT_JOURNAL))
        except JournalError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    try:
        if not store.delete(key):
            store.clear_guard(key)
    except RecordNotFoundError:
        pass
    except RecordStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if journal_log is not None:
        journal_log.record(
            JournalAction.RECORD_REMOVED, key,
            runtime_id=record.runtime_id, global_account_id=record.global_account_id,
        )
    click.echo(f"Removed registration record {key}")


def _open_store(cfg: RegistrarConfig) -> RecordStore:
    try:
        return _build_store(cfg)
    except (RecordStoreError, ImportError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# --- journal commands ---


@cli.group()
def journal() -> None:
    """Operation journal commands."""


@journal.command("verify")
@click.argument("journal_file", required=False)
@click.pass_obj
def journal_verify(obj: dict[str, Any], journal_file: str | None) -> None:
    """Verify journal chain integrity and list runtimes never deregistered."""
    path = _journal_path(obj, journal_file)
    if not path.exists():
        click.echo(f"Journal not found: {path}")
        sys.exit(1)

    report = verify_journal(path)

    if report.valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f": journal chain is intact ({report.entries} entries, {path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f": {len(report.errors)} error(s) found:")
        for error in report.errors:
            click.echo(f"  - {error}")

    if report.open_runtimes:
        click.echo(f"\n{len(report.open_runtimes)} runtime(s) registered and not deregistered:")
        for runtime_id, cluster in sorted(report.open_runtimes.items(), key=lambda i: i[1]):
            click.echo(f"  {cluster:<40} runtime={runtime_id}")

    if not report.valid:
        sys.exit(1)


@journal.command("show")
@click.argument("journal_file", required=False)
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--cluster", default=None, help="Only entries for namespace/name")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def journal_show(
    obj: dict[str, Any],
    journal_file: str | None,
    count: int,
    cluster: str | None,
    json_output: bool,
) -> None:
    """Show recent journal entries."""
    path = _journal_path(obj, journal_file)
    if not path.exists():
        click.echo(f"Journal not found: {path}")
        sys.exit(1)

    try:
        events = Journal(path).read_events(cluster=cluster)
    except JournalError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    events = events[-count:]

    if json_output:
        click.echo(json.dumps([e.model_dump(mode="json") for e in events], indent=2))
        return

    if not events:
        click.echo("No journal entries found.")
        return
    for event in events:
        color = "red" if event.error else "green"
        line = (
            f"  {event.timestamp.isoformat()[:19]}  "
            + click.style(f"{event.action.value.upper():<18}", fg=color)
            + f" {event.cluster:<40} runtime={event.runtime_id or '-'}"
        )
        if event.error:
            line += f"  error={event.error}"
        click.echo(line)
    click.echo(f"\n{len(events)} event(s) shown.")


def _journal_path(obj: dict[str, Any], journal_file: str | None) -> Path:
    if journal_file:
        return Path(journal_file)
    cfg = _resolve_cfg(obj["config_path"])
    return Path(_or(None, cfg.journal, DEFAULT_JOURNAL))

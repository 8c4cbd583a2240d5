# src/hostprep/cli/app.py
from __future__ import annotations

from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Optional

import typer

from hostprep.config.loader import load_config
from hostprep.config.models import HostPrepConfig
from hostprep.engine.runner import StepRunner
from hostprep.errors import HostPrepError, ServiceFailure, StepFailure
from hostprep.logging.log import init_logging, redact
from hostprep.observers.console import ConsoleObserver
from hostprep.observers.dispatcher import EventBus
from hostprep.observers.events import new_ctx
from hostprep.observers.jsonfile import JsonFileObserver
from hostprep.observers.logger import LoggerObserver
from hostprep.playbooks import keygen as keygen_playbook
from hostprep.playbooks import maas as maas_playbook
from hostprep.playbooks import prep_host as prep_host_playbook
from hostprep.playbooks.base import Playbook, build_toolkit


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "Idempotent single-host provisioning. Every command can be re-run: "
        "steps whose state already holds are skipped.\n\n"
        "Two concurrent runs against the same host are not coordinated; "
        "do not start one while another is in progress."
    ),
    no_args_is_help=True,
)

ConfigOpt = typer.Option(
    None, "--config", "-c", envvar="HOSTPREP_CONFIG", help="YAML config file."
)
DryRunOpt = typer.Option(False, "--dry-run", help="Report what would change, change nothing.")
VerboseOpt = typer.Option(False, "--verbose", "-v", help="DEBUG output on stderr.")
EventsOpt = typer.Option(None, "--events", help="Append lifecycle events (JSONL) to this file.")
LogDirOpt = typer.Option(None, "--log-dir", envvar="HOSTPREP_LOG_DIR", help="Directory for run logs.")


def _section(name: str, **values: Any) -> Dict[str, Any]:
    return {name: {k: v for k, v in values.items() if v is not None}}


def _load(config: Optional[Path], overrides: Dict[str, Any]) -> HostPrepConfig:
    try:
        return load_config(config, overrides)
    except HostPrepError as e:
        _fail(e)


def _fail(e: HostPrepError) -> None:
    # StepFailure already reads "<category> in step '<name>': ..."
    message = str(e) if isinstance(e, StepFailure) else f"{e.category}: {e}"
    typer.echo(f"[ERROR] {redact(message)}", err=True)
    cause = e.cause if isinstance(e, StepFailure) else e
    if isinstance(cause, ServiceFailure) and cause.diagnostics:
        typer.echo(redact(cause.diagnostics), err=True)
    if isinstance(e, StepFailure) and e.report is not None:
        done = e.report.names("OK") + e.report.names("SKIPPED")
        if done:
            typer.echo(f"Completed before the failure: {', '.join(done)}", err=True)
        pending = e.report.names("PENDING")
        if pending:
            typer.echo(f"Not started: {', '.join(pending)} (safe to re-run)", err=True)
    raise typer.Exit(code=e.exit_code)


def _execute(
    module: ModuleType,
    cfg: HostPrepConfig,
    *,
    dry_run: bool,
    verbose: bool,
    events: Optional[Path],
    log_dir: Optional[Path],
) -> None:
    logger, run_id, _ = init_logging(base_dir=log_dir, verbose=verbose)
    tk = build_toolkit(cfg, dry_run=dry_run)

    observers = [ConsoleObserver(), LoggerObserver(logger)]
    if events is not None:
        observers.append(JsonFileObserver(events))
    bus = EventBus(observers=observers)

    playbook: Optional[Playbook] = None
    try:
        module.preflight(tk)
        playbook = module.build(tk)
        runner = StepRunner(
            bus=bus,
            dry_run=dry_run,
            run_ctx=new_ctx(host=tk.facts.fqdn(), playbook=playbook.name, run_id=run_id),
        )
        report = runner.run(playbook.steps)

        logger.info(f"[{playbook.name}] {report.summary()}")
        if dry_run:
            planned = report.names("PLANNED")
            typer.echo(f"Would apply: {', '.join(planned) if planned else 'nothing'}")
            return
        for key, value in playbook.summary.items():
            logger.info(f"{key}: {value}")
        if playbook.epilogue is not None:
            typer.echo(playbook.epilogue())
    except HostPrepError as e:
        _fail(e)
    finally:
        if playbook is not None:
            playbook.wipe_secrets()


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command("prep-host")
def prep_host(
    config: Optional[Path] = ConfigOpt,
    user: Optional[str] = typer.Option(None, "--user", envvar="HOSTPREP_USER", help="Management user [semaphore]."),
    shell: Optional[str] = typer.Option(None, "--shell", envvar="HOSTPREP_SHELL", help="Login shell [/bin/bash]."),
    key_url: Optional[str] = typer.Option(
        None, "--key-url", envvar="HOSTPREP_KEY_URL", help="http(s) URL of an SSH key to install."
    ),
    upgrade: Optional[bool] = typer.Option(
        None, "--upgrade/--no-upgrade", help="apt-get upgrade before installing packages."
    ),
    probe_ssh: Optional[bool] = typer.Option(
        None, "--probe-ssh/--no-probe-ssh", help="Confirm sshd answers with an SSH banner."
    ),
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
    events: Optional[Path] = EventsOpt,
    log_dir: Optional[Path] = LogDirOpt,
):
    """
    Prepare this host to be managed by Ansible/Semaphore.
    """
    cfg = _load(
        config,
        _section(
            "prep_host",
            user_name=user,
            user_shell=shell,
            key_url=key_url,
            upgrade=upgrade,
            probe_ssh=probe_ssh,
        ),
    )
    _execute(prep_host_playbook, cfg, dry_run=dry_run, verbose=verbose, events=events, log_dir=log_dir)


@app.command("keygen")
def keygen(
    config: Optional[Path] = ConfigOpt,
    owner: Optional[str] = typer.Option(None, "--owner", envvar="HOSTPREP_KEY_OWNER", help="Key owner [semaphore]."),
    key_path: Optional[str] = typer.Option(None, "--path", help="Private key path [~owner/.ssh/id_rsa]."),
    comment: Optional[str] = typer.Option(None, "--comment", help="Key comment [semaphore@server]."),
    algorithm: Optional[str] = typer.Option(None, "--algorithm", help="rsa or ecdsa [rsa]."),
    bits: Optional[int] = typer.Option(None, "--bits", help="Key size [4096]."),
    force: Optional[bool] = typer.Option(None, "--force", help="Overwrite an existing keypair."),
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
    events: Optional[Path] = EventsOpt,
    log_dir: Optional[Path] = LogDirOpt,
):
    """
    Generate the Semaphore server's SSH keypair and print the public key.
    """
    cfg = _load(
        config,
        _section(
            "keygen",
            owner=owner,
            key_path=key_path,
            comment=comment,
            algorithm=algorithm,
            bits=bits,
            force=force,
        ),
    )
    _execute(keygen_playbook, cfg, dry_run=dry_run, verbose=verbose, events=events, log_dir=log_dir)


@app.command("maas-install")
def maas_install(
    config: Optional[Path] = ConfigOpt,
    db_user: Optional[str] = typer.Option(None, "--db-user", envvar="HOSTPREP_MAAS_DB_USER", help="[maasuser]"),
    db_name: Optional[str] = typer.Option(None, "--db-name", envvar="HOSTPREP_MAAS_DB_NAME", help="[maasdb]"),
    db_password: Optional[str] = typer.Option(
        None, "--db-password", envvar="HOSTPREP_MAAS_DB_PASSWORD", show_default=False,
        help="Database password (generated when absent). Prefer the environment variable.",
    ),
    admin_user: Optional[str] = typer.Option(None, "--admin-user", envvar="HOSTPREP_MAAS_ADMIN", help="[admin]"),
    admin_email: Optional[str] = typer.Option(None, "--admin-email", envvar="HOSTPREP_MAAS_ADMIN_EMAIL"),
    admin_password: Optional[str] = typer.Option(
        None, "--admin-password", envvar="HOSTPREP_MAAS_ADMIN_PASSWORD", show_default=False,
        help="MAAS admin password (generated when absent). Prefer the environment variable.",
    ),
    version: Optional[str] = typer.Option(None, "--version", envvar="HOSTPREP_MAAS_VERSION", help="MAAS snap track [3.6]."),
    maas_url: Optional[str] = typer.Option(None, "--maas-url", help="[http://<fqdn>:5240/MAAS]"),
    creds_owner: Optional[str] = typer.Option(None, "--creds-owner", help="Owner of the credentials record [SUDO_USER]."),
    dry_run: bool = DryRunOpt,
    verbose: bool = VerboseOpt,
    events: Optional[Path] = EventsOpt,
    log_dir: Optional[Path] = LogDirOpt,
):
    """
    Install MAAS (region+rack) with a local PostgreSQL database.
    """
    cfg = _load(
        config,
        _section(
            "maas",
            db_user=db_user,
            db_name=db_name,
            db_password=db_password,
            admin_user=admin_user,
            admin_email=admin_email,
            admin_password=admin_password,
            version=version,
            maas_url=maas_url,
            creds_owner=creds_owner,
        ),
    )
    _execute(maas_playbook, cfg, dry_run=dry_run, verbose=verbose, events=events, log_dir=log_dir)


def main() -> None:
    app()

#!/usr/bin/env python3
"""
Command-line entry points.

`provision` validates the inputs, then runs the WAHA step catalogue through the
execution engine and prints a status report and summary. `waha-unban` lifts a
Fail2Ban ban placed by the jails the provisioner installed.
"""

import ipaddress
import json
import os
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.traceback import install as install_rich_traceback

from waha_provisioner.config import (
    EDITIONS,
    PROTECTED_LOCATIONS,
    PROXY_KINDS,
    PROXY_NGINX,
    VERSION,
    BasicAuthCredential,
    Config,
    RunContext,
    generate_api_key,
    generate_password,
    make_credential,
    read_env_file,
)
from waha_provisioner.artifacts import ArtifactWriter, ConfigArtifact
from waha_provisioner.engine import ExecutionEngine, RunLock
from waha_provisioner.errors import ArtifactWriteError, ProvisionError, ReadinessTimeoutError
from waha_provisioner.logger import get_logger, setup_logger
from waha_provisioner.prober import ReadinessProber
from waha_provisioner.provisioner import WahaProvisioner
from waha_provisioner.renderer import jail_names
from waha_provisioner.rollback import RollbackGenerator
from waha_provisioner.steps import StepResult
from waha_provisioner.tools import Fail2BanCli, ToolAdapter
from waha_provisioner.ui import (
    NordColors,
    console,
    create_header,
    display_panel,
    print_error,
    print_section,
    print_status_report,
    print_step,
    print_success,
    print_warning,
    run_with_spinner,
)
from waha_provisioner.validator import ValidationRequest, Validator

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(signum: int, frame: Optional[Any]) -> None:
    """Turn SIGTERM/SIGHUP into an orderly exit so the run lock is released."""
    sig_name = f"signal {signum}"
    try:
        sig_name = signal.Signals(signum).name
    except ValueError:
        pass
    print_warning(f"Process interrupted by {sig_name}")
    get_logger().error(f"Interrupted by {sig_name}. Exiting.")
    sys.exit(128 + signum)


def install_signal_handlers() -> Dict[int, Any]:
    previous = {}
    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            previous[sig] = signal.signal(sig, signal_handler)
        except (AttributeError, ValueError):
            pass
    return previous


def restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


# ----------------------------------------------------------------
# Input Gathering
# ----------------------------------------------------------------
def port_owned(config: Config, port: Any) -> bool:
    """True when the existing compose manifest already publishes `port`."""
    try:
        text = config.compose_file.read_text()
    except OSError:
        return False
    return f'"127.0.0.1:{port}:' in text


def collect_credentials(
    users: Dict[str, Optional[str]], interactive: bool
) -> Dict[str, BasicAuthCredential]:
    """
    Build one credential per protected location that has a username.

    An empty username leaves that location unprotected. Passwords are prompted
    for (hidden) in interactive mode and generated otherwise, or when left blank.
    """
    credentials: Dict[str, BasicAuthCredential] = {}
    for name in PROTECTED_LOCATIONS:
        username = users.get(name)
        realm = PROTECTED_LOCATIONS[name]["realm"]
        if interactive:
            username = Prompt.ask(
                f"[bold {NordColors.FROST_2}]{realm} username (blank for none)[/]",
                default=username or "",
                show_default=bool(username),
            )
        if not username:
            continue

        password = ""
        if interactive:
            password = Prompt.ask(
                f"[bold {NordColors.FROST_2}]{realm} password for {username} (blank to generate)[/]",
                password=True,
                default="",
                show_default=False,
            )
        credentials[name] = make_credential(name, username, password or generate_password())
    return credentials


def summary_record(
    config: Config, context: RunContext, results: List[StepResult], ok: bool
) -> Dict[str, Any]:
    """The persisted run summary. Holds no passwords and no API key."""
    return {
        "run_id": context.run_id,
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "status": "succeeded" if ok else "failed",
        "domain": context.domain,
        "edition": context.edition.key,
        "image": context.image,
        "port": context.port,
        "proxy": context.proxy,
        "base_url": context.base_url,
        "protected_locations": {
            c.location: c.username for c in context.credentials.values()
        },
        "monitoring": context.monitoring,
        "log_file": str(config.LOG_FILE),
        "rollback_script": str(config.rollback_script),
        "steps": [r.to_dict() for r in results],
    }


def write_summary(
    config: Config, context: RunContext, writer: ArtifactWriter, record: Dict[str, Any]
) -> None:
    path = config.summary_file
    try:
        writer.write(ConfigArtifact(path, json.dumps(record, indent=2) + "\n"), context)
    except ArtifactWriteError as e:
        get_logger().warning(f"Could not write run summary: {e}")
        return
    get_logger().info(f"Run summary written to {path}")


def print_summary(config: Config, context: RunContext) -> None:
    lines = [
        f"API:        {context.base_url}/",
        f"Dashboard:  {context.base_url}/dashboard",
        f"Swagger UI: {context.base_url}/swagger",
        f"API key:    {context.api_key}",
        "",
    ]
    for credential in context.credentials.values():
        lines.append(
            f"{credential.realm}: {credential.username} / {credential.password}"
        )
    if context.credentials:
        lines.append("")
    lines += [
        f"Logs:       cd {config.INSTALL_DIR} && docker compose logs -f {config.SERVICE_NAME}",
        f"Restart:    cd {config.INSTALL_DIR} && docker compose restart",
        f"Unban IP:   sudo waha-unban <IP> --proxy {context.proxy}",
        "",
        f"Run log:    {config.LOG_FILE}",
        f"Rollback:   sudo bash {config.rollback_script}",
    ]
    display_panel("\n".join(lines), style=NordColors.GREEN, title="WAHA is ready")
    print_warning("Store the API key and passwords now; they are not written to the summary file.")


# ----------------------------------------------------------------
# Provisioning Run
# ----------------------------------------------------------------
def run_provision(config: Config, options: Dict[str, Any]) -> int:
    """Validate, build the run context, execute the steps. Returns the exit code."""
    logger = get_logger()
    interactive = not options["non_interactive"]
    dry_run = options["dry_run"]

    domain = options["domain"]
    email = options["email"]
    port = options["port"]
    edition_key = options["edition"]
    if interactive:
        domain = domain or Prompt.ask(f"[bold {NordColors.FROST_2}]Domain name[/]")
        email = email or Prompt.ask(f"[bold {NordColors.FROST_2}]Email for Let's Encrypt[/]")
        if port is None:
            port = IntPrompt.ask(
                f"[bold {NordColors.FROST_2}]Host port for WAHA[/]", default=config.DEFAULT_PORT
            )
        if edition_key is None:
            edition_key = Prompt.ask(
                f"[bold {NordColors.FROST_2}]WAHA edition[/]", choices=list(EDITIONS), default="core"
            )
    if port is None:
        port = config.DEFAULT_PORT
    edition = EDITIONS[edition_key or "core"]

    print_section("Validating inputs")
    validation = Validator().validate(
        ValidationRequest(
            domain=domain or "",
            email=email or "",
            port=port,
            euid=os.geteuid(),
            port_owned=port_owned(config, port),
        )
    )
    validation.raise_for_errors()
    logger.debug(f"Validation passed; warnings: {', '.join(validation.codes) or 'none'}")
    for issue in validation.warnings:
        print_warning(f"{issue.code}: {issue.message}")
    if validation.needs_confirmation and not options["allow_unresolved_dns"]:
        if not interactive:
            print_error("DNS check failed; pass --allow-unresolved-dns to continue anyway.")
            return EXIT_FAILURE
        if not Confirm.ask("Continue anyway?", default=False):
            print_warning("Aborted by operator.")
            return EXIT_FAILURE
    print_success("Inputs validated")

    existing_key = read_env_file(config.env_file).get("API_KEY")
    users = {
        "api": options["api_user"],
        "dashboard": options["dashboard_user"],
        "swagger": options["swagger_user"],
    }
    operator = os.environ.get("SUDO_USER")
    context = RunContext(
        domain=domain,
        email=email,
        edition=edition,
        image=options["image"] or edition.image,
        port=port,
        api_key=existing_key or generate_api_key(),
        proxy=options["proxy"],
        credentials=collect_credentials(users, interactive),
        operator_user=operator if operator and operator != "root" else None,
        monitoring=options["monitoring"],
        security_headers=options["security_headers"],
        dry_run=dry_run,
    )
    if existing_key:
        logger.info("Reusing the API key from the existing environment file")

    print_section("Run configuration")
    print_step(f"Run id:    {context.run_id}")
    print_step(f"Domain:    {context.domain} ({context.email})")
    print_step(f"Workload:  {context.edition.label} [{context.image}] on 127.0.0.1:{context.port}")
    print_step(f"Proxy:     {context.proxy}")
    protected = ", ".join(c.location for c in context.credentials.values()) or "none"
    print_step(f"Basic auth: {protected}")
    if dry_run:
        print_warning("Dry run: nothing on this host will be changed.")
    elif interactive and not Confirm.ask("Proceed with provisioning?", default=True):
        print_warning("Aborted by operator.")
        return EXIT_FAILURE

    tools = ToolAdapter(timeout=config.OPERATION_TIMEOUT)
    rollback = RollbackGenerator(config, context.run_id)
    provisioner = WahaProvisioner(config, tools, rollback, ReadinessProber())
    registry = provisioner.build_registry(context)
    engine = ExecutionEngine(
        registry,
        tools,
        rollback=rollback,
        lock=RunLock(config.lock_file),
        rollback_epilogue=provisioner.rollback_epilogue(context),
        step_runner=lambda description, func, ctx: run_with_spinner(description, func, ctx),
    )

    print_section("Provisioning")
    results = engine.run(context)
    failed = next((r for r in results if not r.ok), None)
    pending = registry.names()[len(results):]
    print_status_report(results, pending)

    # The install directory only exists once the workload step has run
    if not dry_run and any(r.name == "workload" for r in results):
        rollback.begin_step(None)
        record = summary_record(config, context, results, failed is None)
        write_summary(config, context, provisioner.writer, record)

    if failed is not None:
        print_error(f"Step '{failed.name}' failed: {failed.message}")
        if isinstance(failed.error, ReadinessTimeoutError) and failed.error.diagnostics:
            console.print(failed.error.diagnostics, style="debug", markup=False)
        print_error(f"Run log: {config.LOG_FILE}")
        if not dry_run:
            print_error(f"Rollback script: {config.rollback_script}")
        return EXIT_FAILURE

    if dry_run:
        print_success("Dry run complete; no changes were made.")
    else:
        print_summary(config, context)
    return EXIT_OK


# ----------------------------------------------------------------
# Main CLI Entry Points with Click
# ----------------------------------------------------------------
@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--dry-run", is_flag=True, help="Show what would run without changing anything")
@click.option("--domain", help="Public domain name for WAHA")
@click.option("--email", help="Contact email for Let's Encrypt")
@click.option("--port", type=int, default=None, help="Host port WAHA publishes on 127.0.0.1")
@click.option("--non-interactive", is_flag=True, help="Run without prompts")
@click.option("--edition", type=click.Choice(list(EDITIONS)), default=None, help="WAHA edition")
@click.option("--image", default=None, help="Override the container image")
@click.option("--proxy", type=click.Choice(PROXY_KINDS), default=PROXY_NGINX, show_default=True)
@click.option("--dashboard-user", default=None, help="Basic-auth user for /dashboard (off by default)")
@click.option("--swagger-user", default=None, help="Basic-auth user for /swagger (off by default)")
@click.option("--api-user", default=None, help="Basic-auth user for the API root (off by default)")
@click.option("--monitoring", is_flag=True, help="Install a cron health check")
@click.option("--security-headers/--no-security-headers", default=True, show_default=True,
              help="Add HTTP security headers to the TLS site")
@click.option("--install-dir", type=click.Path(path_type=Path), default=None,
              help="Directory for the compose project")
@click.option("--state-dir", type=click.Path(path_type=Path), default=None,
              help="Directory for backups, rollback script and run lock")
@click.option("--log-file", type=click.Path(path_type=Path), default=None, help="Run log file")
@click.option("--allow-unresolved-dns", is_flag=True, help="Proceed when the domain does not resolve")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.version_option(VERSION)
def main(**options: Any) -> None:
    """Provision WAHA behind a TLS reverse proxy on this host."""
    overrides = {
        "INSTALL_DIR": options.pop("install_dir"),
        "STATE_DIR": options.pop("state_dir"),
        "LOG_FILE": options.pop("log_file"),
    }
    config = Config(**{k: v for k, v in overrides.items() if v is not None})
    debug = options.pop("debug")

    setup_logger(config.LOG_FILE, debug)
    if debug:
        install_rich_traceback(console=console, show_locals=False)

    previous = install_signal_handlers()
    console.print(create_header())
    logger = get_logger()
    logger.info(f"Starting provisioning (log: {config.LOG_FILE})")
    try:
        code = run_provision(config, options)
    except KeyboardInterrupt:
        print_warning("Provisioning interrupted by user")
        logger.error("Interrupted by operator")
        code = EXIT_INTERRUPTED
    except ProvisionError as e:
        print_error(str(e))
        logger.error(str(e))
        code = EXIT_FAILURE
    finally:
        restore_signal_handlers(previous)
    sys.exit(code)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("ip")
@click.option("--proxy", type=click.Choice(PROXY_KINDS), default=None,
              help="Only the jails of this proxy (default: every installed WAHA jail)")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def unban(ip: str, proxy: Optional[str], debug: bool) -> None:
    """Unban IP from the WAHA Fail2Ban jails."""
    config = Config()
    setup_logger(None, debug)
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        print_error(f"'{ip}' is not a valid IP address")
        sys.exit(EXIT_FAILURE)
    if os.geteuid() != 0:
        print_error("This command must be run as root (e.g. with sudo).")
        sys.exit(EXIT_FAILURE)

    proxies = [proxy] if proxy else [p for p in PROXY_KINDS if config.jail_file(p).exists()]
    if not proxies:
        print_error("No WAHA Fail2Ban jails are installed on this host.")
        sys.exit(EXIT_FAILURE)

    fail2ban = Fail2BanCli(ToolAdapter(timeout=config.OPERATION_TIMEOUT))
    failures = 0
    for jail in [j for p in proxies for j in jail_names(p)]:
        try:
            fail2ban.unban(jail, ip)
        except ProvisionError as e:
            failures += 1
            print_warning(f"{jail}: {e}")
            continue
        print_success(f"Unbanned {ip} from {jail}")
    sys.exit(EXIT_FAILURE if failures else EXIT_OK)


if __name__ == "__main__":
    main()

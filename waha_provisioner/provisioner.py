"""
The WAHA step catalogue.

`WahaProvisioner` owns the collaborators of one run (tool facades, artifact
writer, proxy configurator, readiness prober) and registers the provisioning
steps in dependency order.
"""

import os
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import List

from waha_provisioner.artifacts import ArtifactWriter, ConfigArtifact
from waha_provisioner.config import PROXY_APACHE, Config, RunContext
from waha_provisioner.errors import ProvisionError, ReadinessTimeoutError
from waha_provisioner.logger import get_logger
from waha_provisioner.prober import ReadinessProber
from waha_provisioner.proxy import ProxyConfigurator, ProxyState
from waha_provisioner.renderer import (
    compose_artifacts,
    fail2ban_artifacts,
    has_proxy_block,
    htpasswd_path,
    jail_names,
    render_apache_security_conf,
    render_monitoring_cron,
    render_nginx_rate_limits,
)
from waha_provisioner.rollback import RollbackGenerator
from waha_provisioner.steps import Step, StepRegistry
from waha_provisioner.tools import (
    ApacheCli,
    ComposeCli,
    Fail2BanCli,
    FirewallCli,
    HtpasswdCli,
    PackageManager,
    ServiceManager,
    ToolAdapter,
)

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_APT_URL = "https://download.docker.com/linux/ubuntu"


class WahaProvisioner:
    def __init__(
        self,
        config: Config,
        tools: ToolAdapter,
        rollback: RollbackGenerator,
        prober: ReadinessProber,
    ):
        self.config = config
        self.tools = tools
        self.rollback = rollback
        self.writer = ArtifactWriter(rollback)
        self.proxy = ProxyConfigurator(config, tools, self.writer)
        self.prober = prober

        self.packages = PackageManager(tools)
        self.services = ServiceManager(tools)
        self.compose = ComposeCli(tools, config.INSTALL_DIR)
        self.firewall = FirewallCli(tools)
        self.fail2ban = Fail2BanCli(tools)
        self.apache = ApacheCli(tools)
        self.htpasswd = HtpasswdCli(tools)

    # ----------------------------------------------------------------
    # Registry
    # ----------------------------------------------------------------
    def build_registry(self, context: RunContext) -> StepRegistry:
        registry = StepRegistry()
        register = registry.register

        register(Step("system_packages", "Install prerequisite packages",
                      self.install_prerequisites, self.prerequisites_installed))
        register(Step("firewall", "Configure the UFW firewall",
                      self.configure_firewall, self.firewall_configured,
                      requires=["system_packages"]))
        register(Step("docker", "Install Docker Engine and Compose",
                      self.install_docker, self.docker_installed,
                      requires=["system_packages"]))
        register(Step("workload", f"Deploy {context.edition.label} with Docker Compose",
                      self.deploy_workload, self.workload_running,
                      requires=["docker"], rollback=self.workload_rollback))
        register(Step("readiness", "Wait for WAHA to answer",
                      self.wait_for_workload, lambda ctx: False,
                      requires=["workload"]))
        register(Step("proxy_packages", f"Install {context.proxy} and Certbot",
                      self.install_proxy_packages, self.proxy_packages_installed,
                      requires=["system_packages"]))
        register(Step("credentials", "Create basic-auth credential files",
                      self.create_credentials, self.credentials_present,
                      requires=["proxy_packages"], rollback=self.credentials_rollback))
        register(Step("proxy_globals", "Write global proxy settings",
                      self.configure_proxy_globals, self.proxy_globals_configured,
                      requires=["proxy_packages"], rollback=self.proxy_globals_rollback))
        register(Step("proxy_challenge", "Serve the ACME HTTP-01 challenge",
                      self.proxy.configure_pre_tls, self.challenge_ready,
                      requires=["proxy_globals"], rollback=self.proxy.disable_commands))
        register(Step("tls_certificate", f"Obtain a Let's Encrypt certificate for {context.domain}",
                      self.proxy.issue_certificate, self.certificate_present,
                      requires=["proxy_challenge"]))
        register(Step("proxy_site", "Enable the HTTPS reverse proxy",
                      self.proxy.configure_post_tls, self.proxy_site_configured,
                      requires=["tls_certificate", "credentials", "workload"]))
        register(Step("fail2ban", "Configure Fail2Ban jails",
                      self.configure_fail2ban, self.fail2ban_configured,
                      requires=["proxy_site"]))
        if context.monitoring:
            register(Step("monitoring", "Install the health check cron job",
                          self.install_monitoring, self.monitoring_installed,
                          requires=["readiness"]))
        return registry

    def rollback_epilogue(self, context: RunContext) -> List[str]:
        commands = [
            f"systemctl reload {self.proxy.unit(context)} || true",
            "systemctl restart fail2ban || true",
        ]
        # A workload that existed before the run comes back up on its restored files
        if self.config.compose_file.is_file():
            commands.append(f"{self.compose.up_command()} || true")
        return commands

    # ----------------------------------------------------------------
    # Packages
    # ----------------------------------------------------------------
    def prerequisites_installed(self, context: RunContext) -> bool:
        return not self.packages.missing(self.config.PREREQUISITE_PACKAGES)

    def install_prerequisites(self, context: RunContext) -> None:
        missing = self.packages.missing(self.config.PREREQUISITE_PACKAGES)
        self.packages.update()
        self.packages.install(missing)

    def _proxy_package_list(self, context: RunContext) -> List[str]:
        if context.proxy == PROXY_APACHE:
            return self.config.APACHE_PACKAGES
        return self.config.NGINX_PACKAGES

    def proxy_packages_installed(self, context: RunContext) -> bool:
        return not self.packages.missing(self._proxy_package_list(context))

    def install_proxy_packages(self, context: RunContext) -> None:
        self.packages.install(self.packages.missing(self._proxy_package_list(context)))

    # ----------------------------------------------------------------
    # Firewall
    # ----------------------------------------------------------------
    def firewall_configured(self, context: RunContext) -> bool:
        status = self.firewall.status()
        if not status.ok or "Status: active" not in status.stdout:
            return False
        # First column of each rule row, e.g. "80/tcp" in "80/tcp (v6)  ALLOW  Anywhere (v6)"
        allowed = {line.split()[0] for line in status.stdout.splitlines() if line.strip()}
        return all(rule in allowed for rule in self.config.FIREWALL_RULES)

    def configure_firewall(self, context: RunContext) -> None:
        for rule in self.config.FIREWALL_RULES:
            self.firewall.allow(rule)
        self.firewall.enable()

    # ----------------------------------------------------------------
    # Docker
    # ----------------------------------------------------------------
    def docker_installed(self, context: RunContext) -> bool:
        return self.compose.available()

    def install_docker(self, context: RunContext) -> None:
        keyring = self.config.APT_KEYRING
        keyring.parent.mkdir(parents=True, exist_ok=True)
        self.writer.prepare_path(keyring)
        with tempfile.TemporaryDirectory(prefix="waha_provisioner_") as tmp:
            armored = Path(tmp) / "docker.asc"
            self.tools.invoke("curl", ["-fsSL", DOCKER_GPG_URL, "-o", str(armored)])
            self.tools.invoke("gpg", ["--batch", "--yes", "--dearmor", "-o", str(keyring), str(armored)])

        arch = self.tools.invoke("dpkg", ["--print-architecture"]).stdout.strip()
        codename = self.tools.invoke("lsb_release", ["-cs"]).stdout.strip()
        source = ConfigArtifact(
            self.config.APT_SOURCES_DIR / "docker.list",
            f"deb [arch={arch} signed-by={keyring}] {DOCKER_APT_URL} {codename} stable\n",
        )
        self.writer.write(source, context)

        self.packages.update()
        self.packages.install(self.config.DOCKER_PACKAGES)
        self.services.enable("docker")
        self.services.restart("docker")
        if context.operator_user:
            self.tools.invoke("usermod", ["-aG", "docker", context.operator_user])
            get_logger().info(
                f"Added {context.operator_user} to the docker group (log out and back in to use it)."
            )

    # ----------------------------------------------------------------
    # Workload
    # ----------------------------------------------------------------
    def workload_running(self, context: RunContext) -> bool:
        if not all(a.matches_disk() for a in compose_artifacts(self.config, context)):
            return False
        result = self.compose.ps(check=False)
        return result.ok and bool(result.stdout.strip())

    def deploy_workload(self, context: RunContext) -> None:
        (self.config.INSTALL_DIR / "data").mkdir(parents=True, exist_ok=True)
        for artifact in compose_artifacts(self.config, context):
            self.writer.write(artifact, context)
        self.compose.up()

    def workload_rollback(self, context: RunContext) -> List[str]:
        """Evaluated before the run starts: the install dir is removed only if this run creates it."""
        commands = [f"{self.compose.down_command()} || true"]
        if not self.config.INSTALL_DIR.exists():
            commands.append(f"rm -rf -- {shlex.quote(str(self.config.INSTALL_DIR))}")
        return commands

    def wait_for_workload(self, context: RunContext) -> None:
        outcome = self.prober.wait_until_ready(
            context.health_url,
            timeout=self.config.READINESS_TIMEOUT,
            poll_interval=self.config.READINESS_INTERVAL,
            accept=self.config.READINESS_ACCEPT,
            headers={"X-Api-Key": context.api_key},
        )
        if outcome.ok:
            return
        logs = self.compose.logs(self.config.SERVICE_NAME).stdout.strip()
        diagnostics = "\n".join(
            [
                f"Last probe error: {outcome.last_error}",
                f"Inspect the workload with: cd {self.config.INSTALL_DIR} && "
                f"docker compose logs -f {self.config.SERVICE_NAME}",
            ]
            + ([f"Recent logs:\n{logs}"] if logs else [])
        )
        raise ReadinessTimeoutError(
            f"{context.health_url} not ready after {outcome.elapsed:.0f}s "
            f"({outcome.attempts} attempts): {outcome.last_error}",
            diagnostics=diagnostics,
        )

    # ----------------------------------------------------------------
    # Credentials
    # ----------------------------------------------------------------
    def credentials_present(self, context: RunContext) -> bool:
        return all(
            self.htpasswd.verify(htpasswd_path(self.config, context, c.name), c.username, c.password)
            for c in context.credentials.values()
        )

    def create_credentials(self, context: RunContext) -> None:
        logger = get_logger()
        for credential in context.credentials.values():
            path = htpasswd_path(self.config, context, credential.name)
            path.parent.mkdir(parents=True, exist_ok=True)
            self.writer.prepare_path(path)
            self.htpasswd.create(path, credential.username, credential.password)
            os.chmod(path, 0o640)
            try:
                shutil.chown(path, user="root", group="www-data")
            except (LookupError, PermissionError) as e:
                logger.warning(f"Could not hand {path} to group www-data: {e}")
            logger.info(f"Created credentials for {credential.location} ({credential.username})")

    def credentials_rollback(self, context: RunContext) -> List[str]:
        return [
            f"rm -f -- {shlex.quote(str(htpasswd_path(self.config, context, name)))}"
            for name in context.credentials
        ]

    # ----------------------------------------------------------------
    # Proxy
    # ----------------------------------------------------------------
    def _proxy_globals_artifact(self, context: RunContext) -> ConfigArtifact:
        path = self.config.proxy_globals_file(context.proxy)
        if context.proxy == PROXY_APACHE:
            return ConfigArtifact(path, render_apache_security_conf())
        return ConfigArtifact(path, render_nginx_rate_limits(self.config))

    def proxy_globals_configured(self, context: RunContext) -> bool:
        if not self._proxy_globals_artifact(context).matches_disk():
            return False
        if context.proxy == PROXY_APACHE:
            return (self.config.APACHE_DIR / "conf-enabled" / "waha-security.conf").exists()
        return True

    def configure_proxy_globals(self, context: RunContext) -> None:
        self.writer.write(self._proxy_globals_artifact(context), context)
        if context.proxy == PROXY_APACHE:
            self.apache.enable_modules(self.config.APACHE_MODULES)
            self.apache.enable_conf("waha-security")

    def proxy_globals_rollback(self, context: RunContext) -> List[str]:
        if context.proxy == PROXY_APACHE:
            return ["a2disconf -q waha-security || true"]
        return []

    def challenge_ready(self, context: RunContext) -> bool:
        return self.proxy.detect_state(context) in (
            ProxyState.HTTP_CHALLENGE_READY,
            ProxyState.ISSUED,
            ProxyState.CONFIGURED,
        )

    def certificate_present(self, context: RunContext) -> bool:
        return self.proxy.certificate_valid(context.domain)

    def proxy_site_configured(self, context: RunContext) -> bool:
        text = self.proxy.site_text(context)
        if text is None or not has_proxy_block(text, context.backend_url):
            return False
        if not self.proxy.certificate_valid(context.domain):
            return False
        try:
            return text == self.proxy.expected_post_tls(context)
        except ProvisionError:
            return False

    # ----------------------------------------------------------------
    # Fail2Ban
    # ----------------------------------------------------------------
    def _pending_fail2ban_artifacts(self, context: RunContext) -> List[ConfigArtifact]:
        """Jail file unless current; filter files only when absent."""
        jail = self.config.jail_file(context.proxy)
        return [
            a for a in fail2ban_artifacts(self.config, context.proxy)
            if not a.matches_disk() and (a.path == jail or not a.path.exists())
        ]

    def fail2ban_configured(self, context: RunContext) -> bool:
        if self._pending_fail2ban_artifacts(context):
            return False
        return self.services.is_active("fail2ban")

    def configure_fail2ban(self, context: RunContext) -> None:
        for artifact in self._pending_fail2ban_artifacts(context):
            self.writer.write(artifact, context)
        self.services.enable("fail2ban")
        self.services.restart("fail2ban")
        for jail in jail_names(context.proxy):
            self.fail2ban.status(jail)

    # ----------------------------------------------------------------
    # Monitoring
    # ----------------------------------------------------------------
    def _monitoring_artifact(self, context: RunContext) -> ConfigArtifact:
        return ConfigArtifact(self.config.monitoring_cron, render_monitoring_cron(self.config, context))

    def monitoring_installed(self, context: RunContext) -> bool:
        return self._monitoring_artifact(context).matches_disk()

    def install_monitoring(self, context: RunContext) -> None:
        self.writer.write(self._monitoring_artifact(context), context)

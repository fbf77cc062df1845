"""
Two-phase reverse-proxy configuration for one domain.

    UNCONFIGURED ──pre-tls──▶ HTTP_CHALLENGE_READY ──certbot──▶ ISSUED ──post-tls──▶ CONFIGURED
                                                        └──────▶ ISSUANCE_FAILED

The certificate tool may rewrite the site file while issuing. Nothing here
assumes what it changed: after issuance the files are re-read to discover the
tool-owned values (`TlsSlots`) and the site is regenerated wholesale around them.
"""

import os
import re
import shlex
from enum import Enum
from pathlib import Path
from typing import List, Optional

from waha_provisioner.artifacts import ArtifactWriter, Phase
from waha_provisioner.config import PROXY_APACHE, Config, RunContext
from waha_provisioner.errors import ProvisionError, ToolInvocationError
from waha_provisioner.logger import get_logger
from waha_provisioner.renderer import (
    TlsSlots,
    has_challenge_location,
    has_proxy_block,
    site_artifact,
)
from waha_provisioner.tools import ApacheCli, CertbotCli, NginxCli, ServiceManager, ToolAdapter


class ProxyState(Enum):
    UNCONFIGURED = "unconfigured"
    HTTP_CHALLENGE_READY = "http-challenge-ready"
    ISSUED = "issued"
    ISSUANCE_FAILED = "issuance-failed"
    CONFIGURED = "configured"


NGINX_SLOT_PATTERNS = {
    "certificate": re.compile(r"^\s*ssl_certificate\s+(\S+?);", re.M),
    "certificate_key": re.compile(r"^\s*ssl_certificate_key\s+(\S+?);", re.M),
    "options_include": re.compile(r"^\s*include\s+(\S*options-ssl-nginx\.conf);", re.M),
    "dhparam": re.compile(r"^\s*ssl_dhparam\s+(\S+?);", re.M),
}

APACHE_SLOT_PATTERNS = {
    "certificate": re.compile(r"^\s*SSLCertificateFile\s+(\S+)", re.M),
    "certificate_key": re.compile(r"^\s*SSLCertificateKeyFile\s+(\S+)", re.M),
    "options_include": re.compile(r"^\s*Include\s+(\S*options-ssl-apache\.conf)", re.M),
}


class ProxyConfigurator:
    """Drives the proxy state machine for the run's domain."""

    def __init__(self, config: Config, tools: ToolAdapter, writer: ArtifactWriter):
        self.config = config
        self.writer = writer
        self.certbot = CertbotCli(tools, timeout=config.CERTBOT_TIMEOUT)
        self.services = ServiceManager(tools)
        self.nginx = NginxCli(tools)
        self.apache = ApacheCli(tools)

    # ----------------------------------------------------------------
    # State
    # ----------------------------------------------------------------
    def state(self, context: RunContext) -> ProxyState:
        """State reached in this run, or the state found on disk."""
        return context.proxy_states.get(context.domain) or self.detect_state(context)

    def _set_state(self, context: RunContext, state: ProxyState) -> None:
        context.proxy_states[context.domain] = state
        get_logger().debug(f"Proxy for {context.domain}: {state.value}")

    def site_text(self, context: RunContext) -> Optional[str]:
        site = self.config.site_file(context.proxy, context.domain)
        try:
            return site.read_text() if site.is_file() else None
        except OSError:
            return None

    def site_enabled(self, context: RunContext) -> bool:
        return self.config.site_link(context.proxy, context.domain).exists()

    def certificate_path(self, domain: str) -> Path:
        return self.config.live_cert_dir(domain) / "fullchain.pem"

    def certificate_valid(self, domain: str) -> bool:
        return self.certbot.certificate_valid(
            self.certificate_path(domain), self.config.CERT_MIN_VALIDITY
        )

    def detect_state(self, context: RunContext) -> ProxyState:
        text = self.site_text(context)
        if text is None:
            return ProxyState.UNCONFIGURED
        cert_ok = self.certificate_valid(context.domain)
        if cert_ok and has_proxy_block(text, context.backend_url):
            return ProxyState.CONFIGURED
        if has_challenge_location(text) and self.site_enabled(context):
            return ProxyState.ISSUED if cert_ok else ProxyState.HTTP_CHALLENGE_READY
        return ProxyState.UNCONFIGURED

    # ----------------------------------------------------------------
    # Proxy service helpers
    # ----------------------------------------------------------------
    def unit(self, context: RunContext) -> str:
        return "apache2" if context.proxy == PROXY_APACHE else "nginx"

    def test_and_reload(self, context: RunContext) -> None:
        if context.proxy == PROXY_APACHE:
            self.apache.test_config()
        else:
            self.nginx.test_config()
        self.services.reload(self.unit(context))

    def enable_site(self, context: RunContext) -> None:
        if context.proxy == PROXY_APACHE:
            self.apache.enable_site(context.domain)
            return
        site = self.config.site_file(context.proxy, context.domain)
        link = self.config.site_link(context.proxy, context.domain)
        if link.is_symlink() and os.readlink(link) == str(site):
            return
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            link.unlink()
        os.symlink(site, link)

    def disable_commands(self, context: RunContext) -> List[str]:
        """Shell commands that disable the site, for the rollback script."""
        if context.proxy == PROXY_APACHE:
            return [
                f"a2dissite -q {shlex.quote(context.domain)} || true",
                f"a2dissite -q {shlex.quote(context.domain + '-le-ssl')} 2>/dev/null || true",
            ]
        link = self.config.site_link(context.proxy, context.domain)
        return [f"rm -f -- {shlex.quote(str(link))}"]

    # ----------------------------------------------------------------
    # Transitions
    # ----------------------------------------------------------------
    def configure_pre_tls(self, context: RunContext) -> None:
        """UNCONFIGURED -> HTTP_CHALLENGE_READY."""
        challenge_dir = self.config.ACME_WEBROOT / ".well-known" / "acme-challenge"
        challenge_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.config.ACME_WEBROOT, 0o755)

        self.writer.write(site_artifact(self.config, context, Phase.PRE_TLS), context)
        self.enable_site(context)
        self.test_and_reload(context)
        self._set_state(context, ProxyState.HTTP_CHALLENGE_READY)

    def issue_certificate(self, context: RunContext) -> None:
        """HTTP_CHALLENGE_READY -> ISSUED, or ISSUANCE_FAILED (terminal for the run)."""
        try:
            self.certbot.issue(context.domain, context.email, plugin=context.proxy)
        except ToolInvocationError:
            self._set_state(context, ProxyState.ISSUANCE_FAILED)
            raise
        context.issued_domains.add(context.domain)
        self._set_state(context, ProxyState.ISSUED)

    def discover_tls_slots(self, context: RunContext) -> TlsSlots:
        """
        Re-read what the TLS tool wrote and return the values it owns.

        Paths found in the tool-written file win when they exist on disk;
        otherwise the conventional Let's Encrypt layout is used.
        """
        if context.proxy == PROXY_APACHE:
            source = self.config.APACHE_DIR / "sites-available" / f"{context.domain}-le-ssl.conf"
            patterns = APACHE_SLOT_PATTERNS
        else:
            source = self.config.site_file(context.proxy, context.domain)
            patterns = NGINX_SLOT_PATTERNS

        text = source.read_text() if source.is_file() else ""
        found = {}
        for name, pattern in patterns.items():
            match = pattern.search(text)
            if match and Path(match.group(1)).is_file():
                found[name] = Path(match.group(1))

        live = self.config.live_cert_dir(context.domain)
        le_dir = self.config.LETSENCRYPT_DIR
        certificate = found.get("certificate", live / "fullchain.pem")
        certificate_key = found.get("certificate_key", live / "privkey.pem")
        if not certificate.is_file() or not certificate_key.is_file():
            raise ProvisionError(
                f"No certificate for {context.domain} found at {certificate} / {certificate_key}"
            )

        options_name = "options-ssl-apache.conf" if context.proxy == PROXY_APACHE else "options-ssl-nginx.conf"
        options = found.get("options_include")
        if options is None and (le_dir / options_name).is_file():
            options = le_dir / options_name

        dhparam = None
        if context.proxy != PROXY_APACHE:
            dhparam = found.get("dhparam")
            if dhparam is None and (le_dir / "ssl-dhparams.pem").is_file():
                dhparam = le_dir / "ssl-dhparams.pem"

        return TlsSlots(certificate, certificate_key, options, dhparam)

    def expected_post_tls(self, context: RunContext) -> str:
        return site_artifact(
            self.config, context, Phase.POST_TLS, self.discover_tls_slots(context)
        ).content

    def configure_post_tls(self, context: RunContext) -> None:
        """ISSUED -> CONFIGURED: full rewrite with proxy, auth and header rules."""
        if context.domain not in context.issued_domains:
            if not self.certificate_valid(context.domain):
                raise ProvisionError(f"No valid certificate for {context.domain}; cannot enable TLS")
            context.issued_domains.add(context.domain)

        slots = self.discover_tls_slots(context)
        self.writer.write(site_artifact(self.config, context, Phase.POST_TLS, slots), context)

        if context.proxy == PROXY_APACHE:
            le_link = self.config.APACHE_DIR / "sites-enabled" / f"{context.domain}-le-ssl.conf"
            if le_link.exists() or le_link.is_symlink():
                # The TLS vhost now lives in the main site file
                self.apache.disable_site(f"{context.domain}-le-ssl")

        self.test_and_reload(context)
        self._set_state(context, ProxyState.CONFIGURED)

"""
Configuration and run context for the WAHA provisioner.

`Config` holds the host layout and tunables (stable across reruns). `RunContext`
holds the parameters of one provisioning run and is threaded through every
component explicitly.
"""

import base64
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

# ----------------------------------------------------------------
# Global Constants
# ----------------------------------------------------------------
APP_NAME: str = "WAHA Provisioner"
VERSION: str = "1.0.0"
OPERATION_TIMEOUT: int = 300  # 5 minutes default timeout for external tools

PROXY_NGINX: str = "nginx"
PROXY_APACHE: str = "apache"
PROXY_KINDS: List[str] = [PROXY_NGINX, PROXY_APACHE]


@dataclass(frozen=True)
class Edition:
    """A WAHA flavour: image to run and the path its healthcheck uses."""

    key: str
    image: str
    label: str
    health_path: str


EDITIONS: Dict[str, Edition] = {
    "core": Edition("core", "devlikeapro/waha:latest", "WAHA Core", "/"),
    "plus": Edition("plus", "devlikeapro/waha-plus:latest", "WAHA Plus", "/health"),
    "arm": Edition("arm", "devlikeapro/waha:arm", "WAHA ARM (Core)", "/"),
}


# ----------------------------------------------------------------
# Host Configuration
# ----------------------------------------------------------------
@dataclass
class Config:
    """Host layout and tunables for a provisioning run."""

    LOG_FILE: Path = field(default_factory=lambda: Path("/var/log/waha_provisioner.log"))
    STATE_DIR: Path = field(default_factory=lambda: Path("/var/lib/waha-provisioner"))
    INSTALL_DIR: Path = field(default_factory=lambda: Path("/opt/waha"))
    NGINX_DIR: Path = field(default_factory=lambda: Path("/etc/nginx"))
    APACHE_DIR: Path = field(default_factory=lambda: Path("/etc/apache2"))
    LETSENCRYPT_DIR: Path = field(default_factory=lambda: Path("/etc/letsencrypt"))
    ACME_WEBROOT: Path = field(default_factory=lambda: Path("/var/www/certbot"))
    FAIL2BAN_DIR: Path = field(default_factory=lambda: Path("/etc/fail2ban"))
    CRON_DIR: Path = field(default_factory=lambda: Path("/etc/cron.d"))
    APT_KEYRING: Path = field(
        default_factory=lambda: Path("/usr/share/keyrings/docker-archive-keyring.gpg")
    )
    APT_SOURCES_DIR: Path = field(default_factory=lambda: Path("/etc/apt/sources.list.d"))

    DEFAULT_PORT: int = 3000
    CONTAINER_PORT: int = 3000
    SERVICE_NAME: str = "waha"
    CONTAINER_NAME: str = "waha_container"

    OPERATION_TIMEOUT: int = OPERATION_TIMEOUT
    CERTBOT_TIMEOUT: int = 600
    READINESS_TIMEOUT: float = 180.0
    READINESS_INTERVAL: float = 5.0
    READINESS_ACCEPT: List[int] = field(default_factory=lambda: [200, 204])
    CERT_MIN_VALIDITY: int = 86400  # seconds a certificate must still be valid

    PREREQUISITE_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "apt-transport-https",
            "ca-certificates",
            "curl",
            "gnupg",
            "lsb-release",
            "software-properties-common",
            "ufw",
            "apache2-utils",
            "fail2ban",
            "openssl",
        ]
    )
    DOCKER_PACKAGES: List[str] = field(
        default_factory=lambda: [
            "docker-ce",
            "docker-ce-cli",
            "containerd.io",
            "docker-compose-plugin",
        ]
    )
    NGINX_PACKAGES: List[str] = field(
        default_factory=lambda: ["nginx", "certbot", "python3-certbot-nginx"]
    )
    APACHE_PACKAGES: List[str] = field(
        default_factory=lambda: ["apache2", "certbot", "python3-certbot-apache"]
    )
    APACHE_MODULES: List[str] = field(
        default_factory=lambda: ["ssl", "proxy", "proxy_http", "headers", "rewrite"]
    )
    FIREWALL_RULES: List[str] = field(
        default_factory=lambda: ["OpenSSH", "80/tcp", "443/tcp"]
    )

    # Rate limiting (requests per second) and burst, per zone
    API_RATE: int = 50
    DASHBOARD_RATE: int = 100
    RATE_BURST: int = 50
    PROXY_TIMEOUT: int = 900

    # Fail2Ban jail tuning
    F2B_MAXRETRY: int = 10
    F2B_BANTIME: int = 1800
    F2B_FINDTIME: int = 600

    MONITORING_SCHEDULE: str = "*/5 * * * *"

    # Derived paths
    @property
    def backup_dir(self) -> Path:
        return self.STATE_DIR / "backups"

    @property
    def rollback_script(self) -> Path:
        return self.STATE_DIR / "rollback.sh"

    @property
    def lock_file(self) -> Path:
        return self.STATE_DIR / "run.lock"

    @property
    def compose_file(self) -> Path:
        return self.INSTALL_DIR / "docker-compose.yml"

    @property
    def env_file(self) -> Path:
        return self.INSTALL_DIR / ".env"

    @property
    def summary_file(self) -> Path:
        return self.INSTALL_DIR / "provision-summary.json"

    @property
    def monitoring_cron(self) -> Path:
        return self.CRON_DIR / "waha-healthcheck"

    def proxy_log_dir(self, proxy: str) -> Path:
        return Path("/var/log/apache2") if proxy == PROXY_APACHE else Path("/var/log/nginx")

    def htpasswd_dir(self, proxy: str) -> Path:
        return self.APACHE_DIR if proxy == PROXY_APACHE else self.NGINX_DIR / "conf.d"

    def site_file(self, proxy: str, domain: str) -> Path:
        if proxy == PROXY_APACHE:
            return self.APACHE_DIR / "sites-available" / f"{domain}.conf"
        return self.NGINX_DIR / "sites-available" / domain

    def site_link(self, proxy: str, domain: str) -> Path:
        if proxy == PROXY_APACHE:
            return self.APACHE_DIR / "sites-enabled" / f"{domain}.conf"
        return self.NGINX_DIR / "sites-enabled" / domain

    def proxy_globals_file(self, proxy: str) -> Path:
        if proxy == PROXY_APACHE:
            return self.APACHE_DIR / "conf-available" / "waha-security.conf"
        return self.NGINX_DIR / "conf.d" / "waha_rate_limits.conf"

    def live_cert_dir(self, domain: str) -> Path:
        return self.LETSENCRYPT_DIR / "live" / domain

    def jail_file(self, proxy: str) -> Path:
        return self.FAIL2BAN_DIR / "jail.d" / f"{proxy}-waha.conf"


# ----------------------------------------------------------------
# Run Context
# ----------------------------------------------------------------
@dataclass
class BasicAuthCredential:
    """Basic-auth protection for one proxied location."""

    name: str
    location: str
    realm: str
    username: str
    password: str


PROTECTED_LOCATIONS: Dict[str, Dict[str, str]] = {
    "api": {"location": "/", "realm": "WAHA API"},
    "dashboard": {"location": "/dashboard", "realm": "WAHA Dashboard"},
    "swagger": {"location": "/swagger", "realm": "WAHA Swagger UI"},
}


@dataclass
class RunContext:
    """Mutable parameter set for a single provisioning run."""

    domain: str
    email: str
    edition: Edition = EDITIONS["core"]
    image: str = ""
    port: int = 3000
    api_key: str = ""
    proxy: str = PROXY_NGINX
    credentials: Dict[str, BasicAuthCredential] = field(default_factory=dict)
    operator_user: Optional[str] = None
    monitoring: bool = False
    security_headers: bool = True
    dry_run: bool = False
    run_id: str = field(default_factory=lambda: new_run_id())

    # Run bookkeeping
    issued_domains: Set[str] = field(default_factory=set)
    proxy_states: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.image:
            self.image = self.edition.image

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"

    @property
    def backend_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    @property
    def health_url(self) -> str:
        return f"{self.backend_url}{self.edition.health_path}"

    def credential(self, name: str) -> Optional[BasicAuthCredential]:
        return self.credentials.get(name)


def new_run_id() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def make_credential(name: str, username: str, password: str) -> BasicAuthCredential:
    """Build the credential for one of the PROTECTED_LOCATIONS."""
    entry = PROTECTED_LOCATIONS[name]
    return BasicAuthCredential(
        name=name,
        location=entry["location"],
        realm=entry["realm"],
        username=username,
        password=password,
    )


# ----------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------
def generate_api_key() -> str:
    """32 random bytes, base64 encoded (same shape as `openssl rand -base64 32`)."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def generate_password(length: int = 20) -> str:
    characters = string.ascii_letters + string.digits
    return "".join(secrets.choice(characters) for _ in range(length))


def read_env_file(path: Path) -> Dict[str, str]:
    """Parse a KEY=VALUE env file. Missing file yields an empty dict."""
    values: Dict[str, str] = {}
    if not path.is_file():
        return values
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip()
    return values

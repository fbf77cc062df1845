"""
Config renderer.

Every artifact is generated wholesale from a fixed template and typed
parameters. Optional pieces (basic auth per location, security headers, TLS
option includes) are `Optional` fields: when a field is None its block is not
emitted at all.

The reverse-proxy site has two phases:

  pre-tls   HTTP only. Serves the ACME challenge directory and redirects
            everything else to HTTPS.
  post-tls  The same HTTP server plus a TLS server that proxies to the
            workload. Certificate paths and Certbot's recommended options are
            slots (`TlsSlots`) filled from what the TLS tool actually wrote.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from waha_provisioner.artifacts import ConfigArtifact, Phase
from waha_provisioner.config import PROXY_APACHE, Config, RunContext

ACME_PATH = "/.well-known/acme-challenge/"
API_ZONE = "api_req_limit"
DASHBOARD_ZONE = "dashboard_req_limit"
INDENT = "    "


# ----------------------------------------------------------------
# Template Parameters
# ----------------------------------------------------------------
@dataclass
class BasicAuthBlock:
    realm: str
    user_file: Path


@dataclass
class ProxyLocation:
    """One proxied path of the TLS server."""

    path: str
    upstream: str
    rate_zone: str
    auth: Optional[BasicAuthBlock] = None
    long_timeouts: bool = False


@dataclass
class SecurityHeaders:
    hsts_max_age: int = 15768000
    content_security_policy: str = (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data:; "
        "font-src 'self'; connect-src 'self';"
    )

    def items(self) -> List[Tuple[str, str]]:
        return [
            ("X-Frame-Options", "SAMEORIGIN"),
            ("X-Content-Type-Options", "nosniff"),
            ("X-XSS-Protection", "1; mode=block"),
            ("Referrer-Policy", "no-referrer-when-downgrade"),
            ("Strict-Transport-Security", f"max-age={self.hsts_max_age}; includeSubDomains; preload"),
            ("Content-Security-Policy", self.content_security_policy),
        ]


@dataclass
class TlsSlots:
    """Values owned by the TLS-issuance tool, discovered after issuance."""

    certificate: Path
    certificate_key: Path
    options_include: Optional[Path] = None
    dhparam: Optional[Path] = None


@dataclass
class SiteParams:
    domain: str
    acme_webroot: Path
    backend: str
    locations: List[ProxyLocation] = field(default_factory=list)
    headers: Optional[SecurityHeaders] = None
    proxy_timeout: int = 900
    rate_burst: int = 50


def htpasswd_path(config: Config, context: RunContext, name: str) -> Path:
    return config.htpasswd_dir(context.proxy) / f"{context.domain}_{name}.htpasswd"


def build_site_params(config: Config, context: RunContext) -> SiteParams:
    """Assemble the site template parameters for a run."""

    def auth_for(name: str) -> Optional[BasicAuthBlock]:
        credential = context.credential(name)
        if credential is None or not credential.username:
            return None
        return BasicAuthBlock(realm=credential.realm, user_file=htpasswd_path(config, context, name))

    backend = context.backend_url
    locations = [
        ProxyLocation("/", backend, API_ZONE, auth_for("api"), long_timeouts=True),
        ProxyLocation("/dashboard", f"{backend}/dashboard", DASHBOARD_ZONE, auth_for("dashboard")),
        ProxyLocation("/swagger", f"{backend}/swagger", DASHBOARD_ZONE, auth_for("swagger")),
    ]
    return SiteParams(
        domain=context.domain,
        acme_webroot=config.ACME_WEBROOT,
        backend=backend,
        locations=locations,
        headers=SecurityHeaders() if context.security_headers else None,
        proxy_timeout=config.PROXY_TIMEOUT,
        rate_burst=config.RATE_BURST,
    )


def _indent(lines: List[str], level: int = 1) -> List[str]:
    return [(INDENT * level + line) if line else "" for line in lines]


def _block(header: str, body: List[str], level: int = 1) -> List[str]:
    return [header + " {"] + _indent(body, level) + ["}"]


def _join(lines: List[str]) -> str:
    return "\n".join(lines).rstrip() + "\n"


# ----------------------------------------------------------------
# Nginx
# ----------------------------------------------------------------
def _nginx_http_server(params: SiteParams, deny_hidden: bool) -> List[str]:
    body = [
        "listen 80;",
        "listen [::]:80;",
        f"server_name {params.domain};",
        "",
        *_block(f"location ^~ {ACME_PATH}", [f"root {params.acme_webroot};"]),
        "",
    ]
    if deny_hidden:
        body += _block(r"location ~ /\.", ["deny all;", "access_log off;", "log_not_found off;"])
        body.append("")
    body += _block("location /", ["return 301 https://$host$request_uri;"])
    return _block("server", body)


def _nginx_location(location: ProxyLocation, params: SiteParams) -> List[str]:
    body = [f"limit_req zone={location.rate_zone} burst={params.rate_burst} nodelay;"]
    if location.auth is not None:
        body += [
            f'auth_basic "{location.auth.realm}";',
            f"auth_basic_user_file {location.auth.user_file};",
        ]
    body += [
        f"proxy_pass {location.upstream};",
        "proxy_set_header Host $host;",
        "proxy_set_header X-Real-IP $remote_addr;",
        "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "proxy_set_header X-Forwarded-Proto $scheme;",
    ]
    if location.long_timeouts:
        body += [
            f"proxy_read_timeout {params.proxy_timeout};",
            f"proxy_send_timeout {params.proxy_timeout};",
            f"proxy_connect_timeout {params.proxy_timeout};",
            f"send_timeout {params.proxy_timeout};",
        ]
    return _block(f"location {location.path}", body)


def render_nginx_pre_tls(params: SiteParams) -> str:
    return _join(_nginx_http_server(params, deny_hidden=False))


def render_nginx_post_tls(params: SiteParams, tls: TlsSlots) -> str:
    body = [
        "listen 443 ssl http2;",
        "listen [::]:443 ssl http2;",
        f"server_name {params.domain};",
        "",
        f"ssl_certificate {tls.certificate};",
        f"ssl_certificate_key {tls.certificate_key};",
    ]
    if tls.options_include is not None:
        body.append(f"include {tls.options_include};")
    if tls.dhparam is not None:
        body.append(f"ssl_dhparam {tls.dhparam};")
    body.append("")

    if params.headers is not None:
        body += [f'add_header {name} "{value}" always;' for name, value in params.headers.items()]
        body.append("")

    body += _block(r"location ~ /\.(?!well-known)", ["deny all;"])
    for location in params.locations:
        body.append("")
        body += _nginx_location(location, params)

    lines = _nginx_http_server(params, deny_hidden=True) + [""] + _block("server", body)
    return _join(lines)


def render_nginx_rate_limits(config: Config) -> str:
    return _join(
        [
            "# WAHA rate limiting zones (http context)",
            f"limit_req_zone $binary_remote_addr zone={DASHBOARD_ZONE}:10m rate={config.DASHBOARD_RATE}r/s;",
            f"limit_req_zone $binary_remote_addr zone={API_ZONE}:10m rate={config.API_RATE}r/s;",
        ]
    )


# ----------------------------------------------------------------
# Apache
# ----------------------------------------------------------------
def _apache_http_vhost(params: SiteParams) -> List[str]:
    challenge_dir = f"{params.acme_webroot}{ACME_PATH}"
    body = [
        f"ServerName {params.domain}",
        "",
        f'Alias {ACME_PATH} "{challenge_dir}"',
        f'<Directory "{challenge_dir}">',
        *_indent(["Options None", "AllowOverride None", "Require all granted"]),
        "</Directory>",
        "",
        "RewriteEngine On",
        r"RewriteCond %{REQUEST_URI} !^/\.well-known/acme-challenge/",
        "RewriteRule ^ https://%{HTTP_HOST}%{REQUEST_URI} [L,R=301]",
    ]
    return ["<VirtualHost *:80>"] + _indent(body) + ["</VirtualHost>"]


def _apache_location(location: ProxyLocation) -> List[str]:
    upstream = location.upstream
    if location.path.endswith("/") and not upstream.endswith("/"):
        upstream += "/"
    body = [
        f'ProxyPass "{upstream}"',
        f'ProxyPassReverse "{upstream}"',
    ]
    if location.auth is not None:
        body += [
            "AuthType Basic",
            f'AuthName "{location.auth.realm}"',
            f'AuthUserFile "{location.auth.user_file}"',
            "Require valid-user",
        ]
    return [f'<Location "{location.path}">'] + _indent(body) + ["</Location>"]


def render_apache_pre_tls(params: SiteParams) -> str:
    return _join(_apache_http_vhost(params))


def render_apache_post_tls(params: SiteParams, tls: TlsSlots) -> str:
    body = [
        f"ServerName {params.domain}",
        "",
        "SSLEngine on",
        f"SSLCertificateFile {tls.certificate}",
        f"SSLCertificateKeyFile {tls.certificate_key}",
    ]
    if tls.options_include is not None:
        body.append(f"Include {tls.options_include}")
    body.append("")

    if params.headers is not None:
        body += [f'Header always set {name} "{value}"' for name, value in params.headers.items()]
        body.append("")

    body += [
        r'<LocationMatch "/\.(?!well-known)">',
        *_indent(["Require all denied"]),
        "</LocationMatch>",
        "",
        "ProxyRequests Off",
        "ProxyPreserveHost On",
        f"ProxyTimeout {params.proxy_timeout}",
        'RequestHeader set X-Forwarded-Proto "https"',
    ]
    # Apache merges <Location> sections in file order: the catch-all comes first
    for location in sorted(params.locations, key=lambda loc: len(loc.path)):
        body.append("")
        body += _apache_location(location)

    lines = (
        _apache_http_vhost(params)
        + ["", "<IfModule mod_ssl.c>", "<VirtualHost *:443>"]
        + _indent(body)
        + ["</VirtualHost>", "</IfModule>"]
    )
    return _join(lines)


def render_apache_security_conf() -> str:
    return _join(
        [
            "# WAHA global Apache hardening",
            "ServerTokens Prod",
            "ServerSignature Off",
            "TraceEnable Off",
        ]
    )


# ----------------------------------------------------------------
# Site helpers
# ----------------------------------------------------------------
def render_site(proxy: str, phase: Phase, params: SiteParams, tls: Optional[TlsSlots] = None) -> str:
    """Dispatch to the proxy- and phase-specific site template."""
    if phase is Phase.PRE_TLS:
        return render_apache_pre_tls(params) if proxy == PROXY_APACHE else render_nginx_pre_tls(params)
    if phase is Phase.POST_TLS:
        if tls is None:
            raise ValueError("post-tls rendering needs the TLS slots")
        if proxy == PROXY_APACHE:
            return render_apache_post_tls(params, tls)
        return render_nginx_post_tls(params, tls)
    raise ValueError(f"Site has no {phase.value} template")


def site_artifact(
    config: Config, context: RunContext, phase: Phase, tls: Optional[TlsSlots] = None
) -> ConfigArtifact:
    params = build_site_params(config, context)
    return ConfigArtifact(
        path=config.site_file(context.proxy, context.domain),
        content=render_site(context.proxy, phase, params, tls),
        mode=0o644,
        phase=phase,
        domain=context.domain,
    )


def has_challenge_location(text: str) -> bool:
    return ACME_PATH in text


def has_proxy_block(text: str, backend: Optional[str] = None) -> bool:
    """True when the site proxies to `backend` (or to anything, if None)."""
    for line in text.splitlines():
        words = line.strip().rstrip(";").split()
        if len(words) >= 2 and words[0] in ("proxy_pass", "ProxyPass"):
            if backend is None or words[1].strip('"').startswith(backend):
                return True
    return False


def has_auth_block(text: str) -> bool:
    return "auth_basic" in text or "AuthType" in text


# ----------------------------------------------------------------
# Workload
# ----------------------------------------------------------------
def render_compose_manifest(config: Config, context: RunContext) -> str:
    health_url = f"http://localhost:{config.CONTAINER_PORT}{context.edition.health_path}"
    return f"""\
services:
  {config.SERVICE_NAME}:
    image: {context.image}
    container_name: {config.CONTAINER_NAME}
    restart: always
    ports:
      - "127.0.0.1:{context.port}:{config.CONTAINER_PORT}"
    env_file:
      - .env
    volumes:
      - ./data:/app/data
    healthcheck:
      test: ["CMD", "curl", "-f", "{health_url}"]
      interval: 30s
      timeout: 10s
      retries: 5
"""


def render_env_file(context: RunContext) -> str:
    return _join(
        [
            "# WAHA environment, generated by waha-provisioner. Contains secrets.",
            f"BASE_URL={context.base_url}",
            f"API_KEY={context.api_key}",
        ]
    )


def compose_artifacts(config: Config, context: RunContext) -> List[ConfigArtifact]:
    return [
        ConfigArtifact(config.env_file, render_env_file(context), mode=0o600),
        ConfigArtifact(config.compose_file, render_compose_manifest(config, context), mode=0o644),
    ]


# ----------------------------------------------------------------
# Fail2Ban
# ----------------------------------------------------------------
def jail_names(proxy: str) -> List[str]:
    if proxy == PROXY_APACHE:
        return ["apache-auth"]
    return ["nginx-http-auth", "nginx-req-limit"]


def _jail(name: str, filter_name: str, logpath: Path, config: Config) -> List[str]:
    return [
        f"[{name}]",
        "enabled  = true",
        "port     = http,https",
        f"filter   = {filter_name}",
        f"logpath  = {logpath}",
        f"maxretry = {config.F2B_MAXRETRY}",
        f"bantime  = {config.F2B_BANTIME}",
        f"findtime = {config.F2B_FINDTIME}",
        "",
    ]


def render_fail2ban_jail(config: Config, proxy: str) -> str:
    log_dir = config.proxy_log_dir(proxy)
    if proxy == PROXY_APACHE:
        lines = _jail("apache-auth", "apache-auth", log_dir / "error.log", config)
    else:
        lines = _jail("nginx-http-auth", "waha-http-auth", log_dir / "access.log", config)
        lines += _jail("nginx-req-limit", "waha-req-limit", log_dir / "error.log", config)
    return _join(lines)


def render_fail2ban_filters(proxy: str) -> Dict[str, str]:
    """Filter files by name. Apache uses the filter fail2ban ships."""
    if proxy == PROXY_APACHE:
        return {}
    return {
        "waha-http-auth": _join(
            [
                "[Definition]",
                r'failregex = ^<HOST> -.* "(GET|POST|HEAD|PUT|DELETE|OPTIONS) .* HTTP/\d(\.\d)?" 401 \d+ ".*" ".*"$',
                "ignoreregex =",
            ]
        ),
        "waha-req-limit": _join(
            [
                "[Definition]",
                r'failregex = ^\s*\[[a-z]+\] \d+#\d+: \*\d+ limiting requests, excess: [\d\.]+ by zone "[^"]+", client: <HOST>,',
                "ignoreregex =",
            ]
        ),
    }


def fail2ban_artifacts(config: Config, proxy: str) -> List[ConfigArtifact]:
    artifacts = [ConfigArtifact(config.jail_file(proxy), render_fail2ban_jail(config, proxy))]
    for name, content in render_fail2ban_filters(proxy).items():
        artifacts.append(ConfigArtifact(config.FAIL2BAN_DIR / "filter.d" / f"{name}.conf", content))
    return artifacts


# ----------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------
def render_monitoring_cron(config: Config, context: RunContext) -> str:
    check = (
        f". {config.env_file} && "
        f'curl -fsS -o /dev/null -m 10 -H "X-Api-Key: $API_KEY" {context.health_url} '
        f'|| logger -t waha-healthcheck "WAHA health check failed for {context.domain}"'
    )
    return _join(
        [
            "# WAHA health check, installed by waha-provisioner",
            "SHELL=/bin/sh",
            "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            f"{config.MONITORING_SCHEDULE} root {check}",
        ]
    )

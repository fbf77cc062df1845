"""
Precondition checks, run before anything on the host is changed.

Hard checks fail the run. The DNS check is soft: propagation delays are
common, so an unresolved domain is a warning the operator must confirm.
"""

import re
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, List

from waha_provisioner.errors import PreconditionError

MIN_PORT = 1024
MAX_PORT = 65535

LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
DOMAIN_RE = re.compile(rf"^(?:{LABEL}\.)+[A-Za-z]{{2,63}}$")
LOCAL_PART_RE = re.compile(r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~.-]{1,64}$")


def is_valid_domain(domain: str) -> bool:
    """label(.label)*.tld, labels 1-63 alphanumerics/hyphens without edge hyphens."""
    return bool(domain) and len(domain) <= 253 and DOMAIN_RE.match(domain) is not None


def is_valid_email(email: str) -> bool:
    local, sep, domain = (email or "").rpartition("@")
    if not sep or not LOCAL_PART_RE.match(local):
        return False
    if local.startswith(".") or local.endswith(".") or ".." in local:
        return False
    return is_valid_domain(domain)


def port_in_use(port: int) -> bool:
    """True if some process already listens on `port` (any address)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return True
    return False


def resolve_domain(domain: str) -> List[str]:
    """Addresses the domain resolves to; empty when resolution fails."""
    try:
        infos = socket.getaddrinfo(domain, None)
    except (socket.gaierror, UnicodeError):
        return []
    return sorted({info[4][0] for info in infos})


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class ValidationRequest:
    """
    Inputs to validate.

    Attributes:
        domain: Public domain the proxy will serve.
        email: Contact address for the certificate authority.
        port: Host port the workload will publish.
        euid: Effective uid of the caller.
        port_owned: The port is published by this orchestrator's existing
            workload manifest (a rerun), so it being bound is expected.
    """

    domain: str
    email: str
    port: Any
    euid: int
    port_owned: bool = False


@dataclass
class ValidationIssue:
    code: str
    message: str


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.warnings)

    @property
    def codes(self) -> List[str]:
        return [issue.code for issue in self.errors + self.warnings]

    def raise_for_errors(self) -> None:
        if self.errors:
            raise PreconditionError(
                "; ".join(f"{issue.code}: {issue.message}" for issue in self.errors),
                reasons=[issue.code for issue in self.errors],
            )


class Validator:
    def __init__(
        self,
        port_probe: Callable[[int], bool] = port_in_use,
        resolver: Callable[[str], List[str]] = resolve_domain,
    ):
        self.port_probe = port_probe
        self.resolver = resolver

    def validate(self, request: ValidationRequest) -> ValidationResult:
        result = ValidationResult()

        def fail(code: str, message: str) -> None:
            result.errors.append(ValidationIssue(code, message))

        if request.euid != 0:
            fail("not-root", "This command must be run as root (e.g. with sudo).")

        domain_ok = is_valid_domain(request.domain)
        if not domain_ok:
            fail("invalid-domain", f"'{request.domain}' is not a valid domain name.")

        if not is_valid_email(request.email):
            fail("invalid-email", f"'{request.email}' is not a valid email address.")

        port = request.port
        if isinstance(port, bool) or not isinstance(port, int) or not MIN_PORT <= port <= MAX_PORT:
            fail("invalid-port", f"Port must be an integer between {MIN_PORT} and {MAX_PORT}, got {port!r}.")
        elif not request.port_owned and self.port_probe(port):
            fail("port-in-use", f"Port {port} is already in use by another process.")

        if domain_ok and not self.resolver(request.domain):
            result.warnings.append(
                ValidationIssue(
                    "dns-unresolved",
                    f"{request.domain} does not resolve yet. Certificate issuance will fail "
                    "until its DNS record points at this server.",
                )
            )
        return result

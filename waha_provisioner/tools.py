"""
External tool adapter.

Every command the orchestrator runs goes through `ToolAdapter.invoke`, which
applies a timeout, captures stdout/stderr, and turns the exit code into the
engine's success/failure contract. Success is a zero exit code and nothing else:
output is captured for the log and summary, never scraped to decide the outcome.

The facades below (`PackageManager`, `ComposeCli`, `CertbotCli`, ...) only
assemble argument lists for the adapter.
"""

import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from waha_provisioner.config import OPERATION_TIMEOUT
from waha_provisioner.errors import ToolInvocationError
from waha_provisioner.logger import get_logger

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127

Runner = Callable[..., subprocess.CompletedProcess]


def subprocess_runner(
    cmd: List[str],
    timeout: Optional[float] = None,
    input_text: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Default runner: a plain subprocess.run with captured text output."""
    return subprocess.run(
        cmd,
        input=input_text,
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=str(cwd) if cwd else None,
        check=False,
    )


@dataclass
class ToolResult:
    """Outcome of one external command."""

    tool: str
    args: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_line(self) -> str:
        return shlex.join([self.tool] + self.args)


@dataclass
class ToolAdapter:
    """Runs external tools with a consistent timeout and structured capture."""

    timeout: float = OPERATION_TIMEOUT
    runner: Runner = subprocess_runner
    history: List[ToolResult] = field(default_factory=list)

    def invoke(
        self,
        tool: str,
        args: Sequence[str] = (),
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        cwd: Optional[Path] = None,
    ) -> ToolResult:
        """
        Run `tool` with `args`.

        Args:
            tool: Executable name or path.
            args: Arguments passed verbatim (no shell).
            check: Raise ToolInvocationError on a non-zero exit.
            timeout: Per-call override of the adapter timeout.
            input_text: Text fed to the command's stdin.
            cwd: Working directory for the command.

        Returns:
            The ToolResult, also appended to `history`.
        """
        logger = get_logger()
        cmd = [tool] + list(args)
        effective_timeout = timeout if timeout is not None else self.timeout
        logger.debug(f"Running command: {shlex.join(cmd)}")

        start = time.monotonic()
        try:
            proc = self.runner(cmd, timeout=effective_timeout, input_text=input_text, cwd=cwd)
            result = ToolResult(
                tool=tool,
                args=list(args),
                exit_code=proc.returncode,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
            )
        except subprocess.TimeoutExpired:
            result = ToolResult(
                tool=tool,
                args=list(args),
                exit_code=EXIT_TIMEOUT,
                stderr=f"timed out after {effective_timeout} seconds",
            )
        except FileNotFoundError:
            result = ToolResult(
                tool=tool,
                args=list(args),
                exit_code=EXIT_NOT_FOUND,
                stderr=f"{tool}: command not found",
            )
        result.duration = time.monotonic() - start
        self.history.append(result)

        if not result.ok:
            logger.debug(f"Command exited {result.exit_code}: {result.command_line}")
            if result.stderr.strip():
                logger.debug(f"stderr: {result.stderr.strip()}")
            if check:
                raise ToolInvocationError(result)
        return result

    def succeeds(self, tool: str, args: Sequence[str] = (), **kwargs) -> bool:
        """Run a read-only probe command; True on exit code 0."""
        return self.invoke(tool, args, check=False, **kwargs).ok


# ----------------------------------------------------------------
# Tool Facades
# ----------------------------------------------------------------
class PackageManager:
    """apt-get / dpkg-query."""

    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def update(self) -> None:
        self.tools.invoke("apt-get", ["update", "-y"])

    def install(self, packages: Sequence[str]) -> None:
        if not packages:
            return
        self.tools.invoke("apt-get", ["install", "-y", "--no-install-recommends"] + list(packages))

    def is_installed(self, package: str) -> bool:
        result = self.tools.invoke(
            "dpkg-query", ["-W", "-f=${Status}", package], check=False
        )
        return result.ok and "install ok installed" in result.stdout

    def missing(self, packages: Sequence[str]) -> List[str]:
        return [p for p in packages if not self.is_installed(p)]


class ServiceManager:
    """systemctl."""

    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def enable(self, unit: str) -> None:
        self.tools.invoke("systemctl", ["enable", unit])

    def restart(self, unit: str) -> None:
        self.tools.invoke("systemctl", ["restart", unit])

    def reload(self, unit: str) -> None:
        self.tools.invoke("systemctl", ["reload", unit])

    def is_active(self, unit: str) -> bool:
        return self.tools.succeeds("systemctl", ["is-active", "--quiet", unit])


class ComposeCli:
    """`docker compose` scoped to one project directory."""

    def __init__(self, tools: ToolAdapter, project_dir: Path):
        self.tools = tools
        self.project_dir = Path(project_dir)

    def _args(self, *args: str) -> List[str]:
        return ["compose", "--project-directory", str(self.project_dir)] + list(args)

    def available(self) -> bool:
        return self.tools.succeeds("docker", ["compose", "version"])

    def up(self) -> ToolResult:
        return self.tools.invoke("docker", self._args("up", "-d"), cwd=self.project_dir)

    def ps(self, check: bool = True) -> ToolResult:
        return self.tools.invoke(
            "docker",
            self._args("ps", "--status", "running", "--quiet"),
            check=check,
            cwd=self.project_dir,
        )

    def logs(self, service: str, tail: int = 50) -> ToolResult:
        return self.tools.invoke(
            "docker",
            self._args("logs", "--no-color", "--tail", str(tail), service),
            check=False,
            cwd=self.project_dir,
        )

    def down_command(self) -> str:
        """Shell form of `down`, for the rollback script."""
        return shlex.join(["docker"] + self._args("down"))

    def up_command(self) -> str:
        """Shell form of `up -d`, for the rollback script."""
        return shlex.join(["docker"] + self._args("up", "-d"))


class CertbotCli:
    """certbot (issuance through the installed proxy plugin) and openssl checks."""

    def __init__(self, tools: ToolAdapter, timeout: float = 600):
        self.tools = tools
        self.timeout = timeout

    def issue(self, domain: str, email: str, plugin: str) -> ToolResult:
        return self.tools.invoke(
            "certbot",
            [
                f"--{plugin}",
                "-d",
                domain,
                "--non-interactive",
                "--agree-tos",
                "-m",
                email,
                "--no-redirect",
                "--keep-until-expiring",
            ],
            timeout=self.timeout,
        )

    def certificate_valid(self, cert_path: Path, min_seconds: int = 0) -> bool:
        """True when the certificate exists and will not expire within `min_seconds`."""
        if not Path(cert_path).is_file():
            return False
        return self.tools.succeeds(
            "openssl",
            ["x509", "-checkend", str(min_seconds), "-noout", "-in", str(cert_path)],
        )


class FirewallCli:
    """ufw."""

    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def allow(self, rule: str) -> None:
        self.tools.invoke("ufw", ["allow", rule])

    def enable(self) -> None:
        self.tools.invoke("ufw", ["--force", "enable"])

    def status(self) -> ToolResult:
        return self.tools.invoke("ufw", ["status"], check=False)


class Fail2BanCli:
    """fail2ban-client."""

    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def status(self, jail: Optional[str] = None) -> ToolResult:
        args = ["status"] + ([jail] if jail else [])
        return self.tools.invoke("fail2ban-client", args)

    def unban(self, jail: str, ip: str) -> ToolResult:
        return self.tools.invoke("fail2ban-client", ["set", jail, "unbanip", ip])


class NginxCli:
    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def test_config(self) -> None:
        self.tools.invoke("nginx", ["-t"])


class ApacheCli:
    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def test_config(self) -> None:
        self.tools.invoke("apachectl", ["configtest"])

    def enable_modules(self, modules: Sequence[str]) -> None:
        self.tools.invoke("a2enmod", ["-q"] + list(modules))

    def enable_conf(self, name: str) -> None:
        self.tools.invoke("a2enconf", ["-q", name])

    def enable_site(self, name: str) -> None:
        self.tools.invoke("a2ensite", ["-q", name])

    def disable_site(self, name: str) -> None:
        self.tools.invoke("a2dissite", ["-q", name])


class HtpasswdCli:
    """htpasswd, with passwords fed through stdin rather than argv."""

    def __init__(self, tools: ToolAdapter):
        self.tools = tools

    def create(self, path: Path, username: str, password: str) -> None:
        self.tools.invoke("htpasswd", ["-ciB", str(path), username], input_text=password)

    def verify(self, path: Path, username: str, password: str) -> bool:
        if not Path(path).is_file():
            return False
        return self.tools.succeeds(
            "htpasswd", ["-vi", str(path), username], input_text=password
        )

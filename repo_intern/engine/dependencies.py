"""Project dependency installation for a freshly prepared checkout.

Installers are tried in a fixed priority order; the first whose marker file is
present wins. Node installers additionally require ``package.json``. A checkout
without any manifest needs nothing and succeeds with no manager.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

from repo_intern.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Installer:
    """A package manager and the files that select it."""

    manager: str
    markers: tuple[str, ...]
    command: tuple[str, ...]
    requires: str | None = None


INSTALLERS: tuple[Installer, ...] = (
    Installer("bun", ("bun.lockb", "bun.lock"), ("bun", "install", "--frozen-lockfile"), requires="package.json"),
    Installer("pnpm", ("pnpm-lock.yaml",), ("pnpm", "install", "--frozen-lockfile"), requires="package.json"),
    Installer("yarn", ("yarn.lock",), ("yarn", "install", "--frozen-lockfile"), requires="package.json"),
    Installer("npm", ("package-lock.json",), ("npm", "ci"), requires="package.json"),
    Installer("uv", ("uv.lock",), ("uv", "sync")),
    Installer("poetry", ("poetry.lock",), ("poetry", "install", "--no-interaction")),
    Installer("pip", ("requirements.txt",), ("pip", "install", "-r", "requirements.txt")),
)


@dataclass
class InstallResult:
    """Outcome of dependency installation.

    ``success`` is True when nothing needed installing or installation
    completed. ``skipped`` marks a manifest that could not be matched to an
    installer (``package.json`` without a lock file).
    """

    success: bool
    package_manager: str | None = None
    skipped: bool = False
    error: str | None = None


def detect_installer(path: Path | str) -> Installer | None:
    """Return the highest-priority installer whose markers are present."""
    root = Path(path)
    for installer in INSTALLERS:
        if installer.requires and not (root / installer.requires).exists():
            continue
        if any((root / marker).exists() for marker in installer.markers):
            return installer
    return None


async def install_dependencies(path: Path | str, timeout: float | None = None) -> InstallResult:
    """Detect and run the project's installer in ``path``.

    Never raises for installer problems; failures come back as
    ``InstallResult(success=False)``.
    """
    root = Path(path)
    installer = detect_installer(root)

    if installer is None:
        if (root / "package.json").exists():
            log.warning("dependency_install_skipped", path=str(root), reason="package.json without lock file")
            return InstallResult(success=True, skipped=True)
        log.debug("no_dependency_manifest", path=str(root))
        return InstallResult(success=True)

    log.info("installing_dependencies", manager=installer.manager, path=str(root))
    try:
        _, stderr, code = await run_command(*installer.command, cwd=root, check=False, timeout=timeout)
    except (FileNotFoundError, PermissionError) as e:
        log.warning("dependency_installer_unavailable", manager=installer.manager, error=str(e))
        return InstallResult(success=False, package_manager=installer.manager, error=str(e))
    except TimeoutError:
        log.warning("dependency_install_timeout", manager=installer.manager, timeout=timeout)
        return InstallResult(
            success=False,
            package_manager=installer.manager,
            error=f"{installer.manager} timed out after {timeout}s",
        )

    if code != 0:
        error = stderr.strip()[-2000:] or f"{installer.manager} exited with code {code}"
        log.warning("dependency_install_failed", manager=installer.manager, exit_code=code)
        return InstallResult(success=False, package_manager=installer.manager, error=error)

    log.info("dependencies_installed", manager=installer.manager)
    return InstallResult(success=True, package_manager=installer.manager)

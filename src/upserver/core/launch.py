"""Detect how a customer site is installed and served."""

import json
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

MANIFEST = "package.json"
DEPENDENCY_DIR = "node_modules"

_PORT_FLAG_TOOLS = re.compile(r"\b(vite|vinxi)\b")
_HARDCODED_PORT = re.compile(r"\s--port\s+\d+")


@dataclass
class LaunchPlan:
    """How to install and run one site.

    ``port_style`` says how the allocated port reaches the dev server:
    ``"append"`` adds ``--port N``, ``"forward"`` adds ``-- --port N`` (through
    a package-manager script), ``"env"`` relies on the ``PORT`` variable only,
    and ``"static"`` serves the directory with ``http.server``.
    """

    kind: str
    base_command: list[str]
    port_style: str
    install_command: list[str] | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def manifest_driven(self) -> bool:
        return self.install_command is not None

    def run_command(self, port: int, host: str = "127.0.0.1") -> list[str]:
        if self.port_style == "static":
            return [*self.base_command, str(port), "--bind", host]
        if self.port_style == "append":
            return [*self.base_command, "--port", str(port)]
        if self.port_style == "forward":
            return [*self.base_command, "--", "--port", str(port)]
        return list(self.base_command)

    def run_env(self, port: int, devtools_port: int | None = None) -> dict[str, str]:
        env = {**self.env, "PORT": str(port)}
        if devtools_port is not None:
            env["TANSTACK_DEVTOOLS_PORT"] = str(devtools_port)
        return env


def needs_install(site_path: str | Path, plan: LaunchPlan) -> bool:
    """Manifest-driven projects need an install when the dependency dir is absent."""
    return plan.manifest_driven and not (Path(site_path) / DEPENDENCY_DIR).exists()


def _read_manifest(site_path: Path) -> dict:
    try:
        return json.loads((site_path / MANIFEST).read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to parse %s in %s: %s", MANIFEST, site_path, e)
        return {}


def detect_launch_plan(site_path: str | Path) -> LaunchPlan:
    """Inspect the site directory and pick install/run commands."""
    site = Path(site_path)

    if not (site / MANIFEST).exists():
        return LaunchPlan(
            kind="static",
            base_command=[sys.executable, "-m", "http.server"],
            port_style="static",
        )

    manifest = _read_manifest(site)
    dev_script = (manifest.get("scripts") or {}).get("dev", "")
    deps = {**(manifest.get("dependencies") or {}), **(manifest.get("devDependencies") or {})}

    supports_port_flag = bool(_PORT_FLAG_TOOLS.search(dev_script))
    # A hard-coded --port in the dev script wins over a forwarded one, so run vite directly.
    run_vite_directly = supports_port_flag and bool(_HARDCODED_PORT.search(dev_script))

    if (site / "pnpm-lock.yaml").exists():
        install = ["npx", "-y", "pnpm", "install"]
        script = ["npx", "-y", "pnpm", "run", "dev"]
        direct = ["npx", "-y", "pnpm", "exec", "vite", "dev"]
    elif (site / "yarn.lock").exists():
        install = ["yarn", "install"]
        script = ["yarn", "dev"]
        direct = ["yarn", "vite", "dev"]
    else:
        install = ["npm", "install"]
        script = ["npm", "run", "dev"]
        direct = ["npx", "vite", "dev"]

    if run_vite_directly:
        base, style = direct, "append"
    elif supports_port_flag:
        base, style = script, "forward"
    else:
        base, style = script, "env"

    env = {}
    # The TanStack devtools plugin starts a shared event bus in development mode,
    # which collides across concurrently running sites.
    if "@tanstack/devtools-vite" in deps:
        env["NODE_ENV"] = "production"

    return LaunchPlan(
        kind="node",
        base_command=base,
        port_style=style,
        install_command=install,
        env=env,
    )

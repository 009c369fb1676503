import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from jsonschema import ValidationError, validate

from kbootstrap.config import BootstrapConfig, load_config
from kbootstrap.logging import setup_logger
from kbootstrap.modules.errors import BootstrapError
from kbootstrap.modules.executor import DryRunExecutor, SSHScriptExecutor
from kbootstrap.modules.orchestrator import BootstrapOrchestrator, bootstrap_cluster
from kbootstrap.modules.state import CloudResourceState, Operation
from kbootstrap.modules.storage import LocalStorage

_IP_SET = {
    "type": "object",
    "properties": {
        "control_planes": {"type": "array", "items": {"type": "string"}},
        "data_stores": {"type": "array", "items": {"type": "string"}},
        "worker_planes": {"type": "array", "items": {"type": "string"}},
        "load_balancer": {"type": "string"},
    },
    "additionalProperties": False,
}

TOPOLOGY_SCHEMA = {
    "type": "object",
    "properties": {
        "metadata": {
            "type": "object",
            "properties": {
                "cluster_name": {"type": "string"},
                "provider": {"type": "string"},
                "region": {"type": "string"},
                "cluster_type": {"type": "string"},
            },
            "required": ["cluster_name"],
        },
        "ssh": {
            "type": "object",
            "properties": {
                "username": {"type": "string"},
                "private_key": {"type": "string"},
                "private_key_file": {"type": "string"},
            },
        },
        "public_ips": _IP_SET,
        "private_ips": _IP_SET,
    },
    "required": ["metadata", "public_ips", "private_ips"],
}

TopologyOption = typer.Option(..., "--topology", "-t", exists=True, dir_okay=False, help="Cluster topology YAML")
DistroOption = typer.Option("k3s", "--distro", help="Bootstrap distro (k3s or kubeadm)")
VersionOption = typer.Option(..., "--version", help="Kubernetes version (k3s: 1.27.4, kubeadm: 1.28)")
CNIOption = typer.Option(..., "--cni", help="CNI plugin name")
DryRunOption = typer.Option(False, "--dry-run", help="Log the scripts instead of running them")
ConfigOption = typer.Option(None, "--config", "-c", help="kbootstrap configuration file")
StateDirOption = typer.Option(None, "--state-dir", help="Override the state directory from the configuration")
KubeconfigOption = typer.Option(None, "--kubeconfig-out", help="Write the admin kubeconfig to this file")


def load_topology(path: Path) -> CloudResourceState:
    """Read and validate a topology file.

    ``ssh.private_key_file`` is read into ``ssh.private_key``.

    Raises:
        ValueError: If the file is not valid YAML or does not match the schema
    """
    with open(path) as f:
        try:
            raw: Dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    try:
        validate(instance=raw, schema=TOPOLOGY_SCHEMA)
    except ValidationError as ve:
        raise ValueError(f"Topology validation error: {ve.message}") from ve

    ssh = dict(raw.get("ssh") or {})
    key_file = ssh.pop("private_key_file", None)
    if key_file and not ssh.get("private_key"):
        ssh["private_key"] = Path(key_file).expanduser().read_text()
    raw["ssh"] = ssh
    return CloudResourceState(**raw)


def _prepare(ctx: typer.Context, config_path: Optional[Path], state_dir: Optional[Path]) -> BootstrapConfig:
    config = load_config(config_path)
    if ctx.obj and ctx.obj.get("debug"):
        config.logging.level = "DEBUG"
    if state_dir:
        config.storage.state_dir = str(state_dir.expanduser())
    setup_logger("kbootstrap", config=config.logging)
    return config


def _fail(message: str) -> None:
    typer.secho(f"❌ {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _bootstrap(
    ctx: typer.Context,
    operation: Operation,
    topology: Path,
    distro: str,
    version: str,
    cni: str,
    dry_run: bool,
    config_path: Optional[Path],
    state_dir: Optional[Path],
    kubeconfig_out: Optional[Path],
) -> None:
    config = _prepare(ctx, config_path, state_dir)
    try:
        cloud = load_topology(topology)
    except (ValueError, OSError, BootstrapError) as e:
        _fail(str(e))

    executor = DryRunExecutor(config) if dry_run else SSHScriptExecutor(cloud.ssh, config)
    storage = LocalStorage(config.storage.state_dir)
    typer.echo(f"🚀 {operation.value.capitalize()} {distro} cluster {cloud.metadata.cluster_name}"
               f"{' (dry run)' if dry_run else ''}")

    try:
        with executor:
            orchestrator = BootstrapOrchestrator(
                cloud, distro, executor,
                config=config,
                logger=logging.getLogger("kbootstrap.orchestrator"),
            )
            results = bootstrap_cluster(orchestrator, storage, version, cni, operation)
    except (BootstrapError, ValueError) as e:
        _fail(str(e))

    for index, result in sorted(results['controlplanes'].items()):
        icon = "✅" if result['success'] else "❌"
        typer.echo(f"{icon} Controlplane-[{index}]: {result['message']}")
    for index, result in sorted(results['workers'].items()):
        icon = "✅" if result['success'] else "❌"
        typer.echo(f"{icon} Workerplane-[{index}]: {result['message']}")
    typer.echo(f"📊 Phase: {results['phase']}")

    if kubeconfig_out:
        kubeconfig = orchestrator.state.kubeconfig
        if kubeconfig:
            kubeconfig_out.write_text(kubeconfig)
            kubeconfig_out.chmod(0o600)
            typer.echo(f"📄 Kubeconfig written to {kubeconfig_out}")

    if not results['success']:
        _fail(f"{len(results['errors'])} error(s) during bootstrap")
    typer.echo("🎉 Cluster bootstrapped")


def create(
    ctx: typer.Context,
    topology: Path = TopologyOption,
    distro: str = DistroOption,
    version: str = VersionOption,
    cni: str = CNIOption,
    dry_run: bool = DryRunOption,
    config_path: Optional[Path] = ConfigOption,
    state_dir: Optional[Path] = StateDirOption,
    kubeconfig_out: Optional[Path] = KubeconfigOption,
):
    """Bootstrap a new cluster, or continue one that was already started."""
    _bootstrap(ctx, Operation.CREATE, topology, distro, version, cni, dry_run, config_path, state_dir, kubeconfig_out)


def resume(
    ctx: typer.Context,
    topology: Path = TopologyOption,
    distro: str = DistroOption,
    version: str = VersionOption,
    cni: str = CNIOption,
    dry_run: bool = DryRunOption,
    config_path: Optional[Path] = ConfigOption,
    state_dir: Optional[Path] = StateDirOption,
    kubeconfig_out: Optional[Path] = KubeconfigOption,
):
    """Continue a bootstrap from its persisted state."""
    _bootstrap(ctx, Operation.RESUME, topology, distro, version, cni, dry_run, config_path, state_dir, kubeconfig_out)


def status(
    ctx: typer.Context,
    topology: Path = TopologyOption,
    config_path: Optional[Path] = ConfigOption,
    state_dir: Optional[Path] = StateDirOption,
):
    """Show the bootstrap progress of a cluster."""
    config = _prepare(ctx, config_path, state_dir)
    try:
        cloud = load_topology(topology)
        meta = cloud.metadata
        storage = LocalStorage(config.storage.state_dir)
        storage.setup(meta.provider, meta.cluster_name, meta.region, meta.cluster_type)
        storage.connect()
        document = storage.read()
    except (ValueError, OSError, BootstrapError) as e:
        _fail(str(e))

    if document is None:
        _fail(f"No bootstrap state for cluster {cloud.metadata.cluster_name}")

    typer.echo(f"📡 Status for cluster: {document.metadata.cluster_name}")
    typer.echo(f"  Distro:         {document.distro}")
    typer.echo(f"  Version:        {document.version or '-'}")
    typer.echo(f"  CNI:            {document.cni_plugin or '-'}")
    typer.echo(f"  Phase:          {document.phase.value}")
    typer.echo(f"  Control planes: {len(document.control_planes_configured)}/{document.control_plane_count}")
    typer.echo(f"  Workers:        {len(document.workers_configured)}/{document.worker_count}")
    typer.echo(f"  Kubeconfig:     {'captured' if document.kubeconfig else 'not yet'}")

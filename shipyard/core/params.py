# -----------------------------------------------------------------------------
# DEPLOYMENT PARAMETERS - PROVISIONING CONTRACT
# -----------------------------------------------------------------------------
# Responsibility: Load and validate the per-environment parameter files the
# provisioning layer consumes, and render them in its key = value format.
#
# This module never resolves a secret. Every *_secret_id is a name in an
# external secret store and is passed through untouched.
#
# signer_configs order is the signer index: it is preserved from file to
# rendering, and a reorder is reported, never applied silently.
# -----------------------------------------------------------------------------

import json
from pathlib import Path

import yaml
from pydantic import ValidationError
from rich.console import Console

from shipyard.domain.models import DeploymentParameterSet, ImageReference

console = Console()

PARAMETER_SUFFIXES = (".yaml", ".yml", ".json")


class ParameterSetError(Exception):
    """Raised when a parameter file is unreadable or breaks the contract."""

    def __init__(self, message: str, path: str = "", details: str = "") -> None:
        super().__init__(message)
        self.path = path
        self.details = details


def _describe(error: ValidationError) -> str:
    # Field locations and messages only: input values may be secrets
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
    )


def parse_parameter_set(data: object, source: str = "<memory>") -> DeploymentParameterSet:
    if not isinstance(data, dict):
        raise ParameterSetError(f"{source}: expected a mapping of parameters", path=source)
    try:
        return DeploymentParameterSet.model_validate(data)
    except ValidationError as e:
        details = _describe(e)
        console.print(f"[red][PARAMS] Rejected {source}: {details}[/red]")
        raise ParameterSetError(f"{source}: invalid deployment parameters", source, details) from e


def load_parameter_set(path: str | Path) -> DeploymentParameterSet:
    """
    Load one environment's parameters from a YAML or JSON file.

    Raises:
        ParameterSetError: Missing file, bad syntax or contract violation.
    """
    path = Path(path)
    if not path.is_file():
        raise ParameterSetError(f"Parameter file not found: {path}", path=str(path))

    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ParameterSetError(f"{path}: unparseable parameter file", str(path), str(e)) from e

    params = parse_parameter_set(data, source=str(path))
    console.print(
        f"[green][PARAMS] Loaded '{params.env}': {len(params.signer_configs)} signer(s), "
        f"{len(params.secret_references)} secret reference(s)[/green]"
    )
    return params


def check_image(params: DeploymentParameterSet, image: ImageReference) -> None:
    """
    Verify `params` deploys the image the assembler produced.

    Raises:
        ParameterSetError: If repository or tag differ.
    """
    expected = params.image_reference
    if (expected.repository, expected.tag) != (image.repository, image.tag):
        raise ParameterSetError(
            f"Environment '{params.env}' deploys {expected}, but the release built {image}",
            details="docker_image must match the assembled image reference",
        )


def check_signer_order(
    previous: DeploymentParameterSet, current: DeploymentParameterSet
) -> list[int]:
    """
    Signer indexes whose configuration changed between two revisions.

    Raises:
        ParameterSetError: If the same signers appear in a different order,
            which would silently reassign signer identities.
    """
    before = list(previous.signer_configs)
    after = list(current.signer_configs)
    common = min(len(before), len(after))
    changed = [i for i in range(common) if before[i] != after[i]]

    if changed and sorted(before[:common], key=repr) == sorted(after[:common], key=repr):
        raise ParameterSetError(
            f"Environment '{current.env}': signer_configs were reordered",
            details=f"signer indexes {changed} swapped entries",
        )
    return changed


def _tfvar(value: str) -> str:
    return json.dumps(value)


def render_tfvars(params: DeploymentParameterSet) -> str:
    """Render `params` in the provisioning layer's key = value format."""
    lines = [
        f"env = {_tfvar(params.env)}",
        f"project = {_tfvar(params.project)}",
        f"docker_image = {_tfvar(params.docker_image)}",
        f"account_creator_id = {_tfvar(params.account_creator_id)}",
        f"account_creator_sk_secret_id = {_tfvar(params.account_creator_sk_secret_id)}",
        f"fast_auth_partners_secret_id = {_tfvar(params.fast_auth_partners_secret_id)}",
        "signer_configs = [",
    ]
    for signer in params.signer_configs:
        lines.extend(
            [
                "  {",
                f"    cipher_key_secret_id = {_tfvar(signer.cipher_key_secret_id)}",
                f"    sk_share_secret_id = {_tfvar(signer.sk_share_secret_id)}",
                "  },",
            ]
        )
    lines.extend(
        [
            "]",
            f"jwt_signature_pk_url = {_tfvar(params.jwt_signature_pk_url)}",
            f"otlp_endpoint = {_tfvar(params.otlp_endpoint)}",
            f"opentelemetry_level = {_tfvar(params.opentelemetry_level)}",
        ]
    )
    return "\n".join(lines) + "\n"


class ParameterRegistry:
    """All environments' parameter sets, keyed by environment name."""

    def __init__(self, parameter_sets: list[DeploymentParameterSet] | None = None) -> None:
        self._sets: dict[str, DeploymentParameterSet] = {}
        for params in parameter_sets or []:
            self.add(params)

    @classmethod
    def from_directory(cls, directory: str | Path) -> "ParameterRegistry":
        directory = Path(directory)
        if not directory.is_dir():
            raise ParameterSetError(f"Parameter directory not found: {directory}", str(directory))
        files = sorted(p for p in directory.iterdir() if p.suffix in PARAMETER_SUFFIXES)
        return cls([load_parameter_set(path) for path in files])

    def add(self, params: DeploymentParameterSet) -> None:
        if params.env in self._sets:
            raise ParameterSetError(
                f"Duplicate environment '{params.env}'",
                details="environment names must be unique",
            )
        self._sets[params.env] = params

    def get(self, env: str) -> DeploymentParameterSet:
        try:
            return self._sets[env]
        except KeyError:
            raise ParameterSetError(
                f"Unknown environment '{env}'", details=f"known: {sorted(self._sets)}"
            ) from None

    def environments(self) -> list[str]:
        return sorted(self._sets)

    def for_image(self, image: ImageReference) -> list[DeploymentParameterSet]:
        """Environments that deploy `image` (matched on repository and tag)."""
        return [
            params
            for params in self._sets.values()
            if (params.image_reference.repository, params.image_reference.tag)
            == (image.repository, image.tag)
        ]

    def __len__(self) -> int:
        return len(self._sets)

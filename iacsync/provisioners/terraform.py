"""
Terraform Provisioner — Drive the terraform CLI against state we own.

Terraform runs with its local backend disabled from remote storage: the
state document is materialized into a scratch directory before each
command and read back after apply. The iacsync backend stays the only
writer of remote state and the only lock holder.

    plan:  terraform init -backend=false
           terraform plan -out=plan.tfplan -state=terraform.tfstate -var ...
           terraform show -json plan.tfplan      (→ resource changes)
    apply: terraform apply -auto-approve -state-out=terraform.tfstate plan.tfplan

The payload is the binary plan file. Provider credentials (ARM_CLIENT_ID,
ARM_CLIENT_SECRET, ...) are inherited from the pipeline environment.
"""

from __future__ import annotations

import hashlib
import json
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..config.models import InfraConfig
from ..errors import AuthenticationError, ProvisionerError
from ..models.artifact import ChangeAction, PlanArtifact, ResourceChange
from ..models.state import InfraState, ResourceRecord
from .base import PlanOutput, Provisioner

logger = logging.getLogger(__name__)

PLAN_FILE = "plan.tfplan"
STATE_FILE = "terraform.tfstate"

# Files whose content changes what terraform would plan
FINGERPRINT_GLOBS = ("*.tf", "*.tfvars", "*.tf.json", ".terraform.lock.hcl")

_AUTH_MARKERS = (
    "AuthorizationFailed",
    "AADSTS",
    "Unable to build authorizer",
    "please run 'az login'",
    "InvalidAuthenticationToken",
)


def _map_actions(actions: Sequence[str]) -> ChangeAction:
    actions = list(actions)
    if actions == ["create"]:
        return "create"
    if actions == ["delete"]:
        return "delete"
    if actions == ["update"] or sorted(actions) == ["create", "delete"]:
        # Replacement is reported as an update of the address
        return "update"
    return "no-op"


class TerraformProvisioner(Provisioner):
    """Provisioner backed by the terraform binary."""

    def __init__(
        self,
        working_dir: Path,
        terraform_bin: str = "terraform",
        timeout: int = 3600,
    ):
        self.working_dir = Path(working_dir)
        self.terraform_bin = terraform_bin
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "terraform"

    # ------------------------------------------------------------------
    # Subprocess helpers
    # ------------------------------------------------------------------

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.terraform_bin] + list(args)
        logger.debug(f"[terraform] {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.working_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise ProvisionerError(f"terraform binary not found: {self.terraform_bin}") from None
        except subprocess.TimeoutExpired:
            raise ProvisionerError(
                f"terraform {args[0]} timed out after {self.timeout}s"
            ) from None

        if check and result.returncode != 0:
            error = result.stderr.strip() or result.stdout.strip() or "unknown error"
            if any(marker in error for marker in _AUTH_MARKERS):
                raise AuthenticationError(f"terraform {args[0]}: {error}")
            raise ProvisionerError(f"terraform {args[0]} failed: {error}")
        return result

    def _var_args(self, config: InfraConfig) -> List[str]:
        args: List[str] = []
        for key, value in sorted(config.all_variables().items()):
            if isinstance(value, (dict, list, bool, int, float)):
                rendered = json.dumps(value)
            else:
                rendered = str(value)
            args.append(f"-var={key}={rendered}")
        return args

    @staticmethod
    def _write_state(scratch: Path, state: InfraState) -> Path:
        path = scratch / STATE_FILE
        if state.raw is not None:
            path.write_text(json.dumps(state.raw), encoding="utf-8")
        return path

    # ------------------------------------------------------------------
    # Provisioner interface
    # ------------------------------------------------------------------

    def fingerprint_inputs(self, config: InfraConfig) -> Dict[str, Any]:
        files: Dict[str, str] = {}
        for pattern in FINGERPRINT_GLOBS:
            for path in sorted(self.working_dir.glob(pattern)):
                files[path.name] = hashlib.sha256(path.read_bytes()).hexdigest()
        return {"terraform_files": files}

    def _init(self) -> None:
        # Providers only; state never goes through a terraform backend
        self._run("init", "-input=false", "-backend=false")

    def plan(self, config: InfraConfig, state: InfraState) -> PlanOutput:
        self._init()

        with tempfile.TemporaryDirectory(prefix="iacsync-plan-") as tmp:
            scratch = Path(tmp)
            state_path = self._write_state(scratch, state)
            plan_path = scratch / PLAN_FILE

            self._run(
                "plan",
                "-input=false",
                "-lock=false",
                f"-state={state_path}",
                f"-out={plan_path}",
                *self._var_args(config),
            )
            shown = self._run("show", "-json", str(plan_path))
            payload = plan_path.read_bytes()

        try:
            plan_json = json.loads(shown.stdout)
        except json.JSONDecodeError as e:
            raise ProvisionerError(f"terraform show returned invalid JSON: {e}") from e

        changes = [
            ResourceChange(
                address=rc["address"],
                action=_map_actions(rc.get("change", {}).get("actions", [])),
                before=rc.get("change", {}).get("before"),
                after=rc.get("change", {}).get("after"),
            )
            for rc in plan_json.get("resource_changes", [])
        ]
        return PlanOutput(changes=changes, payload=payload)

    def apply(
        self,
        artifact: PlanArtifact,
        payload: bytes,
        state: InfraState,
        config: InfraConfig,
    ) -> InfraState:
        # The apply stage may run on a fresh agent without .terraform/
        self._init()

        with tempfile.TemporaryDirectory(prefix="iacsync-apply-") as tmp:
            scratch = Path(tmp)
            state_path = self._write_state(scratch, state)
            plan_path = scratch / PLAN_FILE
            plan_path.write_bytes(payload)

            self._run(
                "apply",
                "-input=false",
                "-lock=false",
                "-auto-approve",
                f"-state-out={state_path}",
                str(plan_path),
            )

            try:
                raw = json.loads(state_path.read_text(encoding="utf-8"))
            except (FileNotFoundError, json.JSONDecodeError) as e:
                raise ProvisionerError(f"terraform apply produced no readable state: {e}") from e

        return state.model_copy(
            update={
                "raw": raw,
                "resources": _inventory(raw),
                "outputs": {k: v.get("value") for k, v in raw.get("outputs", {}).items()},
            }
        )


def _inventory(raw: Dict[str, Any]) -> Dict[str, ResourceRecord]:
    """Summarize managed resources from a terraform state document."""
    resources: Dict[str, ResourceRecord] = {}
    for res in raw.get("resources", []):
        if res.get("mode", "managed") != "managed":
            continue
        instances = res.get("instances") or [{}]
        attributes: Optional[Dict[str, Any]] = instances[0].get("attributes") or {}
        record = ResourceRecord(
            type=res["type"],
            name=res["name"],
            properties=attributes,
            id=attributes.get("id"),
        )
        resources[record.address] = record
    return resources

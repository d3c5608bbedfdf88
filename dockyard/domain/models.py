# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# DOMAIN MODELS - ENVIRONMENT SPECS AND RECONCILIATION RESULTS
# -----------------------------------------------------------------------------
# The desired side (EnvironmentSpec, ContainerSpec) is a Pydantic model handed
# over by the config loader. The observed side (ContainerState,
# InspectedContainer) and the outcome types (BuildEvent, OperationResult,
# ReconcileReport, StatusSnapshot) are plain dataclasses rebuilt on every pass.
#
# Pydantic only checks shape here. Host-side checks (paths exist, ports free of
# duplicates) belong to the translator so they can be re-run at any time.
# -----------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

from dockyard.domain.errors import DockyardError, ErrorKind

PROTOCOLS = ("tcp", "udp", "sctp")

# Labels stamped on every container Dockyard creates
MANAGED_LABEL = "dockyard.managed"
ENV_KEYS_LABEL = "dockyard.env-keys"


class MountSpec(BaseModel):
    """A bind mount from the host into the container."""

    host_path: str = Field(..., min_length=1, description="Host path, '~' allowed")
    container_path: str = Field(..., min_length=1, description="Absolute path in container")
    readonly: bool = False

    class Config:
        frozen = True
        str_strip_whitespace = True


class PortMapping(BaseModel):
    """A host port published to a container port."""

    host_port: int
    container_port: int
    protocol: str = "tcp"

    class Config:
        frozen = True

    @classmethod
    def parse(cls, value: str) -> PortMapping:
        """
        Parse the "HOST:CONTAINER[/proto]" form used in config files.

        Raises:
            ValueError: If the string is not in that form.
        """
        host_part, sep, container_part = value.strip().partition(":")
        if not sep:
            raise ValueError(f"Port mapping '{value}' must look like HOST:CONTAINER")
        container_port, _, protocol = container_part.partition("/")
        try:
            return cls(
                host_port=int(host_part),
                container_port=int(container_port),
                protocol=(protocol or "tcp").lower(),
            )
        except ValueError as e:
            raise ValueError(f"Port mapping '{value}' has a non-numeric port") from e

    def __str__(self) -> str:
        return f"{self.host_port}:{self.container_port}/{self.protocol}"


class BuildSpec(BaseModel):
    """Where the image for a spec is built from."""

    context_dir: str
    dockerfile: str = "Dockerfile"
    build_args: dict[str, str] = Field(default_factory=dict)
    no_cache: bool = False


class EnvironmentSpec(BaseModel):
    """
    Desired state of a managed container.

    Used directly for the long-lived core environment. The loader guarantees
    the shape; the translator checks everything that touches the host.
    """

    image_name: str = Field(..., min_length=1)
    image_tag: str = Field("latest", min_length=1)
    container_name: str = Field(..., min_length=1)
    mounts: list[MountSpec] = Field(default_factory=list)
    ports: list[PortMapping] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict)
    default_workdir: str | None = None
    command: list[str] | None = None
    build: BuildSpec | None = None

    class Config:
        str_strip_whitespace = True

    @property
    def image_ref(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


class ContainerSpec(EnvironmentSpec):
    """Desired state of a short-lived application container."""

    auto_remove: bool = False
    # foreground containers keep stdin open with a TTY
    detach: bool = True


# -----------------------------------------------------------------------------
# OBSERVED STATE
# -----------------------------------------------------------------------------


class ContainerStatus(str, Enum):
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    UNKNOWN = "unknown"
    ERROR = "error"


# Docker's State.Status values grouped by the status they reconcile as
_DOCKER_STATUS = {
    "created": ContainerStatus.CREATED,
    "running": ContainerStatus.RUNNING,
    "restarting": ContainerStatus.RUNNING,
    "paused": ContainerStatus.RUNNING,
    "exited": ContainerStatus.EXITED,
    "dead": ContainerStatus.EXITED,
}


@dataclass(frozen=True)
class ContainerState:
    """Container state as last seen on the daemon. Exit code only for EXITED."""

    status: ContainerStatus
    exit_code: int | None = None

    @classmethod
    def absent(cls) -> ContainerState:
        return cls(ContainerStatus.ABSENT)

    @classmethod
    def error(cls) -> ContainerState:
        return cls(ContainerStatus.ERROR)

    @classmethod
    def from_docker(cls, status: str | None, exit_code: int | None = None) -> ContainerState:
        mapped = _DOCKER_STATUS.get((status or "").lower(), ContainerStatus.UNKNOWN)
        if mapped is ContainerStatus.EXITED:
            return cls(mapped, exit_code)
        return cls(mapped)

    @property
    def is_running(self) -> bool:
        return self.status is ContainerStatus.RUNNING

    def __str__(self) -> str:
        if self.status is ContainerStatus.EXITED and self.exit_code is not None:
            return f"exited({self.exit_code})"
        return self.status.value


@dataclass(frozen=True)
class InspectedContainer:
    """What the daemon reports about a container, reduced to the fields we reconcile."""

    id: str
    name: str
    image: str
    state: ContainerState
    # (source, target, readonly)
    mounts: frozenset[tuple[str, str, bool]] = frozenset()
    # (host_port, container_port, protocol)
    ports: frozenset[tuple[int, int, str]] = frozenset()
    env: dict[str, str] = field(default_factory=dict)
    managed_env_keys: frozenset[str] | None = None


# -----------------------------------------------------------------------------
# STREAMS AND OUTCOMES
# -----------------------------------------------------------------------------


class BuildEventKind(str, Enum):
    STEP = "step"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class BuildEvent:
    """One event from an image build stream."""

    kind: BuildEventKind
    text: str = ""
    image_id: str | None = None

    @classmethod
    def step(cls, text: str) -> BuildEvent:
        return cls(BuildEventKind.STEP, text=text)

    @classmethod
    def error(cls, text: str) -> BuildEvent:
        return cls(BuildEventKind.ERROR, text=text)

    @classmethod
    def success(cls, image_id: str) -> BuildEvent:
        return cls(BuildEventKind.SUCCESS, text=image_id, image_id=image_id)


class Outcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a single reconciliation step."""

    step: str
    outcome: Outcome
    detail: str = ""
    error_kind: ErrorKind | None = None
    exit_code: int = 0
    output_tail: tuple[str, ...] = ()

    @classmethod
    def success(cls, step: str, detail: str = "") -> OperationResult:
        return cls(step, Outcome.SUCCESS, detail)

    @classmethod
    def skipped(cls, step: str, reason: str) -> OperationResult:
        return cls(step, Outcome.SKIPPED, reason)

    @classmethod
    def from_error(cls, error: DockyardError, step: str | None = None) -> OperationResult:
        return cls(
            step or error.operation or "reconcile",
            Outcome.FAILED,
            str(error) if error.kind is ErrorKind.ENGINE_UNREACHABLE else error.detail,
            error.kind,
            error.exit_code,
            tuple(getattr(error, "tail", ())),
        )

    @property
    def is_failure(self) -> bool:
        return self.outcome is Outcome.FAILED


@dataclass
class ReconcileReport:
    """
    Aggregated steps of one reconciliation pass.

    `state` is the final state (ERROR when a step failed); `last_confirmed`
    is the last state actually observed on the daemon.
    """

    container_name: str
    state: ContainerState = field(default_factory=ContainerState.absent)
    last_confirmed: ContainerState = field(default_factory=ContainerState.absent)
    steps: list[OperationResult] = field(default_factory=list)
    exec_exit_code: int | None = None

    def add(self, result: OperationResult) -> OperationResult:
        self.steps.append(result)
        return result

    @property
    def ok(self) -> bool:
        return not any(step.is_failure for step in self.steps)

    @property
    def failure(self) -> OperationResult | None:
        return next((step for step in self.steps if step.is_failure), None)

    @property
    def exit_code(self) -> int:
        failure = self.failure
        return failure.exit_code if failure else 0

    def count(self, step: str, outcome: Outcome | None = None) -> int:
        return sum(
            1 for s in self.steps if s.step == step and (outcome is None or s.outcome is outcome)
        )


@dataclass
class StatusSnapshot:
    """Read-only view of a container for `status`."""

    container_name: str
    state: ContainerState
    image: str | None = None
    container_id: str | None = None
    mounts: list[MountSpec] = field(default_factory=list)
    ports: list[PortMapping] = field(default_factory=list)
    env_var_keys: list[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# WIRE-LEVEL CONFIGURATION
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DesiredConfig:
    """Normalized desired configuration, comparable with an InspectedContainer."""

    image: str
    mounts: frozenset[tuple[str, str, bool]]
    ports: frozenset[tuple[int, int, str]]
    env: dict[str, str]


@dataclass
class ContainerConfig:
    """
    Arguments for creating a container, in the shape the Docker SDK expects.

    `ports` maps "8080/tcp" to a host port (or a list of host ports), `mounts`
    holds docker.types.Mount entries, `environment` is a list of "KEY=value".
    """

    image: str
    name: str
    desired: DesiredConfig
    command: list[str] | None = None
    environment: list[str] = field(default_factory=list)
    working_dir: str | None = None
    ports: dict[str, int | list[int]] = field(default_factory=dict)
    mounts: list = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    auto_remove: bool = False
    tty: bool = False

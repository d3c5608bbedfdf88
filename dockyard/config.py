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
# CONFIGURATION LOADER
# -----------------------------------------------------------------------------
# Responsibility: Read the user and project YAML files, merge them, and hand
# the engine ready-made specs. Runtime knobs (timeouts, tail sizes) come from
# the environment, optionally via a .env file.
#
#   ~/.config/dockyard/config.yaml   user defaults
#   <project>/.dockyard.yaml         nearest one up to the git root, wins per field
# -----------------------------------------------------------------------------

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from dockyard.domain.errors import SpecValidationError
from dockyard.domain.models import (
    BuildSpec,
    ContainerSpec,
    EnvironmentSpec,
    MountSpec,
    PortMapping,
)

console = Console()

USER_CONFIG_PATH = Path("~/.config/dockyard/config.yaml")
PROJECT_CONFIG_FILENAME = ".dockyard.yaml"

DEFAULT_CORE_IMAGE = "dockyard-core-env"
DEFAULT_WORKDIR = "/home/me/code"
APP_CONTAINER_PREFIX = "dockyard-app-"


class MountConfig(BaseModel):
    host: str
    container: str
    readonly: bool = False


class CoreEnvConfig(BaseModel):
    """The `core_env` section: the long-lived development container."""

    mounts: list[MountConfig] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict)
    default_workdir: str = DEFAULT_WORKDIR
    image_name: str = DEFAULT_CORE_IMAGE
    image_tag: str = "latest"
    build_context: str | None = None
    dockerfile: str = "Dockerfile"


class ApplicationDefaults(BaseModel):
    """The `application_defaults` section: defaults for project containers."""

    default_image_prefix: str | None = None
    default_ports: list[str] = Field(default_factory=list)


class DockyardConfig(BaseModel):
    core_env: CoreEnvConfig = Field(default_factory=CoreEnvConfig)
    application_defaults: ApplicationDefaults = Field(default_factory=ApplicationDefaults)


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings read from DOCKYARD_* environment variables."""

    connect_timeout: float = 5.0
    stop_timeout: int = 10
    build_tail_lines: int = 20
    log_tail: str = "100"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "EngineSettings":
        load_dotenv(env_file)
        try:
            return cls(
                connect_timeout=float(os.getenv("DOCKYARD_CONNECT_TIMEOUT", "5")),
                stop_timeout=int(os.getenv("DOCKYARD_STOP_TIMEOUT", "10")),
                build_tail_lines=int(os.getenv("DOCKYARD_BUILD_TAIL_LINES", "20")),
                log_tail=os.getenv("DOCKYARD_LOG_TAIL", "100"),
            )
        except ValueError as e:
            raise SpecValidationError(f"invalid DOCKYARD_* setting: {e}", "config") from e


# =============================================================================
# LOADING
# =============================================================================


def _read_yaml(path: Path) -> DockyardConfig:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise SpecValidationError(f"cannot parse YAML: {e}", "config", str(path)) from e
    except OSError as e:
        raise SpecValidationError(f"cannot read file: {e.strerror or e}", "config", str(path)) from e

    if not isinstance(data, dict):
        raise SpecValidationError("top level must be a mapping", "config", str(path))
    try:
        return DockyardConfig(**data)
    except ValidationError as e:
        raise SpecValidationError(f"invalid configuration: {e}", "config", str(path)) from e


def find_project_config(start: Path | None = None) -> Path | None:
    """
    Find the nearest .dockyard.yaml from `start` upwards.

    The search stops at the first directory containing `.git`.
    """
    path = (start or Path.cwd()).resolve()
    for directory in (path, *path.parents):
        candidate = directory / PROJECT_CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        if (directory / ".git").is_dir():
            return None
    return None


def _merge(base: BaseModel, override: BaseModel) -> BaseModel:
    """Fields set explicitly in `override` win; nested sections merge recursively."""
    values = base.model_dump()
    for name in override.model_fields_set:
        value = getattr(override, name)
        current = getattr(base, name)
        if isinstance(value, BaseModel) and isinstance(current, BaseModel):
            values[name] = _merge(current, value).model_dump()
        else:
            values[name] = value.model_dump() if isinstance(value, BaseModel) else value
    return type(base)(**values)


def load_config(
    user_path: Path | None = None, project_path: Path | None = None, start: Path | None = None
) -> DockyardConfig:
    """
    Load and merge the user and project configuration files.

    Missing files fall back to defaults.

    Raises:
        SpecValidationError: If a file cannot be read or does not validate.
    """
    user_path = (user_path or USER_CONFIG_PATH).expanduser()
    config = DockyardConfig()
    if user_path.is_file():
        console.print(f"[dim][CONFIG] User config: {user_path}[/dim]")
        config = _read_yaml(user_path)

    project_path = project_path or find_project_config(start)
    if project_path is not None and project_path.is_file():
        console.print(f"[dim][CONFIG] Project config: {project_path}[/dim]")
        config = _merge(config, _read_yaml(project_path))

    return config


# =============================================================================
# SPECS
# =============================================================================


def _ports(values: list[str], where: str) -> list[PortMapping]:
    ports = []
    for value in values:
        try:
            ports.append(PortMapping.parse(value))
        except ValueError as e:
            raise SpecValidationError(str(e), "config", where) from e
    return ports


def core_container_name(config: DockyardConfig) -> str:
    return f"{config.core_env.image_name}-instance"


def core_env_spec(config: DockyardConfig) -> EnvironmentSpec:
    """Spec for the core environment container."""
    core = config.core_env
    build = None
    if core.build_context:
        build = BuildSpec(context_dir=core.build_context, dockerfile=core.dockerfile)

    try:
        return EnvironmentSpec(
            image_name=core.image_name,
            image_tag=core.image_tag,
            container_name=core_container_name(config),
            mounts=[
                MountSpec(host_path=m.host, container_path=m.container, readonly=m.readonly)
                for m in core.mounts
            ],
            ports=_ports(core.ports, "core_env.ports"),
            env_vars=core.env_vars,
            default_workdir=core.default_workdir,
            build=build,
        )
    except ValidationError as e:
        raise SpecValidationError(f"invalid core_env: {e}", "config", "core_env") from e


def app_image_name(config: DockyardConfig, project_dir: Path) -> str:
    prefix = config.application_defaults.default_image_prefix
    name = project_dir.resolve().name.lower()
    return f"{prefix}-{name}" if prefix else name


def app_container_spec(
    config: DockyardConfig,
    project_dir: Path,
    image: str | None = None,
    name: str | None = None,
    ports: list[str] | None = None,
    env_vars: dict[str, str] | None = None,
    command: list[str] | None = None,
    dockerfile: str = "Dockerfile",
    detach: bool = True,
    auto_remove: bool = False,
) -> ContainerSpec:
    """
    Spec for an application container built from `project_dir`.

    The image defaults to `[<prefix>-]<dirname>:latest` and the container to
    `dockyard-app-<dirname>`; ports default to `application_defaults`.
    """
    project_dir = project_dir.resolve()
    image = image or f"{app_image_name(config, project_dir)}:latest"
    image_name, _, image_tag = image.rpartition(":") if ":" in image.split("/")[-1] else (image, "", "")

    try:
        return ContainerSpec(
            image_name=image_name,
            image_tag=image_tag or "latest",
            container_name=name or f"{APP_CONTAINER_PREFIX}{project_dir.name.lower()}",
            ports=_ports(
                ports if ports else config.application_defaults.default_ports, "ports"
            ),
            env_vars=env_vars or {},
            command=command or None,
            build=BuildSpec(context_dir=str(project_dir), dockerfile=dockerfile),
            detach=detach,
            auto_remove=auto_remove,
        )
    except ValidationError as e:
        raise SpecValidationError(f"invalid container options: {e}", "config", str(project_dir)) from e

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
# SPEC TRANSLATOR
# -----------------------------------------------------------------------------
# Responsibility: Turns a declarative EnvironmentSpec into the create-container
# arguments the Engine Client sends, validating everything that touches the
# host on the way.
#
# Pure: reads the host filesystem, never talks to the daemon. Any problem here
# is a SpecValidationError and no engine call is made.
# -----------------------------------------------------------------------------

import os
import re
from pathlib import Path

from docker.types import Mount

from dockyard.domain.errors import InvalidMount, PortConflict, SpecValidationError
from dockyard.domain.models import (
    ENV_KEYS_LABEL,
    MANAGED_LABEL,
    PROTOCOLS,
    ContainerConfig,
    ContainerSpec,
    DesiredConfig,
    EnvironmentSpec,
)

# Docker's own rule for container names
CONTAINER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
MIN_PORT = 1
MAX_PORT = 65535


def _resolve_host_path(raw: str, home: str | None) -> str:
    if raw == "~" or raw.startswith("~/"):
        base = home if home is not None else os.path.expanduser("~")
        raw = base + raw[1:]
    else:
        raw = os.path.expanduser(raw)

    path = Path(raw)
    if not path.is_absolute():
        raise InvalidMount(
            f"host path '{raw}' must be absolute (or start with '~')", "translate", raw
        )
    if not path.exists():
        raise InvalidMount(f"host path '{path}' does not exist", "translate", str(path))
    if not os.access(path, os.R_OK):
        raise InvalidMount(f"host path '{path}' is not readable", "translate", str(path))
    return str(path.resolve())


def _check_mounts(spec: EnvironmentSpec, home: str | None) -> list[tuple[str, str, bool]]:
    resolved = []
    seen = set()
    for mount in spec.mounts:
        if not mount.container_path.startswith("/"):
            raise InvalidMount(
                f"container path '{mount.container_path}' must be absolute",
                "translate",
                spec.container_name,
            )
        if mount.container_path in seen:
            raise InvalidMount(
                f"container path '{mount.container_path}' is mounted twice",
                "translate",
                spec.container_name,
            )
        seen.add(mount.container_path)
        resolved.append((_resolve_host_path(mount.host_path, home), mount.container_path, mount.readonly))
    return resolved


def _check_ports(spec: EnvironmentSpec) -> None:
    bound = set()
    for port in spec.ports:
        for value in (port.host_port, port.container_port):
            if not MIN_PORT <= value <= MAX_PORT:
                raise PortConflict(
                    f"port {value} is outside {MIN_PORT}-{MAX_PORT}",
                    "translate",
                    spec.container_name,
                )
        if port.protocol not in PROTOCOLS:
            raise PortConflict(
                f"protocol '{port.protocol}' must be one of {', '.join(PROTOCOLS)}",
                "translate",
                spec.container_name,
            )
        # the same number may be bound once per protocol
        key = (port.host_port, port.protocol)
        if key in bound:
            raise PortConflict(
                f"host port {port.host_port}/{port.protocol} is mapped more than once",
                "translate",
                spec.container_name,
            )
        bound.add(key)


def _check_env(spec: EnvironmentSpec) -> None:
    for key in spec.env_vars:
        if not key or "=" in key:
            raise SpecValidationError(
                f"invalid environment variable name '{key}'", "translate", spec.container_name
            )


def _check_names(spec: EnvironmentSpec) -> None:
    if not CONTAINER_NAME_PATTERN.match(spec.container_name):
        raise SpecValidationError(
            "container name may only contain letters, digits, '_', '.' and '-' "
            "and must start with a letter or digit",
            "translate",
            spec.container_name,
        )
    if spec.default_workdir is not None and not spec.default_workdir.startswith("/"):
        raise SpecValidationError(
            f"working directory '{spec.default_workdir}' must be absolute",
            "translate",
            spec.container_name,
        )


def translate(spec: EnvironmentSpec, home: str | None = None) -> ContainerConfig:
    """
    Validate a spec and build the container configuration for it.

    Args:
        spec: Desired state of the container.
        home: Directory that '~' expands to (the user's home by default).

    Returns:
        ContainerConfig carrying both the SDK arguments and the normalized
        DesiredConfig used for drift detection.

    Raises:
        SpecValidationError: InvalidMount, PortConflict, or a bad name/env key.
    """
    _check_names(spec)
    mounts = _check_mounts(spec, home)
    _check_ports(spec)
    _check_env(spec)

    ports: dict[str, int | list[int]] = {}
    for port in spec.ports:
        key = f"{port.container_port}/{port.protocol}"
        if key in ports:
            existing = ports[key]
            ports[key] = (existing if isinstance(existing, list) else [existing]) + [port.host_port]
        else:
            ports[key] = port.host_port

    is_app = isinstance(spec, ContainerSpec)
    desired = DesiredConfig(
        image=spec.image_ref,
        mounts=frozenset(mounts),
        ports=frozenset((p.host_port, p.container_port, p.protocol) for p in spec.ports),
        env=dict(spec.env_vars),
    )

    return ContainerConfig(
        image=spec.image_ref,
        name=spec.container_name,
        desired=desired,
        command=list(spec.command) if spec.command else None,
        environment=[f"{k}={v}" for k, v in spec.env_vars.items()],
        working_dir=spec.default_workdir,
        ports=ports,
        mounts=[
            Mount(target=target, source=source, type="bind", read_only=readonly)
            for source, target, readonly in mounts
        ],
        labels={
            MANAGED_LABEL: "true",
            ENV_KEYS_LABEL: ",".join(sorted(spec.env_vars)),
        },
        auto_remove=spec.auto_remove if is_app else False,
        tty=not spec.detach if is_app else False,
    )

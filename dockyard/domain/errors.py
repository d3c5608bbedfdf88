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
# ERROR TAXONOMY
# -----------------------------------------------------------------------------
# Every failure the engine can report. Configuration problems (exit code 1)
# are raised before any Docker call; engine problems (exit code 2) carry the
# operation and the container/image they were acting on.
# -----------------------------------------------------------------------------

from enum import Enum

EXIT_VALIDATION = 1
EXIT_ENGINE = 2


class ErrorKind(str, Enum):
    """Machine-readable category attached to every failure."""

    VALIDATION = "validation"
    INVALID_MOUNT = "invalid_mount"
    PORT_CONFLICT = "port_conflict"
    ARCHIVE = "archive"
    ENGINE_UNREACHABLE = "engine_unreachable"
    ENGINE = "engine"
    IMAGE_NOT_FOUND = "image_not_found"
    IMAGE_BUILD_FAILED = "image_build_failed"
    NAME_CONFLICT = "name_conflict"
    CONTAINER_NOT_FOUND = "container_not_found"
    CONTAINER_RUNNING = "container_running"
    IMAGE_IN_USE = "image_in_use"


class DockyardError(Exception):
    """
    Base class for all Dockyard failures.

    Attributes:
        kind: The ErrorKind category.
        detail: Human-readable description without the context prefix.
        operation: Name of the operation that failed (e.g. "create_container").
        target: Container or image identifier the operation acted on.
    """

    kind = ErrorKind.ENGINE
    exit_code = EXIT_ENGINE

    def __init__(
        self, detail: str, operation: str | None = None, target: str | None = None
    ) -> None:
        self.detail = detail
        self.operation = operation
        self.target = target
        super().__init__(self._format())

    def _format(self) -> str:
        if self.operation and self.target:
            return f"{self.operation} '{self.target}': {self.detail}"
        if self.operation:
            return f"{self.operation}: {self.detail}"
        return self.detail


class SpecValidationError(DockyardError):
    """Raised when a spec is invalid. Never retried."""

    kind = ErrorKind.VALIDATION
    exit_code = EXIT_VALIDATION


class InvalidMount(SpecValidationError):
    """Raised when a mount's host path is missing/unreadable or a path is relative."""

    kind = ErrorKind.INVALID_MOUNT


class PortConflict(SpecValidationError):
    """Raised when a port is out of range or a host port is mapped twice."""

    kind = ErrorKind.PORT_CONFLICT


class ArchiveError(DockyardError):
    """Raised when a build context cannot be packaged."""

    kind = ErrorKind.ARCHIVE
    exit_code = EXIT_VALIDATION


class EngineError(DockyardError):
    """Raised when the Docker daemon rejects or fails an operation."""

    kind = ErrorKind.ENGINE


class EngineUnreachable(EngineError):
    """Raised when the Docker daemon cannot be dialed."""

    kind = ErrorKind.ENGINE_UNREACHABLE

    HINT = (
        "Is the Docker daemon running? Start Docker (or Docker Desktop) and check "
        "that DOCKER_HOST points at a reachable socket."
    )

    def _format(self) -> str:
        return f"{super()._format()}. {self.HINT}"


class ImageNotFound(EngineError):
    """Raised when a required image does not exist locally."""

    kind = ErrorKind.IMAGE_NOT_FOUND


class ImageBuildFailed(EngineError):
    """
    Raised when a build step fails.

    The last lines of build output are kept on `tail` for diagnosis.
    """

    kind = ErrorKind.IMAGE_BUILD_FAILED

    def __init__(
        self,
        detail: str,
        operation: str | None = "build_image",
        target: str | None = None,
        tail: list[str] | None = None,
    ) -> None:
        self.tail = list(tail or [])
        super().__init__(detail, operation, target)


class NameConflict(EngineError):
    """Raised when a container name is already taken (Docker 409 on create)."""

    kind = ErrorKind.NAME_CONFLICT


class ContainerNotFound(EngineError):
    """Raised when a container does not exist."""

    kind = ErrorKind.CONTAINER_NOT_FOUND


class ContainerRunning(EngineError):
    """Raised when removing a running container without force."""

    kind = ErrorKind.CONTAINER_RUNNING


class ImageInUse(EngineError):
    """Raised when an image cannot be removed because containers use it."""

    kind = ErrorKind.IMAGE_IN_USE


class PortAlreadyBound(EngineError):
    """Raised when the daemon cannot bind a host port at start time."""

    kind = ErrorKind.PORT_CONFLICT

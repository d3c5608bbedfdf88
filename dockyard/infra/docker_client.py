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
# ENGINE CLIENT
# -----------------------------------------------------------------------------
# Responsibility: The single point of contact with the Docker Engine API.
# A thin async wrapper around the Docker SDK with connection validation and
# typed error reporting.
#
# The SDK is blocking, so every call runs on a worker thread and streams are
# pulled one chunk at a time. Control only returns to the event loop at those
# network boundaries.
#
# The engine owns no state beyond the connection: every answer comes from the
# daemon.
# -----------------------------------------------------------------------------

import asyncio
import codecs
import functools
import re
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import aclosing, contextmanager

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException, NotFound
from requests.exceptions import RequestException
from rich.console import Console
from rich.panel import Panel

from dockyard.domain.errors import (
    ContainerNotFound,
    ContainerRunning,
    DockyardError,
    EngineError,
    EngineUnreachable,
    ImageInUse,
    ImageNotFound,
    NameConflict,
    PortAlreadyBound,
)
from dockyard.domain.models import (
    ENV_KEYS_LABEL,
    BuildEvent,
    BuildEventKind,
    ContainerConfig,
    ContainerState,
    InspectedContainer,
)
from dockyard.infra import terminal
from dockyard.infra.archive import BuildContext

console = Console()

# Dialing the daemon is bounded; builds, execs and log follows are not
CONNECT_TIMEOUT_SECONDS = 5
EXEC_PID_DIR = "/tmp"
EXEC_POLL_SECONDS = 0.1

_SUCCESSFULLY_BUILT = re.compile(r"Successfully built ([0-9a-f]+)")
_PORT_IN_USE = ("port is already allocated", "address already in use")
_END = object()


def _explain(error: APIError) -> str:
    return str(error.explanation or error)


@contextmanager
def _engine_errors(operation: str, target: str | None = None):
    """Translate SDK and transport exceptions into Dockyard engine errors."""
    try:
        yield
    except DockyardError:
        raise
    except APIError as e:
        raise EngineError(_explain(e), operation, target) from e
    except RequestException as e:
        raise EngineUnreachable(f"lost connection to Docker daemon ({e})", operation, target) from e
    except DockerException as e:
        raise EngineError(str(e), operation, target) from e


def _offload(func):
    """Run a blocking engine method on a worker thread."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        return await asyncio.to_thread(func, self, *args, **kwargs)

    return wrapper


def _next_or_end(iterator: Iterator, operation: str, target: str | None):
    with _engine_errors(operation, target):
        return next(iterator, _END)


async def _drain(iterator: Iterator, operation: str, target: str | None) -> AsyncIterator:
    """Pull a blocking iterator chunk by chunk without blocking the event loop."""
    cancelled = False
    try:
        while True:
            item = await asyncio.to_thread(_next_or_end, iterator, operation, target)
            if item is _END:
                return
            yield item
    except asyncio.CancelledError:
        # the worker thread may still be inside next(), so the iterator stays open
        cancelled = True
        raise
    finally:
        # release the HTTP response even when the consumer stops early
        close = getattr(iterator, "close", None)
        if close is not None and not cancelled:
            close()


def parse_build_chunk(chunk: dict) -> list[BuildEvent]:
    """
    Turn one decoded chunk of the build API into BuildEvents.

    The daemon sends {"stream": ...} for step output, {"status": ...} for pulls,
    {"aux": {"ID": ...}} with the final image id and {"error": ...} on failure.
    """
    if chunk.get("error") or chunk.get("errorDetail"):
        detail = (chunk.get("errorDetail") or {}).get("message") or chunk.get("error")
        return [BuildEvent.error(str(detail).strip())]

    events = []
    if "stream" in chunk:
        for line in str(chunk["stream"]).splitlines():
            line = line.rstrip()
            if not line:
                continue
            events.append(BuildEvent.step(line))
            match = _SUCCESSFULLY_BUILT.search(line)
            if match:
                events.append(BuildEvent.success(match.group(1)))
    elif "status" in chunk:
        text = str(chunk["status"])
        if chunk.get("progress"):
            text = f"{text} {chunk['progress']}"
        events.append(BuildEvent.step(text))

    image_id = (chunk.get("aux") or {}).get("ID")
    if image_id:
        events.append(BuildEvent.success(image_id))
    return events


def parse_inspect(data: dict) -> InspectedContainer:
    """Reduce an inspect response to the fields the reconciler compares."""
    state = data.get("State") or {}
    config = data.get("Config") or {}
    host_config = data.get("HostConfig") or {}

    # HostConfig.Mounts echoes what we asked for; fall back to the resolved list
    mounts = frozenset(
        (m["Source"], m["Target"], bool(m.get("ReadOnly")))
        for m in host_config.get("Mounts") or []
        if m.get("Type", "bind") == "bind"
    )
    if not mounts:
        mounts = frozenset(
            (m["Source"], m["Destination"], not m.get("RW", True))
            for m in data.get("Mounts") or []
            if m.get("Type") == "bind"
        )

    ports = set()
    for key, bindings in (host_config.get("PortBindings") or {}).items():
        container_port, _, protocol = key.partition("/")
        for binding in bindings or []:
            if binding.get("HostPort"):
                ports.add((int(binding["HostPort"]), int(container_port), protocol or "tcp"))

    env = {}
    for item in config.get("Env") or []:
        key, _, value = item.partition("=")
        env[key] = value

    labels = config.get("Labels") or {}
    managed = labels.get(ENV_KEYS_LABEL)

    return InspectedContainer(
        id=data.get("Id", ""),
        name=data.get("Name", "").lstrip("/"),
        image=config.get("Image") or data.get("Image", ""),
        state=ContainerState.from_docker(state.get("Status"), state.get("ExitCode")),
        mounts=mounts,
        ports=frozenset(ports),
        env=env,
        managed_env_keys=(
            frozenset(k for k in managed.split(",") if k) if managed is not None else None
        ),
    )


class ExecSession:
    """
    A command started inside a container.

    Captured sessions expose `output()`; interactive sessions are driven with
    `attach()`. Both finish with `wait()` for the exit code. `kill()` signals the
    remote process so an interrupted session never leaves it running.
    """

    def __init__(
        self,
        engine: "EngineClient",
        container: str,
        exec_id: str,
        pid_file: str,
        stream: Iterator[bytes] | None = None,
        sock=None,
    ) -> None:
        self.container = container
        self.exec_id = exec_id
        self.pid_file = pid_file
        self._engine = engine
        self._stream = stream
        self._sock = sock

    @property
    def interactive(self) -> bool:
        return self._sock is not None

    async def output(self) -> AsyncIterator[bytes]:
        if self._stream is None:
            return
        async for chunk in _drain(self._stream, "exec", self.container):
            yield chunk

    async def attach(self) -> None:
        """Connect the local terminal to the session until the remote side closes."""
        try:
            await asyncio.to_thread(terminal.pump, self._sock)
        finally:
            self._sock.close()

    async def wait(self) -> int:
        info = await self._engine.inspect_exec(self.exec_id)
        while info.get("Running"):
            await asyncio.sleep(EXEC_POLL_SECONDS)
            info = await self._engine.inspect_exec(self.exec_id)
        await self._engine.run_quiet(self.container, ["rm", "-f", self.pid_file])
        exit_code = info.get("ExitCode")
        return -1 if exit_code is None else int(exit_code)

    async def kill(self, signal: str = "INT") -> int:
        return await self._engine.kill_exec(self.container, self.pid_file, signal)


class EngineClient:
    """
    Async Docker Engine client.

    Why this design:
    - Connection setup is the only place DOCKER_HOST is read
    - Dialing fails fast with a short timeout; long operations are unbounded
    - Every error names the operation and the container/image it acted on
    """

    def __init__(
        self,
        base_url: str | None = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        client: DockerClient | None = None,
    ) -> None:
        """
        Initialize the engine client. Nothing is dialed until the first call.

        Args:
            base_url: Explicit daemon URL; DOCKER_HOST or the platform socket otherwise.
            connect_timeout: Seconds allowed for dialing the daemon.
            client: Pre-built DockerClient (used as-is, no probe).
        """
        self._base_url = base_url
        self._connect_timeout = connect_timeout
        self._client = client

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def _open(self, timeout: float | None, version: str | None = None) -> DockerClient:
        if self._base_url:
            return docker.DockerClient(base_url=self._base_url, timeout=timeout, version=version)
        return docker.from_env(timeout=timeout, version=version)

    def _connect(self) -> DockerClient:
        """
        Return a live client, dialing the daemon on first use.

        Raises:
            EngineUnreachable: If the daemon does not answer within the connect timeout.
        """
        if self._client is not None:
            return self._client

        where = self._base_url or "DOCKER_HOST / default socket"
        try:
            probe = self._open(self._connect_timeout)
            try:
                probe.ping()
                version = probe.api.api_version
            finally:
                probe.close()
            self._client = self._open(None, version=version)
        except (DockerException, RequestException) as e:
            console.print(
                Panel(
                    "[bold red]Docker Engine Unavailable[/bold red]\n\n"
                    "1. Start Docker (or Docker Desktop)\n"
                    "2. Check DOCKER_HOST if you use a remote daemon\n"
                    "3. Re-run the command",
                    title="ENGINE UNREACHABLE",
                    border_style="red",
                )
            )
            raise EngineUnreachable(
                f"cannot reach Docker daemon at {where} ({e})", operation="connect"
            ) from e

        console.print("[green][ENGINE] Connected to Docker Engine[/green]")
        return self._client

    # =========================================================================
    # IMAGES
    # =========================================================================

    def _start_build(
        self,
        context: BuildContext,
        tag: str,
        build_args: dict[str, str] | None,
        no_cache: bool,
    ) -> Iterator[dict]:
        client = self._connect()
        console.print(f"[cyan][ENGINE] Building image: {tag}[/cyan]")
        with _engine_errors("build_image", tag):
            return client.api.build(
                fileobj=context.stream(),
                custom_context=True,
                encoding="gzip",
                dockerfile=context.dockerfile,
                tag=tag,
                buildargs=build_args or {},
                nocache=no_cache,
                rm=True,
                decode=True,
            )

    async def build_image(
        self,
        context: BuildContext,
        tag: str,
        build_args: dict[str, str] | None = None,
        no_cache: bool = False,
    ) -> AsyncIterator[BuildEvent]:
        """
        Build an image from a streamed context.

        Yields Step events as the daemon reports them and ends with exactly one
        Error or Success event.
        """
        chunks = await asyncio.to_thread(self._start_build, context, tag, build_args, no_cache)
        image_id = None
        async with aclosing(_drain(chunks, "build_image", tag)) as stream:
            async for chunk in stream:
                for event in parse_build_chunk(chunk):
                    if event.image_id:
                        image_id = event.image_id
                        continue
                    yield event
                    if event.kind is BuildEventKind.ERROR:
                        return

        if image_id is None:
            image_id = await self.image_id(tag)
        yield BuildEvent.success(image_id)

    @_offload
    def image_id(self, ref: str) -> str:
        client = self._connect()
        try:
            with _engine_errors("inspect_image", ref):
                return client.api.inspect_image(ref)["Id"]
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                raise ImageNotFound("image not found", "inspect_image", ref) from e
            raise

    @_offload
    def image_exists(self, ref: str) -> bool:
        client = self._connect()
        try:
            with _engine_errors("inspect_image", ref):
                client.api.inspect_image(ref)
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                return False
            raise
        return True

    @_offload
    def remove_image(self, ref: str, force: bool = False) -> None:
        client = self._connect()
        console.print(f"[cyan][ENGINE] Removing image {ref} (force={force})[/cyan]")
        try:
            with _engine_errors("remove_image", ref):
                client.api.remove_image(ref, force=force)
        except EngineError as e:
            cause = e.__cause__
            if isinstance(cause, NotFound):
                raise ImageNotFound("image not found", "remove_image", ref) from cause
            if isinstance(cause, APIError) and cause.status_code == 409:
                raise ImageInUse(e.detail, "remove_image", ref) from cause
            raise

    # =========================================================================
    # CONTAINERS
    # =========================================================================

    @_offload
    def create_container(self, config: ContainerConfig) -> str:
        """
        Create (but do not start) a container.

        Only call this after confirming no container with the name exists; a
        name clash is surfaced verbatim as NameConflict.
        """
        client = self._connect()
        console.print(f"[cyan][ENGINE] Creating container {config.name} from {config.image}[/cyan]")
        try:
            with _engine_errors("create_container", config.name):
                container = client.containers.create(
                    config.image,
                    command=config.command,
                    name=config.name,
                    environment=config.environment,
                    working_dir=config.working_dir,
                    ports=config.ports,
                    mounts=config.mounts,
                    labels=config.labels,
                    auto_remove=config.auto_remove,
                    tty=config.tty,
                    stdin_open=config.tty,
                )
        except EngineError as e:
            cause = e.__cause__
            if isinstance(cause, NotFound):
                raise ImageNotFound(
                    f"image '{config.image}' not found", "create_container", config.name
                ) from cause
            if isinstance(cause, APIError) and cause.status_code == 409:
                raise NameConflict(e.detail, "create_container", config.name) from cause
            raise
        return container.id

    @_offload
    def start_container(self, ref: str) -> None:
        client = self._connect()
        try:
            with _engine_errors("start_container", ref):
                # 304 (already running) is not an error for the SDK
                client.api.start(ref)
        except EngineError as e:
            cause = e.__cause__
            if isinstance(cause, NotFound):
                raise ContainerNotFound("container not found", "start_container", ref) from cause
            if any(marker in e.detail.lower() for marker in _PORT_IN_USE):
                raise PortAlreadyBound(e.detail, "start_container", ref) from cause
            raise
        console.print(f"[green][ENGINE] Started {ref}[/green]")

    @_offload
    def stop_container(self, ref: str, timeout: int = 10) -> None:
        client = self._connect()
        try:
            with _engine_errors("stop_container", ref):
                client.api.stop(ref, timeout=timeout)
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                raise ContainerNotFound("container not found", "stop_container", ref) from e
            raise
        console.print(f"[green][ENGINE] Stopped {ref}[/green]")

    @_offload
    def remove_container(self, ref: str, force: bool = False) -> None:
        """Remove a container. A container that is already gone counts as removed."""
        client = self._connect()
        try:
            with _engine_errors("remove_container", ref):
                client.api.remove_container(ref, force=force)
        except EngineError as e:
            cause = e.__cause__
            if isinstance(cause, NotFound):
                console.print(f"[dim][ENGINE] {ref} already removed[/dim]")
                return
            if isinstance(cause, APIError) and cause.status_code == 409:
                raise ContainerRunning(e.detail, "remove_container", ref) from cause
            raise
        console.print(f"[green][ENGINE] Removed {ref}[/green]")

    @_offload
    def inspect_container(self, ref: str) -> InspectedContainer | None:
        """Inspect a container, or return None if it does not exist."""
        client = self._connect()
        try:
            with _engine_errors("inspect_container", ref):
                data = client.api.inspect_container(ref)
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                return None
            raise
        return parse_inspect(data)

    @_offload
    def list_containers(self, name_prefix: str | None = None) -> list[InspectedContainer]:
        """List all containers (running or not), optionally by name prefix."""
        client = self._connect()
        filters = {"name": name_prefix} if name_prefix else None
        with _engine_errors("list_containers", name_prefix):
            summaries = client.api.containers(all=True, filters=filters)

        found = []
        for summary in summaries:
            names = [n.lstrip("/") for n in summary.get("Names") or []]
            name = names[0] if names else summary.get("Id", "")[:12]
            if name_prefix and not name.startswith(name_prefix):
                continue
            found.append(
                InspectedContainer(
                    id=summary.get("Id", ""),
                    name=name,
                    image=summary.get("Image", ""),
                    state=ContainerState.from_docker(summary.get("State")),
                )
            )
        return found

    # =========================================================================
    # EXEC AND LOGS
    # =========================================================================

    def _open_exec(
        self,
        container: str,
        command: list[str],
        interactive: bool,
        workdir: str | None,
        tty: bool,
    ) -> ExecSession:
        client = self._connect()
        pid_file = f"{EXEC_PID_DIR}/.dockyard-exec-{uuid.uuid4().hex[:12]}"
        # record the remote pid so the process can be signalled later
        wrapped = ["sh", "-c", f'echo $$ > {pid_file}; exec "$@"', "sh", *command]

        try:
            with _engine_errors("exec", container):
                exec_id = client.api.exec_create(
                    container,
                    wrapped,
                    stdout=True,
                    stderr=True,
                    stdin=interactive,
                    tty=interactive and tty,
                    workdir=workdir,
                )["Id"]
                if interactive:
                    sock = client.api.exec_start(exec_id, tty=tty, socket=True)
                    if tty:
                        rows, columns = terminal.terminal_size()
                        client.api.exec_resize(exec_id, height=rows, width=columns)
                    return ExecSession(self, container, exec_id, pid_file, sock=sock)
                stream = client.api.exec_start(exec_id, stream=True)
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                raise ContainerNotFound("container not found", "exec", container) from e
            raise
        return ExecSession(self, container, exec_id, pid_file, stream=stream)

    async def exec(
        self,
        container: str,
        command: list[str],
        interactive: bool = False,
        workdir: str | None = None,
        tty: bool | None = None,
    ) -> ExecSession:
        """
        Start a command in a running container.

        Args:
            container: Container name or id.
            command: Argument vector to run.
            interactive: Attach the caller's terminal instead of capturing output.
            workdir: Working directory inside the container.
            tty: Allocate a pseudo-terminal (defaults to whether stdin is a TTY).
        """
        if tty is None:
            tty = terminal.stdin_is_tty()
        return await asyncio.to_thread(self._open_exec, container, command, interactive, workdir, tty)

    @_offload
    def inspect_exec(self, exec_id: str) -> dict:
        client = self._connect()
        with _engine_errors("inspect_exec", exec_id):
            return client.api.exec_inspect(exec_id)

    @_offload
    def run_quiet(self, container: str, command: list[str]) -> int:
        """Run a short helper command in the container and return its exit code."""
        client = self._connect()
        with _engine_errors("exec", container):
            exec_id = client.api.exec_create(container, command, stdout=False, stderr=False)["Id"]
            client.api.exec_start(exec_id)
            return client.api.exec_inspect(exec_id).get("ExitCode") or 0

    async def kill_exec(self, container: str, pid_file: str, signal: str = "INT") -> int:
        """Send a signal to the process started by an exec session."""
        console.print(f"[yellow][ENGINE] Sending SIG{signal} to exec in {container}[/yellow]")
        return await self.run_quiet(
            container, ["sh", "-c", f'kill -s {signal} "$(cat {pid_file})" && rm -f {pid_file}']
        )

    def _open_logs(self, ref: str, follow: bool, tail: str) -> Iterator[bytes]:
        client = self._connect()
        try:
            with _engine_errors("stream_logs", ref):
                return client.api.logs(
                    ref,
                    stdout=True,
                    stderr=True,
                    stream=True,
                    follow=follow,
                    tail="all" if tail == "all" else int(tail),
                )
        except EngineError as e:
            if isinstance(e.__cause__, NotFound):
                raise ContainerNotFound("container not found", "stream_logs", ref) from e
            raise

    async def stream_logs(
        self, ref: str, follow: bool = False, tail: str = "100"
    ) -> AsyncIterator[str]:
        """
        Yield log lines.

        Finite unless `follow` is set. Re-invoke to restart; there is no resume
        offset.
        """
        chunks = await asyncio.to_thread(self._open_logs, ref, follow, tail)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        async with aclosing(_drain(chunks, "stream_logs", ref)) as stream:
            async for chunk in stream:
                pending += decoder.decode(chunk)
                *lines, pending = pending.split("\n")
                for line in lines:
                    yield line.rstrip("\r")
        pending += decoder.decode(b"", final=True)
        if pending:
            yield pending

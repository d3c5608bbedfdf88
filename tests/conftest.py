"""
Pytest configuration and fixtures for Dockyard tests.

FakeEngine implements the EngineClient surface in memory so the reconciler
can be exercised without a Docker daemon.
"""

import asyncio
import io
import sys
from collections import Counter
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from dockyard.core.reconciler import LockRegistry, Reconciler
from dockyard.core.reporter import StreamReporter
from dockyard.domain.errors import (
    ContainerNotFound,
    ContainerRunning,
    EngineUnreachable,
    ImageInUse,
    ImageNotFound,
    NameConflict,
)
from dockyard.domain.models import (
    ENV_KEYS_LABEL,
    BuildEvent,
    BuildSpec,
    ContainerState,
    ContainerStatus,
    EnvironmentSpec,
    InspectedContainer,
    MountSpec,
    PortMapping,
)

IMAGE_ENV = {"PATH": "/usr/local/bin:/usr/bin:/bin", "HOME": "/home/me"}


class FakeExecSession:
    def __init__(self, chunks, exit_code):
        self._chunks = list(chunks)
        self.exit_code = exit_code
        self.killed = []
        self.attached = False

    async def output(self):
        for chunk in self._chunks:
            await asyncio.sleep(0)
            yield chunk

    async def attach(self):
        self.attached = True

    async def wait(self):
        return self.exit_code

    async def kill(self, signal="INT"):
        self.killed.append(signal)
        return 0


class FakeEngine:
    """In-memory Docker Engine with call counting and failure injection."""

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: dict[str, str] = {}
        self.calls = Counter()
        self.unreachable = False
        self.build_events = None
        self.built_contexts = []
        self.conflict_on_create = False
        self.start_error = None
        self.exec_chunks = [b"hello\n"]
        self.exec_exit_code = 0
        self.exec_sessions = []
        self.log_lines = ["line 1", "line 2"]
        self._next_id = 0

    async def _tick(self, name):
        self.calls[name] += 1
        if self.unreachable:
            raise EngineUnreachable("cannot reach Docker daemon", operation=name)
        # let concurrent reconcilers interleave
        await asyncio.sleep(0)

    def _new_id(self):
        self._next_id += 1
        return f"{self._next_id:064x}"

    def _store(self, config, status=ContainerStatus.CREATED):
        keys = config.labels.get(ENV_KEYS_LABEL, "")
        self.containers[config.name] = {
            "id": self._new_id(),
            "image": config.image,
            "state": ContainerState(status),
            "mounts": config.desired.mounts,
            "ports": config.desired.ports,
            "env": {**IMAGE_ENV, **config.desired.env},
            "managed_env_keys": frozenset(k for k in keys.split(",") if k),
        }

    # -- helpers for tests -------------------------------------------------

    def add_image(self, ref):
        self.images[ref] = f"sha256:{self._new_id()}"

    def set_state(self, name, status, exit_code=None):
        self.containers[name]["state"] = ContainerState(status, exit_code)

    # -- engine surface ----------------------------------------------------

    async def image_exists(self, ref):
        await self._tick("image_exists")
        return ref in self.images

    async def build_image(self, context, tag, build_args=None, no_cache=False):
        await self._tick("build_image")
        self.built_contexts.append((context, tag, build_args, no_cache))
        events = self.build_events
        if events is None:
            events = [BuildEvent.step("Step 1/1 : FROM alpine"), BuildEvent.success("sha256:" + "ab" * 32)]
        for event in events:
            await asyncio.sleep(0)
            if event.image_id:
                self.images[tag] = event.image_id
            yield event

    async def remove_image(self, ref, force=False):
        await self._tick("remove_image")
        if ref not in self.images:
            raise ImageNotFound("image not found", "remove_image", ref)
        if not force and any(c["image"] == ref for c in self.containers.values()):
            raise ImageInUse("image is being used by a container", "remove_image", ref)
        del self.images[ref]

    async def create_container(self, config):
        await self._tick("create_container")
        if self.conflict_on_create:
            # another process creates the same container first
            self.conflict_on_create = False
            self._store(config, ContainerStatus.RUNNING)
        if config.name in self.containers:
            raise NameConflict(
                f'Conflict. The container name "/{config.name}" is already in use',
                "create_container",
                config.name,
            )
        if config.image not in self.images:
            raise ImageNotFound(f"image '{config.image}' not found", "create_container", config.name)
        self._store(config)
        return self.containers[config.name]["id"]

    async def start_container(self, ref):
        await self._tick("start_container")
        if ref not in self.containers:
            raise ContainerNotFound("container not found", "start_container", ref)
        if self.start_error is not None:
            raise self.start_error
        self.set_state(ref, ContainerStatus.RUNNING)

    async def stop_container(self, ref, timeout=10):
        await self._tick("stop_container")
        if ref not in self.containers:
            raise ContainerNotFound("container not found", "stop_container", ref)
        self.set_state(ref, ContainerStatus.EXITED, 0)

    async def remove_container(self, ref, force=False):
        await self._tick("remove_container")
        container = self.containers.get(ref)
        if container is None:
            return
        if container["state"].is_running and not force:
            raise ContainerRunning("cannot remove a running container", "remove_container", ref)
        del self.containers[ref]

    async def inspect_container(self, ref):
        await self._tick("inspect_container")
        container = self.containers.get(ref)
        if container is None:
            return None
        return InspectedContainer(
            id=container["id"],
            name=ref,
            image=container["image"],
            state=container["state"],
            mounts=container["mounts"],
            ports=container["ports"],
            env=dict(container["env"]),
            managed_env_keys=container["managed_env_keys"],
        )

    async def list_containers(self, name_prefix=None):
        await self._tick("list_containers")
        found = []
        for name in sorted(self.containers):
            if name_prefix and not name.startswith(name_prefix):
                continue
            container = self.containers[name]
            found.append(InspectedContainer(container["id"], name, container["image"], container["state"]))
        return found

    async def exec(self, container, command, interactive=False, workdir=None, tty=None):
        await self._tick("exec")
        if container not in self.containers:
            raise ContainerNotFound("container not found", "exec", container)
        session = FakeExecSession(self.exec_chunks, self.exec_exit_code)
        session.command = command
        session.workdir = workdir
        session.interactive = interactive
        self.exec_sessions.append(session)
        return session

    async def stream_logs(self, ref, follow=False, tail="100"):
        await self._tick("stream_logs")
        if ref not in self.containers:
            raise ContainerNotFound("container not found", "stream_logs", ref)
        for line in self.log_lines:
            await asyncio.sleep(0)
            yield line


@pytest.fixture
def fake_engine():
    """In-memory engine."""
    return FakeEngine()


@pytest.fixture
def quiet_console():
    """Rich console writing to a buffer."""
    return Console(file=io.StringIO(), width=120, color_system=None)


@pytest.fixture
def reporter(quiet_console):
    return StreamReporter(console=quiet_console)


@pytest.fixture
def locks():
    return LockRegistry()


@pytest.fixture
def reconciler(fake_engine, reporter, locks):
    """Reconciler wired to the fake engine."""
    return Reconciler(fake_engine, reporter, locks=locks)


@pytest.fixture
def host_dir(tmp_path):
    """An existing host directory to mount."""
    code = tmp_path / "code"
    code.mkdir()
    return code


@pytest.fixture
def build_dir(tmp_path):
    """A build context with a Dockerfile."""
    ctx = tmp_path / "ctx"
    ctx.mkdir()
    (ctx / "Dockerfile").write_text("FROM alpine\nCMD [\"tail\", \"-f\", \"/dev/null\"]\n")
    (ctx / "setup.sh").write_text("echo hi\n")
    return ctx


@pytest.fixture
def env_spec(host_dir, build_dir):
    """The core environment spec from the docs: one mount, one port, one env var."""
    return EnvironmentSpec(
        image_name="dockyard-core-env",
        image_tag="latest",
        container_name="dockyard-core-env-instance",
        mounts=[MountSpec(host_path=str(host_dir), container_path="/home/me/code")],
        ports=[PortMapping(host_port=8080, container_port=8080)],
        env_vars={"EDITOR": "nvim"},
        default_workdir="/home/me/code",
        build=BuildSpec(context_dir=str(build_dir)),
    )


@pytest.fixture
def mock_docker_client():
    """Mock Docker SDK client for EngineClient tests."""
    client = MagicMock()
    client.ping.return_value = True
    client.api.api_version = "1.43"
    return client

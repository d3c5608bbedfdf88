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
# LIFECYCLE RECONCILER
# -----------------------------------------------------------------------------
# Responsibility: Bring a managed container to "running with the desired
# configuration" using the fewest engine calls, or report exactly why not.
#
#   Absent  --build if missing--> create --> Created --> start --> Running
#   Exited  --------------------------------------------> start --> Running
#   Running --drift--> stop --> remove --> create --> start
#
# State is re-read from the daemon on every pass; nothing is cached between
# calls. Containers are recreated on drift, never patched. Operations on the
# same container name are serialized through a keyed registry of locks.
# -----------------------------------------------------------------------------

import asyncio
from dataclasses import dataclass

from rich.console import Console

from dockyard.core.reporter import StreamReporter
from dockyard.core.translator import translate
from dockyard.domain.errors import (
    ContainerNotFound,
    ContainerRunning,
    DockyardError,
    EngineError,
    ImageBuildFailed,
    ImageNotFound,
    NameConflict,
    SpecValidationError,
)
from dockyard.domain.models import (
    BuildEventKind,
    ContainerConfig,
    ContainerState,
    ContainerStatus,
    DesiredConfig,
    EnvironmentSpec,
    InspectedContainer,
    MountSpec,
    OperationResult,
    PortMapping,
    ReconcileReport,
    StatusSnapshot,
)
from dockyard.infra.archive import create_build_context

console = Console()

DEFAULT_STOP_TIMEOUT = 10


@dataclass(frozen=True)
class DriftDecision:
    """Reuse the container as-is, or recreate it because of `differences`."""

    differences: tuple[str, ...] = ()

    @property
    def recreate_required(self) -> bool:
        return bool(self.differences)

    def __str__(self) -> str:
        return "; ".join(self.differences) if self.differences else "reuse"


def _describe(items) -> str:
    return ", ".join(str(i) for i in sorted(items)) or "none"


def detect_drift(desired: DesiredConfig, inspected: InspectedContainer) -> DriftDecision:
    """
    Compare desired and observed configuration field by field.

    Environment variables are compared on the keys Dockyard manages, so
    variables the image itself defines (PATH, HOME, ...) never count as drift.
    """
    differences = []

    if inspected.image != desired.image:
        differences.append(f"image: {inspected.image} -> {desired.image}")

    if inspected.mounts != desired.mounts:
        differences.append(
            f"mounts: {_describe(inspected.mounts - desired.mounts)} -> "
            f"{_describe(desired.mounts - inspected.mounts)}"
        )

    if inspected.ports != desired.ports:
        differences.append(
            f"ports: {_describe(inspected.ports - desired.ports)} -> "
            f"{_describe(desired.ports - inspected.ports)}"
        )

    keys = set(desired.env) | set(inspected.managed_env_keys or ())
    changed = sorted(k for k in keys if desired.env.get(k) != inspected.env.get(k))
    if changed:
        differences.append(f"env: {', '.join(changed)} changed")

    return DriftDecision(tuple(differences))


class LockRegistry:
    """One asyncio.Lock per container name, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, name: str) -> asyncio.Lock:
        return self._locks.setdefault(name, asyncio.Lock())


class Reconciler:
    """
    Drives managed containers toward their desired state.

    Every public operation returns a ReconcileReport (or a StatusSnapshot)
    instead of raising; engine failures become Failed steps carrying the error
    kind and exit code. Only `logs` and `status` let errors propagate, since
    they have nothing to reconcile.
    """

    def __init__(
        self,
        engine,
        reporter: StreamReporter | None = None,
        locks: LockRegistry | None = None,
        stop_timeout: int = DEFAULT_STOP_TIMEOUT,
        home: str | None = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            engine: EngineClient (or anything with the same async surface).
            reporter: Renders build/log/exec streams.
            locks: Shared lock registry; pass the same one to reconcilers that
                must not race each other.
            stop_timeout: Seconds to wait for a graceful stop before SIGKILL.
            home: Directory '~' expands to in mount paths.
        """
        self._engine = engine
        self._reporter = reporter or StreamReporter()
        self._locks = locks if locks is not None else LockRegistry()
        self._stop_timeout = stop_timeout
        self._home = home

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def ensure_running(self, spec: EnvironmentSpec, rebuild: bool = False) -> ReconcileReport:
        """
        Make sure the container exists and runs with the desired configuration.

        Args:
            spec: Desired state.
            rebuild: Build the image again and recreate the container.

        Returns:
            ReconcileReport; a second call on a healthy container only
            reports Skipped steps.
        """
        report = ReconcileReport(spec.container_name)
        try:
            config = translate(spec, self._home)
        except SpecValidationError as e:
            return self._fail(report, e)

        console.print(f"[cyan][RECONCILER] Ensuring {spec.container_name} is running[/cyan]")
        async with self._locks(spec.container_name):
            try:
                await self._ensure_running(spec, config, rebuild, report)
            except DockyardError as e:
                self._fail(report, e)
        return report

    async def ensure_started(self, spec: EnvironmentSpec) -> ReconcileReport:
        """
        Start the existing container as it was created, without a drift check.

        Only an absent container is built and created from `spec`. Used when
        `spec` carries no configuration of its own, such as one rebuilt from
        command-line defaults.
        """
        name = spec.container_name
        report = ReconcileReport(name)
        async with self._locks(name):
            try:
                inspected = await self._inspect(name, report)
                if inspected is not None:
                    if inspected.state.status is ContainerStatus.UNKNOWN:
                        raise EngineError(
                            "container is in a state that cannot be reconciled", "ensure_running", name
                        )
                    report.add(OperationResult.skipped("create_container", "using existing container"))
                    await self._start_and_verify(name, inspected, report)
                    return report
            except DockyardError as e:
                return self._fail(report, e)
        return await self.ensure_running(spec)

    async def build(self, spec: EnvironmentSpec, no_cache: bool = False) -> ReconcileReport:
        """Build the desired image without touching its container."""
        report = ReconcileReport(spec.container_name)
        try:
            build = self._build_spec(spec)
        except SpecValidationError as e:
            return self._fail(report, e)

        async with self._locks(f"image:{spec.image_ref}"):
            try:
                report.last_confirmed = await self._observe(spec.container_name)
                report.state = report.last_confirmed
                await self._build(spec, report, no_cache or build.no_cache)
            except DockyardError as e:
                self._fail(report, e)
        return report

    async def rebuild(self, spec: EnvironmentSpec) -> ReconcileReport:
        """Remove the container, rebuild the image from scratch, and start it again."""
        report = ReconcileReport(spec.container_name)
        try:
            config = translate(spec, self._home)
            self._build_spec(spec)
        except SpecValidationError as e:
            return self._fail(report, e)

        console.print(f"[cyan][RECONCILER] Rebuilding {spec.container_name}[/cyan]")
        async with self._locks(spec.container_name):
            try:
                inspected = await self._inspect(spec.container_name, report)
                if inspected is not None:
                    await self._teardown(inspected, report)
                await self._build(spec, report, no_cache=True)
                existing = await self._create(config, report)
                await self._start_and_verify(spec.container_name, existing, report)
            except DockyardError as e:
                self._fail(report, e)
        return report

    async def stop(self, name: str, timeout: int | None = None) -> ReconcileReport:
        """Stop a running container. Absent or stopped containers are Skipped."""
        report = ReconcileReport(name)
        async with self._locks(name):
            try:
                inspected = await self._inspect(name, report)
                if inspected is None:
                    report.add(OperationResult.skipped("stop_container", "container does not exist"))
                elif not inspected.state.is_running:
                    report.add(
                        OperationResult.skipped("stop_container", f"container is {inspected.state}")
                    )
                else:
                    await self._engine.stop_container(
                        name, self._stop_timeout if timeout is None else timeout
                    )
                    report.add(OperationResult.success("stop_container", f"stopped {name}"))
                    await self._inspect(name, report)
                report.state = report.last_confirmed
            except DockyardError as e:
                self._fail(report, e)
        return report

    async def remove(self, name: str, force: bool = False) -> ReconcileReport:
        """
        Remove a container.

        A running container is only removed with `force`; otherwise the step
        fails with CONTAINER_RUNNING.
        """
        report = ReconcileReport(name)
        async with self._locks(name):
            try:
                inspected = await self._inspect(name, report)
                if inspected is None:
                    report.add(OperationResult.skipped("remove_container", "container does not exist"))
                    return report
                if inspected.state.is_running and not force:
                    raise ContainerRunning(
                        "container is running; stop it first or remove with force",
                        "remove_container",
                        name,
                    )
                await self._engine.remove_container(name, force=force)
                report.add(OperationResult.success("remove_container", f"removed {name}"))
                report.last_confirmed = report.state = ContainerState.absent()
            except DockyardError as e:
                self._fail(report, e)
        return report

    async def exec(
        self,
        spec: EnvironmentSpec,
        command: list[str],
        interactive: bool = False,
        workdir: str | None = None,
        reconcile: bool = True,
    ) -> ReconcileReport:
        """
        Run a command in the container, starting it first if needed.

        With `reconcile` off an existing container is used as it is, drift or
        not. The command's own exit code lands on `report.exec_exit_code`; a
        non-zero exit is not a reconciliation failure.
        """
        if reconcile:
            report = await self.ensure_running(spec)
        else:
            report = await self.ensure_started(spec)
        if not report.ok:
            return report

        name = spec.container_name
        try:
            session = await self._engine.exec(
                name, command, interactive=interactive, workdir=workdir or spec.default_workdir
            )
            try:
                if interactive:
                    await session.attach()
                else:
                    async for chunk in session.output():
                        self._reporter.exec_output(chunk)
            except asyncio.CancelledError:
                console.print(f"[yellow][RECONCILER] Interrupted, signalling command in {name}[/yellow]")
                await asyncio.shield(session.kill("HUP" if interactive else "INT"))
                raise
            exit_code = await session.wait()
        except DockyardError as e:
            return self._fail(report, e)

        report.exec_exit_code = exit_code
        report.add(OperationResult.success("exec", f"{' '.join(command)} exited with {exit_code}"))
        return report

    async def status(self, spec: EnvironmentSpec) -> StatusSnapshot:
        """Describe the container as the daemon currently sees it."""
        inspected = await self._engine.inspect_container(spec.container_name)
        if inspected is None:
            return StatusSnapshot(spec.container_name, ContainerState.absent())

        if inspected.managed_env_keys is not None:
            env_keys = sorted(inspected.managed_env_keys)
        else:
            env_keys = sorted(inspected.env)

        return StatusSnapshot(
            container_name=spec.container_name,
            state=inspected.state,
            image=inspected.image,
            container_id=inspected.id,
            mounts=[
                MountSpec(host_path=source, container_path=target, readonly=readonly)
                for source, target, readonly in sorted(inspected.mounts)
            ],
            ports=[
                PortMapping(host_port=host, container_port=container, protocol=protocol)
                for host, container, protocol in sorted(inspected.ports)
            ],
            env_var_keys=env_keys,
        )

    async def logs(self, name: str, follow: bool = False, tail: str = "100") -> ReconcileReport:
        """
        Stream a container's logs through the reporter.

        Raises:
            ContainerNotFound: If the container does not exist.
        """
        report = ReconcileReport(name)
        inspected = await self._inspect(name, report)
        if inspected is None:
            raise ContainerNotFound("container does not exist", "stream_logs", name)
        report.state = inspected.state

        lines = await self._reporter.follow(
            self._engine.stream_logs(name, follow=follow, tail=tail)
        )
        report.add(OperationResult.success("stream_logs", f"{lines} lines"))
        return report

    async def prune(self, prefix: str, force: bool = False) -> ReconcileReport:
        """
        Remove stopped containers whose name starts with `prefix`.

        Without `force` this is a dry run that only lists what would go.
        """
        report = ReconcileReport(prefix)
        try:
            containers = await self._engine.list_containers(prefix)
        except DockyardError as e:
            return self._fail(report, e)

        stopped = [c for c in containers if not c.state.is_running]
        if not stopped:
            report.add(OperationResult.skipped("prune", f"no stopped containers match '{prefix}'"))
            return report

        for container in stopped:
            if not force:
                report.add(
                    OperationResult.skipped(
                        "remove_container", f"would remove {container.name} ({container.state})"
                    )
                )
                continue
            async with self._locks(container.name):
                try:
                    await self._engine.remove_container(container.name)
                    report.add(OperationResult.success("remove_container", f"removed {container.name}"))
                except DockyardError as e:
                    report.add(OperationResult.from_error(e))
        return report

    async def remove_image(self, spec: EnvironmentSpec, force: bool = False) -> ReconcileReport:
        """
        Remove the image named by `spec`.

        With `force` the managed container is removed first; without it an
        image still used by a container fails with IMAGE_IN_USE.
        """
        report = ReconcileReport(spec.container_name)
        async with self._locks(spec.container_name):
            try:
                inspected = await self._inspect(spec.container_name, report)
                report.state = report.last_confirmed
                if not await self._engine.image_exists(spec.image_ref):
                    report.add(
                        OperationResult.skipped("remove_image", f"image {spec.image_ref} does not exist")
                    )
                    return report
                if inspected is not None and force:
                    await self._teardown(inspected, report)
                    report.state = report.last_confirmed
                await self._engine.remove_image(spec.image_ref, force=force)
                report.add(OperationResult.success("remove_image", f"removed {spec.image_ref}"))
            except DockyardError as e:
                self._fail(report, e)
        return report

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _ensure_running(
        self,
        spec: EnvironmentSpec,
        config: ContainerConfig,
        rebuild: bool,
        report: ReconcileReport,
    ) -> None:
        name = spec.container_name
        inspected = await self._inspect(name, report)

        recreate = None
        if inspected is not None:
            if inspected.state.status is ContainerStatus.UNKNOWN:
                raise EngineError(
                    "container is in a state that cannot be reconciled", "ensure_running", name
                )
            decision = DriftDecision(("image rebuilt",)) if rebuild else detect_drift(
                config.desired, inspected
            )
            if decision.recreate_required:
                recreate = decision

        # the image must be in place before an existing container is torn down
        if inspected is None or recreate is not None:
            await self._ensure_image(spec, report, rebuild)

        if recreate is not None:
            console.print(f"[yellow][RECONCILER] Drift on {name}: {recreate}[/yellow]")
            await self._teardown(inspected, report, reason=str(recreate))
            inspected = None

        if inspected is None:
            inspected = await self._create(config, report)
        await self._start_and_verify(name, inspected, report)

    async def _start_and_verify(
        self, name: str, inspected: InspectedContainer | None, report: ReconcileReport
    ) -> None:
        if inspected is not None and inspected.state.is_running:
            report.add(OperationResult.skipped("start_container", "already running"))
            report.state = inspected.state
            return

        await self._engine.start_container(name)
        report.add(OperationResult.success("start_container", f"started {name}"))

        final = await self._inspect(name, report)
        if final is None or not final.state.is_running:
            state = final.state if final is not None else ContainerState.absent()
            raise EngineError(
                f"container is {state} after start; check `logs` for the cause",
                "start_container",
                name,
            )
        report.state = final.state
        console.print(f"[green][RECONCILER] {name} is running[/green]")

    async def _ensure_image(self, spec: EnvironmentSpec, report: ReconcileReport, rebuild: bool) -> None:
        if not rebuild and await self._engine.image_exists(spec.image_ref):
            report.add(OperationResult.skipped("build_image", f"image {spec.image_ref} exists"))
            return
        if spec.build is None:
            raise ImageNotFound(
                f"image '{spec.image_ref}' not found and no build context is configured",
                "build_image",
                spec.image_ref,
            )
        await self._build(spec, report, spec.build.no_cache)

    async def _build(self, spec: EnvironmentSpec, report: ReconcileReport, no_cache: bool) -> None:
        build = self._build_spec(spec)
        context = await asyncio.to_thread(create_build_context, build.context_dir, build.dockerfile)

        self._reporter.reset()
        image_id = None
        async for event in self._engine.build_image(context, spec.image_ref, build.build_args, no_cache):
            self._reporter.build_event(event)
            if event.kind is BuildEventKind.ERROR:
                raise ImageBuildFailed(
                    event.text, "build_image", spec.image_ref, tail=self._reporter.tail()
                )
            if event.kind is BuildEventKind.SUCCESS:
                image_id = event.image_id

        if image_id is None:
            raise ImageBuildFailed(
                "build ended without an image id", "build_image", spec.image_ref, tail=self._reporter.tail()
            )
        short_id = image_id.split(":")[-1][:12]
        report.add(OperationResult.success("build_image", f"built {spec.image_ref} ({short_id})"))

    async def _create(
        self, config: ContainerConfig, report: ReconcileReport
    ) -> InspectedContainer | None:
        """
        Create the container. Returns the existing container when another
        caller created a matching one first, None after a normal create.
        """
        try:
            container_id = await self._engine.create_container(config)
        except NameConflict:
            # someone else won the race; accept their container if it matches
            existing = await self._inspect(config.name, report)
            if existing is None or detect_drift(config.desired, existing).recreate_required:
                raise
            report.add(
                OperationResult.skipped(
                    "create_container", "created concurrently with matching configuration"
                )
            )
            return existing

        report.add(OperationResult.success("create_container", f"created {config.name} ({container_id[:12]})"))
        report.last_confirmed = ContainerState(ContainerStatus.CREATED)
        return None

    async def _teardown(
        self, inspected: InspectedContainer, report: ReconcileReport, reason: str = ""
    ) -> None:
        if inspected.state.is_running:
            await self._engine.stop_container(inspected.name, self._stop_timeout)
            report.add(OperationResult.success("stop_container", f"stopped {inspected.name}"))
        await self._engine.remove_container(inspected.name, force=True)
        detail = f"removed {inspected.name}" + (f" ({reason})" if reason else "")
        report.add(OperationResult.success("remove_container", detail))
        report.last_confirmed = ContainerState.absent()

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _inspect(self, name: str, report: ReconcileReport) -> InspectedContainer | None:
        inspected = await self._engine.inspect_container(name)
        report.last_confirmed = inspected.state if inspected is not None else ContainerState.absent()
        return inspected

    async def _observe(self, name: str) -> ContainerState:
        inspected = await self._engine.inspect_container(name)
        return inspected.state if inspected is not None else ContainerState.absent()

    @staticmethod
    def _build_spec(spec: EnvironmentSpec):
        if spec.build is None:
            raise SpecValidationError("no build context is configured", "build_image", spec.image_ref)
        return spec.build

    def _fail(self, report: ReconcileReport, error: DockyardError) -> ReconcileReport:
        result = report.add(OperationResult.from_error(error))
        report.state = ContainerState.error()
        console.print(f"[red][RECONCILER] {result.step} failed: {error}[/red]")
        return report

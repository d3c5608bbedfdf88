# =============================================================================
# DOCKYARD CLI TESTS
# =============================================================================
# Argument parsing, dispatch and exit codes. The reconciler is mocked.
# =============================================================================

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dockyard.cli import _parse_env, build_parser, dispatch, main
from dockyard.config import DockyardConfig, EngineSettings
from dockyard.domain.errors import EngineUnreachable, NameConflict, SpecValidationError
from dockyard.domain.models import (
    ContainerState,
    ContainerStatus,
    OperationResult,
    ReconcileReport,
    StatusSnapshot,
)


def _ok(name="dockyard-core-env-instance"):
    report = ReconcileReport(name, state=ContainerState(ContainerStatus.RUNNING))
    report.add(OperationResult.success("start_container", f"started {name}"))
    return report


def _failed(error):
    report = ReconcileReport("dockyard-core-env-instance", state=ContainerState.error())
    report.add(OperationResult.from_error(error))
    return report


@pytest.fixture
def mock_reconciler():
    reconciler = MagicMock()
    for method in ("build", "ensure_running", "rebuild", "exec", "status", "stop", "logs", "remove", "prune", "remove_image"):
        setattr(reconciler, method, AsyncMock(return_value=_ok()))
    return reconciler


async def _dispatch(argv, reconciler, reporter, config=None):
    args = build_parser().parse_args(argv)
    args.op = {"run": "start", "rm": "remove"}.get(args.op, args.op)
    return await dispatch(args, reconciler, reporter, config or DockyardConfig(), EngineSettings())


class TestParser:
    def test_env_start(self):
        args = build_parser().parse_args(["env", "start"])

        assert args.scope == "env"
        assert args.op == "start"
        assert args.name is None

    def test_container_run_alias(self):
        args = build_parser().parse_args(["container", "run", "-p", "8080:80", "-e", "A=1", "--rm", "python", "app.py"])

        assert args.op == "run"
        assert args.port == ["8080:80"]
        assert args.env == ["A=1"]
        assert args.rm is True
        assert args.cmd == ["python", "app.py"]

    def test_exec_keeps_command_flags(self):
        args = build_parser().parse_args(["env", "exec", "-w", "/tmp", "ls", "-la"])

        assert args.workdir == "/tmp"
        assert args.command == ["ls", "-la"]

    def test_remove_alias_with_force(self):
        args = build_parser().parse_args(["container", "rm", "-f"])

        assert args.op == "rm"
        assert args.force is True

    def test_env_only_operations(self):
        assert build_parser().parse_args(["env", "prune", "-f"]).force is True
        with pytest.raises(SystemExit):
            build_parser().parse_args(["container", "prune"])

    def test_parse_env(self):
        assert _parse_env(["A=1", "B=x=y"]) == {"A": "1", "B": "x=y"}
        with pytest.raises(SpecValidationError):
            _parse_env(["NOVALUE"])


class TestDispatch:
    @pytest.mark.asyncio
    async def test_start_success(self, mock_reconciler, reporter):
        assert await _dispatch(["env", "start"], mock_reconciler, reporter) == 0

        spec = mock_reconciler.ensure_running.call_args.args[0]
        assert spec.container_name == "dockyard-core-env-instance"

    @pytest.mark.asyncio
    async def test_env_name_override(self, mock_reconciler, reporter):
        await _dispatch(["env", "stop", "--name", "other"], mock_reconciler, reporter)

        mock_reconciler.stop.assert_awaited_once_with("other", timeout=None)

    @pytest.mark.asyncio
    async def test_engine_failure_exits_2(self, mock_reconciler, reporter):
        mock_reconciler.ensure_running.return_value = _failed(
            NameConflict("name is already in use", "create_container", "dockyard-core-env-instance")
        )

        assert await _dispatch(["env", "start"], mock_reconciler, reporter) == 2
        assert "name is already in use" in reporter.console.file.getvalue()

    @pytest.mark.asyncio
    async def test_validation_failure_exits_1(self, mock_reconciler, reporter):
        mock_reconciler.build.return_value = _failed(SpecValidationError("no build context is configured", "build_image"))

        assert await _dispatch(["env", "build"], mock_reconciler, reporter) == 1

    @pytest.mark.asyncio
    async def test_exec_returns_command_exit_code(self, mock_reconciler, reporter):
        report = _ok()
        report.exec_exit_code = 3
        mock_reconciler.exec.return_value = report

        assert await _dispatch(["env", "exec", "false"], mock_reconciler, reporter) == 3
        args = mock_reconciler.exec.call_args
        assert args.args[1] == ["false"]
        assert args.kwargs["interactive"] is False

    @pytest.mark.asyncio
    async def test_exec_failure_before_command(self, mock_reconciler, reporter):
        mock_reconciler.exec.return_value = _failed(EngineUnreachable("connection refused", "connect"))

        assert await _dispatch(["env", "exec", "ls"], mock_reconciler, reporter) == 2

    @pytest.mark.asyncio
    async def test_shell_is_interactive(self, mock_reconciler, reporter):
        report = _ok()
        report.exec_exit_code = 0
        mock_reconciler.exec.return_value = report

        await _dispatch(["env", "shell", "--shell", "/bin/zsh"], mock_reconciler, reporter)

        args = mock_reconciler.exec.call_args
        assert args.args[1] == ["/bin/zsh"]
        assert args.kwargs["interactive"] is True

    @pytest.mark.asyncio
    async def test_status(self, mock_reconciler, reporter):
        mock_reconciler.status.return_value = StatusSnapshot("dockyard-core-env-instance", ContainerState.absent())

        assert await _dispatch(["env", "status"], mock_reconciler, reporter) == 0
        assert "absent" in reporter.console.file.getvalue()

    @pytest.mark.asyncio
    async def test_logs_default_tail(self, mock_reconciler, reporter):
        await _dispatch(["env", "logs", "-f"], mock_reconciler, reporter)

        mock_reconciler.logs.assert_awaited_once_with("dockyard-core-env-instance", follow=True, tail="100")

    @pytest.mark.asyncio
    async def test_prune_uses_image_prefix(self, mock_reconciler, reporter):
        await _dispatch(["env", "prune"], mock_reconciler, reporter)

        mock_reconciler.prune.assert_awaited_once_with("dockyard-core-env-", force=False)

    @pytest.mark.asyncio
    async def test_container_scope_spec(self, mock_reconciler, reporter, tmp_path, monkeypatch):
        project = tmp_path / "webapp"
        project.mkdir()
        monkeypatch.chdir(project)

        await _dispatch(
            ["container", "run", "-t", "--rm", "-p", "8000:8000", "-e", "DEBUG=1", "python", "app.py"],
            mock_reconciler,
            reporter,
        )

        spec = mock_reconciler.ensure_running.call_args.args[0]
        assert spec.container_name == "dockyard-app-webapp"
        assert spec.image_ref == "webapp:latest"
        assert spec.detach is False
        assert spec.auto_remove is True
        assert spec.env_vars == {"DEBUG": "1"}
        assert spec.command == ["python", "app.py"]

    @pytest.mark.asyncio
    async def test_rmi(self, mock_reconciler, reporter, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        assert await _dispatch(["container", "rmi", "-f"], mock_reconciler, reporter) == 0
        assert mock_reconciler.remove_image.call_args.kwargs == {"force": True}


class TestContainerScopeAgainstEngine:
    """Several invocations in a row against the in-memory engine."""

    @pytest.fixture
    def project(self, tmp_path, monkeypatch, fake_engine):
        project = tmp_path / "webapp"
        project.mkdir()
        monkeypatch.chdir(project)
        fake_engine.add_image("webapp:latest")
        return project

    @pytest.mark.asyncio
    async def test_exec_keeps_container_started_with_flags(self, project, fake_engine, reconciler, reporter):
        assert await _dispatch(["container", "start", "-p", "9000:80", "-e", "A=1"], reconciler, reporter) == 0
        before = fake_engine.containers["dockyard-app-webapp"]["id"]

        assert await _dispatch(["container", "exec", "ls"], reconciler, reporter) == 0

        container = fake_engine.containers["dockyard-app-webapp"]
        assert container["id"] == before
        assert container["ports"] == frozenset({(9000, 80, "tcp")})
        assert container["env"]["A"] == "1"
        assert fake_engine.calls["remove_container"] == 0
        assert fake_engine.exec_sessions[0].command == ["ls"]

    @pytest.mark.asyncio
    async def test_shell_keeps_container_started_with_flags(self, project, fake_engine, reconciler, reporter):
        await _dispatch(["container", "start", "-p", "9000:80"], reconciler, reporter)
        before = fake_engine.containers["dockyard-app-webapp"]["id"]

        await _dispatch(["container", "shell"], reconciler, reporter)

        assert fake_engine.containers["dockyard-app-webapp"]["id"] == before
        assert fake_engine.exec_sessions[0].attached

    @pytest.mark.asyncio
    async def test_start_with_new_flags_still_recreates(self, project, fake_engine, reconciler, reporter):
        await _dispatch(["container", "start", "-p", "9000:80"], reconciler, reporter)

        await _dispatch(["container", "start", "-p", "9001:80"], reconciler, reporter)

        assert fake_engine.calls["create_container"] == 2
        assert fake_engine.containers["dockyard-app-webapp"]["ports"] == frozenset({(9001, 80, "tcp")})


class TestMain:
    def test_exec_strips_separator(self):
        with patch("dockyard.cli._main", new=AsyncMock(return_value=0)) as run:
            assert main(["env", "exec", "--", "ls", "-la"]) == 0

        assert run.call_args.args[0].command == ["ls", "-la"]

    def test_alias_is_normalized(self):
        with patch("dockyard.cli._main", new=AsyncMock(return_value=0)) as run:
            main(["container", "rm"])

        assert run.call_args.args[0].op == "remove"

    def test_exec_without_command(self):
        with pytest.raises(SystemExit):
            main(["env", "exec"])

    def test_dockyard_error_exit_code(self):
        error = EngineUnreachable("connection refused", "connect")
        with patch("dockyard.cli._main", new=AsyncMock(side_effect=error)):
            assert main(["env", "status"]) == 2

    def test_config_error_exit_code(self):
        with patch("dockyard.cli._main", new=AsyncMock(side_effect=SpecValidationError("bad yaml", "config"))):
            assert main(["env", "status"]) == 1

    def test_interrupted(self):
        with patch("dockyard.cli._main", new=AsyncMock(side_effect=KeyboardInterrupt)):
            assert main(["env", "start"]) == 130

"""Orchestrator tests with real child processes."""

import asyncio
import sys
from pathlib import Path

import pytest

from devhost.dsl import AppBuilder
from devhost.errors import CycleError
from devhost.model import ResourceState
from devhost.process import CancellationToken, ProcessRunner
from devhost.runner import Orchestrator, load_apphost


def orchestrator(builder, **kwargs):
    kwargs.setdefault("runner", ProcessRunner(grace_period=0.5))
    kwargs.setdefault("startup_timeout", 10)
    kwargs.setdefault("probe_interval", 0.05)
    return Orchestrator(builder.build(), **kwargs)


def script(builder, name, tmp_path, code):
    """A one-shot python step."""
    return builder.add_executable(name, sys.executable, str(tmp_path), "-c", code)


def append_line(text):
    return f"open('order.txt', 'a').write('{text}\\n')"


class TestStartup:
    @pytest.mark.asyncio
    async def test_dependencies_start_first(self, tmp_path):
        builder = AppBuilder("test")
        script(builder, "migrate", tmp_path, append_line("migrate"))
        script(builder, "seed", tmp_path, append_line("seed")).wait_for_completion("migrate")
        script(builder, "build", tmp_path, append_line("build"))
        script(builder, "report", tmp_path, append_line("report")).wait_for("seed", "build")

        orch = orchestrator(builder)
        states = await orch.start()

        assert set(states.values()) == {ResourceState.READY}
        lines = (tmp_path / "order.txt").read_text().split()
        assert lines.index("migrate") < lines.index("seed") < lines.index("report")
        assert lines.index("build") < lines.index("report")

    @pytest.mark.asyncio
    async def test_failure_cascades_and_blocks_dependents(self, tmp_path):
        builder = AppBuilder("test")
        script(builder, "migrate", tmp_path, "import sys; print('no db'); sys.exit(1)")
        script(builder, "api", tmp_path, append_line("api")).wait_for("migrate")
        script(builder, "worker", tmp_path, append_line("worker")).wait_for("api")
        script(builder, "docs", tmp_path, append_line("docs"))

        orch = orchestrator(builder)
        states = await orch.start()

        assert states["migrate"] is ResourceState.FAILED
        assert states["api"] is ResourceState.FAILED
        assert states["worker"] is ResourceState.FAILED
        assert states["docs"] is ResourceState.READY
        assert "exited with code 1" in orch.graph.reason("migrate")
        assert orch.graph.reason("api") == "dependency 'migrate' failed"
        assert (tmp_path / "order.txt").read_text().split() == ["docs"]

    @pytest.mark.asyncio
    async def test_missing_tool_fails_resource(self, tmp_path):
        builder = AppBuilder("test")
        builder.add_executable("ghost", "definitely-not-a-real-tool-xyz", str(tmp_path))

        states = await orchestrator(builder).start()

        assert states["ghost"] is ResourceState.FAILED

    @pytest.mark.asyncio
    async def test_cancel_fails_only_the_running_resource(self, tmp_path):
        builder = AppBuilder("test")
        script(builder, "a", tmp_path, "import time; time.sleep(30)")
        script(builder, "b", tmp_path, append_line("b")).wait_for("a")
        script(builder, "c", tmp_path, append_line("c")).wait_for("b")
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.3, token.cancel)

        orch = orchestrator(builder)
        states = await asyncio.wait_for(orch.start(token), 15)

        assert states["a"] is ResourceState.FAILED
        assert orch.graph.reason("a") == "cancelled during start"
        assert states["b"] is ResourceState.NOT_STARTED
        assert states["c"] is ResourceState.NOT_STARTED
        assert not (tmp_path / "order.txt").exists()

    def test_cycle_rejected_before_anything_runs(self, tmp_path):
        builder = AppBuilder("test")
        script(builder, "a", tmp_path, "pass").wait_for("b")
        script(builder, "b", tmp_path, "pass").wait_for("a")
        with pytest.raises(CycleError):
            orchestrator(builder)


class TestServices:
    @pytest.mark.asyncio
    async def test_health_check_gates_readiness(self, tmp_path):
        marker = tmp_path / "healthy"

        async def probe():
            return marker.exists()

        builder = AppBuilder("test")
        builder.add_project(
            "api",
            str(tmp_path),
            sys.executable,
            "-c",
            "import time; time.sleep(0.3); open('healthy', 'w').close(); time.sleep(60)",
        ).with_health_check(probe)
        script(builder, "after", tmp_path, "import os; assert os.path.exists('healthy')").wait_for("api")

        orch = orchestrator(builder)
        try:
            states = await orch.start()
        finally:
            await orch.stop()

        assert states == {"api": ResourceState.READY, "after": ResourceState.READY}

    @pytest.mark.asyncio
    async def test_service_exiting_before_healthy_fails(self, tmp_path):
        async def probe():
            return False

        builder = AppBuilder("test")
        builder.add_project("api", str(tmp_path), sys.executable, "-c", "import sys; sys.exit(4)") \
            .with_health_check(probe)

        orch = orchestrator(builder)
        states = await orch.start()

        assert states["api"] is ResourceState.FAILED
        assert "code 4" in orch.graph.reason("api")

    @pytest.mark.asyncio
    async def test_startup_timeout(self, tmp_path):
        async def probe():
            return False

        builder = AppBuilder("test")
        builder.add_project("api", str(tmp_path), sys.executable, "-c", "import time; time.sleep(60)") \
            .with_health_check(probe)

        orch = orchestrator(builder, startup_timeout=0.3)
        states = await orch.start()

        assert states["api"] is ResourceState.FAILED
        assert "not healthy" in orch.graph.reason("api")
        # the process was stopped along with the failure
        assert orch._services["api"].done()

    @pytest.mark.asyncio
    async def test_references_resolve_to_env(self, tmp_path):
        builder = AppBuilder("test")
        api = builder.add_project("api", str(tmp_path), sys.executable, "-c", "import time; time.sleep(60)") \
            .with_http_endpoint(port=18123)
        script(
            builder,
            "client",
            tmp_path,
            "import os; open('env.txt', 'w').write(os.environ['API_HTTP_URL'])",
        ).wait_for(api).with_reference(api)

        orch = orchestrator(builder)
        try:
            await orch.start()
        finally:
            await orch.stop()

        assert (tmp_path / "env.txt").read_text() == "http://localhost:18123"

    @pytest.mark.asyncio
    async def test_service_gets_port_env(self, tmp_path):
        builder = AppBuilder("test")
        builder.add_project(
            "api",
            str(tmp_path),
            sys.executable,
            "-c",
            "import os, time; open('port.txt', 'w').write(os.environ['PORT']); time.sleep(60)",
        ).with_http_endpoint(port=18124)

        async def probe():
            return (tmp_path / "port.txt").exists()

        builder.resources["api"].health_check = probe
        orch = orchestrator(builder)
        try:
            await orch.start()
        finally:
            await orch.stop()

        assert (tmp_path / "port.txt").read_text() == "18124"

    @pytest.mark.asyncio
    async def test_ready_hooks_receive_context(self, tmp_path):
        seen = []

        async def hook(ctx):
            seen.append((ctx.resource.name, ctx.token.cancelled))

        builder = AppBuilder("test")
        script(builder, "migrate", tmp_path, "pass").on_ready(hook)

        await orchestrator(builder).start()

        assert seen == [("migrate", False)]


class TestRunSession:
    @pytest.mark.asyncio
    async def test_run_until_cancelled_then_stop(self, tmp_path):
        builder = AppBuilder("test")
        builder.add_project("api", str(tmp_path), sys.executable, "-c", "import time; time.sleep(60)")
        token = CancellationToken()
        pids = []

        async def on_started(orch):
            pids.append(orch._services["api"])
            asyncio.get_running_loop().call_later(0.2, token.cancel)

        orch = orchestrator(builder)
        states = await asyncio.wait_for(orch.run(token, on_started), 15)

        assert states["api"] is ResourceState.READY
        result = pids[0].result()
        assert result.cancelled

    @pytest.mark.asyncio
    async def test_run_returns_when_all_services_exit(self, tmp_path):
        builder = AppBuilder("test")
        builder.add_project("api", str(tmp_path), sys.executable, "-c", "import time; time.sleep(0.3)")

        orch = orchestrator(builder)
        states = await asyncio.wait_for(orch.run(CancellationToken()), 15)

        assert states["api"] is ResourceState.READY

    @pytest.mark.asyncio
    async def test_invoke_command_without_starting(self, tmp_path):
        async def action(ctx):
            return None

        builder = AppBuilder("test")
        script(builder, "job", tmp_path, "pass").with_command("go", "Go", action)

        result = await orchestrator(builder).invoke_command("job", "go")

        assert result.success


class TestLoadApphost:
    def test_python_apphost(self, tmp_path):
        path = tmp_path / "apphost.py"
        path.write_text(
            "from devhost import AppBuilder\n"
            "def apphost():\n"
            "    b = AppBuilder('demo')\n"
            "    db = b.add_postgres('postgres').add_database('appdb')\n"
            "    b.add_project('api', '.', 'python3', '-m', 'app').wait_for(db)\n"
            "    return b\n"
        )
        app = load_apphost(path)
        assert app.name == "demo"
        assert set(app.resources) == {"postgres", "appdb", "api"}
        assert app.get("appdb").parent == "postgres"

    def test_python_apphost_needs_entry_point(self, tmp_path):
        path = tmp_path / "apphost.py"
        path.write_text("x = 1\n")
        with pytest.raises(TypeError):
            load_apphost(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_apphost(tmp_path / "nope.py")

    def test_repository_sample_apphost(self):
        sample = Path(__file__).resolve().parent.parent / "apphost.py"
        app = load_apphost(sample)
        assert {"postgres", "appdb", "pgmcp", "api", "build-api", "migrate-api"} <= set(app.resources)
        assert "reset" in app.get("appdb").commands
        assert "seed-data" in app.get("api").commands
        assert app.get("migrate-api").parent == "api"
        assert "migrate-api" in app.get("api").wait_for

"""Tests for PipelineStepRegistry ordering and execution."""

from unittest.mock import MagicMock

import pytest

from devhost.dsl import AppBuilder
from devhost.errors import CycleError, DuplicateStepError, UnknownStepError
from devhost.model import PipelineStep
from devhost.pipeline import PipelineContext, PipelineStepRegistry
from devhost.process import CancellationToken
from devhost.recipes.migrate import add_migration


def names(steps):
    return [s.name for s in steps]


def recorder(log, name, fail=False):
    async def action(ctx):
        log.append(name)
        assert ctx.step_name == name
        if fail:
            raise RuntimeError(f"{name} broke")

    return action


class TestResolveOrder:
    def test_required_by_chain(self):
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", required_by_steps=["B"]))
        reg.register(PipelineStep("B", required_by_steps=["deploy"]))
        assert names(reg.resolve_order("deploy")) == ["A", "B", "deploy"]

    def test_depends_on_is_the_same_edge_reversed(self):
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("push", depends_on_steps=["package"]))
        reg.register(PipelineStep("package", depends_on_steps=["build"]))
        assert names(reg.resolve_order("push")) == ["build", "package", "push"]

    def test_only_the_target_closure_is_included(self):
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("lint", required_by_steps=["build"]))
        reg.register(PipelineStep("bundle", required_by_steps=["deploy"]))
        assert names(reg.resolve_order("deploy")) == ["bundle", "deploy"]

    def test_ties_broken_by_name(self):
        reg = PipelineStepRegistry(include_well_known=False)
        reg.register(PipelineStep("z", required_by_steps=["end"]))
        reg.register(PipelineStep("a", required_by_steps=["end"]))
        reg.register(PipelineStep("end"))
        assert names(reg.resolve_order("end")) == ["a", "z", "end"]

    def test_unknown_target(self):
        with pytest.raises(UnknownStepError):
            PipelineStepRegistry().resolve_order("ship")

    def test_unknown_reference(self):
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", required_by_steps=["ship"]))
        with pytest.raises(UnknownStepError) as exc:
            reg.resolve_order("deploy")
        assert "'A'" in str(exc.value)

    def test_duplicate_step(self):
        reg = PipelineStepRegistry()
        with pytest.raises(DuplicateStepError):
            reg.register(PipelineStep("deploy"))

    def test_cycle(self):
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", required_by_steps=["B"]))
        reg.register(PipelineStep("B", required_by_steps=["A", "deploy"]))
        with pytest.raises(CycleError):
            reg.resolve_order("deploy")


class TestExecute:
    @pytest.mark.asyncio
    async def test_runs_in_order(self, tmp_path):
        log = []
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", recorder(log, "A"), required_by_steps=["B"]))
        reg.register(PipelineStep("B", recorder(log, "B"), required_by_steps=["deploy"]))

        results = await reg.execute("deploy", PipelineContext(output_dir=tmp_path))

        assert log == ["A", "B"]
        assert [(r.name, r.status) for r in results] == [("A", "ok"), ("B", "ok"), ("deploy", "ok")]

    @pytest.mark.asyncio
    async def test_failure_skips_dependent_chain_only(self, tmp_path):
        log = []
        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", recorder(log, "A", fail=True), required_by_steps=["B"]))
        reg.register(PipelineStep("B", recorder(log, "B"), required_by_steps=["deploy"]))
        reg.register(PipelineStep("C", recorder(log, "C"), required_by_steps=["deploy"]))

        results = {r.name: r for r in await reg.execute("deploy", PipelineContext(output_dir=tmp_path))}

        assert log == ["A", "C"]
        assert results["A"].status == "failed"
        assert results["A"].error == "A broke"
        assert results["B"].status == "skipped"
        assert results["C"].status == "ok"
        assert results["deploy"].status == "skipped"

    @pytest.mark.asyncio
    async def test_cancellation_stops_remaining_steps(self, tmp_path):
        token = CancellationToken()
        log = []

        async def cancel(ctx):
            log.append("A")
            ctx.token.cancel()

        reg = PipelineStepRegistry()
        reg.register(PipelineStep("A", cancel, required_by_steps=["B"]))
        reg.register(PipelineStep("B", recorder(log, "B"), required_by_steps=["deploy"]))

        results = await reg.execute("deploy", PipelineContext(token=token, output_dir=tmp_path))

        assert log == ["A"]
        assert [r.status for r in results] == ["cancelled", "cancelled", "cancelled"]


class FakeRunner:
    """Stands in for ProcessRunner: replays canned stdout lines."""

    def __init__(self, lines):
        self.lines = lines
        self.calls = []

    async def run(self, command, args=(), **kwargs):
        self.calls.append((command, list(args), kwargs.get("cwd")))
        for line in self.lines:
            kwargs["on_line"]("stdout", line)
        kwargs["on_line"]("stderr", "INFO  [alembic.runtime.migration] Running upgrade")
        return MagicMock(cancelled=False, exit_code=0, ok=True)


class TestMigrationBundleStep:
    def build(self, tmp_path):
        builder = AppBuilder("test")
        db = builder.add_postgres("postgres").add_database("appdb")
        api = builder.add_project("api", str(tmp_path), "python3", "-m", "app").with_http_endpoint()
        add_migration(builder, api, db)
        return builder.build()

    def test_step_is_required_by_deploy(self, tmp_path):
        reg = PipelineStepRegistry()
        reg.collect(self.build(tmp_path))
        assert names(reg.resolve_order("deploy")) == ["migration-bundle-api", "deploy"]

    @pytest.mark.asyncio
    async def test_writes_sql_script(self, tmp_path):
        app = self.build(tmp_path)
        runner = FakeRunner(["BEGIN;", "CREATE TABLE people (id serial);", "COMMIT;"])
        reg = PipelineStepRegistry()
        reg.collect(app)

        out_dir = tmp_path / "out"
        results = await reg.execute("deploy", PipelineContext(app=app, runner=runner, output_dir=out_dir))

        assert all(r.ok for r in results)
        assert runner.calls == [("alembic", ["upgrade", "head", "--sql"], str(tmp_path))]
        script = (out_dir / "api-migrations.sql").read_text()
        assert script == "BEGIN;\nCREATE TABLE people (id serial);\nCOMMIT;\n"

"""Graph building: ordering, cycle and reference detection, step validation."""

from __future__ import annotations

import pytest

from pipewright.dag import build
from pipewright.dsl import job, sh, uses, wf
from pipewright.errors import ConfigurationError, CyclicDependency, UnknownJobReference


def ok(name: str, **kwargs):
    return job(name, sh("s", "true"), **kwargs)


class TestOrdering:
    def test_diamond_layers(self) -> None:
        graph = build(
            wf(
                ok("a"),
                ok("b", needs=["a"]),
                ok("c", needs=["a"]),
                ok("d", needs=["b", "c"]),
            )
        )
        assert graph.layers == [["a"], ["b", "c"], ["d"]]
        assert graph.topological_order() == ["a", "b", "c", "d"]
        assert graph.dependencies["d"] == {"b", "c"}
        assert graph.dependents["a"] == {"b", "c"}

    def test_ancestors_and_descendants(self) -> None:
        graph = build(wf(ok("a"), ok("b", needs=["a"]), ok("c", needs=["b"]), ok("x")))
        assert graph.ancestors("c") == {"a", "b"}
        assert graph.descendants("a") == {"b", "c"}
        assert graph.ancestors("x") == set()

    def test_independent_jobs_share_a_level(self) -> None:
        graph = build(wf(ok("z"), ok("y"), ok("x")))
        assert graph.layers == [["x", "y", "z"]]


class TestReferences:
    def test_cycle_is_reported_with_its_path(self) -> None:
        with pytest.raises(CyclicDependency) as exc:
            build(wf(ok("a", needs=["c"]), ok("b", needs=["a"]), ok("c", needs=["b"]), ok("d")))
        cycle = exc.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert exc.value.kind == "cyclic_dependency"

    def test_self_dependency_is_a_cycle(self) -> None:
        with pytest.raises(CyclicDependency):
            build(wf(ok("a", needs=["a"])))

    def test_unknown_need(self) -> None:
        with pytest.raises(UnknownJobReference) as exc:
            build(wf(ok("a"), ok("b", needs=["nope"])))
        assert exc.value.missing == "nope"
        assert exc.value.job == "b"

    def test_cycles_are_configuration_errors(self) -> None:
        with pytest.raises(ConfigurationError):
            build(wf(ok("a", needs=["b"]), ok("b", needs=["a"])))

    def test_empty_workflow(self) -> None:
        with pytest.raises(ConfigurationError):
            build(wf())


def problems_of(*jobs, **kwargs) -> list[str]:
    with pytest.raises(ConfigurationError) as exc:
        build(wf(*jobs, **kwargs))
    return exc.value.problems


class TestStepValidation:
    def test_output_reference_through_needs(self) -> None:
        graph = build(
            wf(
                job("a", sh("meta", "echo v=1 >> $PIPEWRIGHT_OUTPUT", outputs=["v"])),
                job("b", sh("use", "echo ${{ outputs.a.meta.v }}"), needs=["a"]),
            )
        )
        assert graph.layers == [["a"], ["b"]]

    def test_output_reference_to_non_dependency(self) -> None:
        problems = problems_of(
            job("a", sh("meta", "true", outputs=["v"])),
            job("b", sh("use", "echo ${{ outputs.a.meta.v }}")),
        )
        assert any("not a dependency" in p for p in problems)

    def test_undeclared_output(self) -> None:
        problems = problems_of(
            job("a", sh("meta", "true", outputs=["v"])),
            job("b", sh("use", "echo ${{ outputs.a.meta.other }}"), needs=["a"]),
        )
        assert any("does not declare output 'other'" in p for p in problems)

    def test_reference_to_later_step_of_same_job(self) -> None:
        problems = problems_of(
            job(
                "a",
                sh("first", "echo ${{ outputs.a.second.v }}"),
                sh("second", "true", outputs=["v"]),
            )
        )
        assert any("earlier step" in p for p in problems)

    def test_unknown_expression(self) -> None:
        problems = problems_of(job("a", sh("s", "echo ${{ secrets.token }}")))
        assert any("unsupported expression" in p for p in problems)

    def test_duplicate_step_names(self) -> None:
        problems = problems_of(job("a", sh("s", "true"), sh("s", "true")))
        assert any("two steps named 's'" in p for p in problems)

    def test_unknown_action(self) -> None:
        problems = problems_of(job("a", uses("teleport")))
        assert any("Unknown action" in p for p in problems)

    def test_unknown_action_parameter(self) -> None:
        problems = problems_of(job("a", sh("s", "true"), uses("upload-artifact", name="x", path=".", bogus=1)))
        assert any(p.startswith("job 'a' step 'upload-artifact': with.bogus") for p in problems)

    def test_deploy_needs_an_environment(self) -> None:
        problems = problems_of(
            job("build", uses("upload-artifact", name="site", path="site")),
            job("ship", uses("deploy", artifact="site"), needs=["build"]),
        )
        assert any("needs the job to declare an environment" in p for p in problems)

    def test_artifact_must_come_from_a_dependency(self) -> None:
        problems = problems_of(
            job("build", uses("upload-artifact", name="site", path="site")),
            job("ship", uses("deploy", artifact="site"), environment="prod"),
        )
        assert any("not a dependency" in p for p in problems)

    def test_artifact_never_uploaded(self) -> None:
        problems = problems_of(job("ship", uses("download-artifact", name="site")))
        assert any("never uploaded" in p for p in problems)

    def test_artifact_names_are_unique(self) -> None:
        problems = problems_of(
            job("a", uses("upload-artifact", name="site", path=".")),
            job("b", uses("upload-artifact", name="site", path=".")),
        )
        assert any("uploaded more than once" in p for p in problems)

    def test_invalid_permission_level(self) -> None:
        problems = problems_of(ok("a"), permissions={"contents": "admin"})
        assert any("permissions.contents" in p for p in problems)

    def test_every_problem_is_reported(self) -> None:
        problems = problems_of(
            job("a", sh("s", "true"), sh("s", "true")),
            job("b", uses("teleport")),
        )
        assert len(problems) >= 2

    def test_build_and_deploy_pipeline_is_valid(self) -> None:
        graph = build(
            wf(
                job(
                    "build",
                    uses("checkout"),
                    uses("upload-artifact", name="site", path="site"),
                ),
                job("deploy", uses("deploy", artifact="site"), needs=["build"], environment="prod"),
            )
        )
        assert graph.layers == [["build"], ["deploy"]]

"""
shipyard — unit tests for the pipeline definition loader

Purpose
- Validate YAML parsing into immutable definitions, secret expressions and the
  path-carrying rejections raised before any run exists.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import pytest
import yaml

from shipyard.control_plane.actions import ActionRegistry
from shipyard.domain.errors import CycleError, DefinitionError, UnknownDependencyError
from shipyard.domain.models import LiteralValue, SecretFileRef, SecretRef
from shipyard.ingestion.pipeline_loader import (
    load_pipeline,
    load_pipeline_document,
    parse_pipeline,
    trigger_branches,
)

if TYPE_CHECKING:
    from pathlib import Path

_CI_PIPELINE = textwrap.dedent(
    """
    name: web-app
    on:
      push:
        branches: [main, "release/*"]
    env:
      APP: web
    jobs:
      test:
        steps:
          - name: unit
            run: make test
      build-and-push:
        needs: test
        retries: 2
        timeout-minutes: 10
        steps:
          - uses: docker/login
            env:
              REGISTRY_TOKEN: ${{ secrets.REGISTRY_TOKEN }}
          - name: push
            command: [docker, push, "registry.example.com/web:latest"]
      deploy:
        needs: [build-and-push]
        env:
          KUBECONFIG: ${{ secrets.KUBE_CONFIG | file }}
        steps:
          - name: apply
            run: kubectl apply -f k8s/
            working-directory: deploy
            timeout-seconds: 90
    """
)


def _write(tmp_path: Path, text: str, name: str = "pipeline.yml") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def _parse(text: str, **kwargs: object) -> object:
    return parse_pipeline(yaml.safe_load(textwrap.dedent(text)), **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
def test_full_document_is_parsed(tmp_path: Path) -> None:
    pipeline = load_pipeline(_write(tmp_path, _CI_PIPELINE))

    assert pipeline.name == "web-app"
    assert pipeline.stage_names == ("test", "build-and-push", "deploy")
    build = pipeline.stage("build-and-push")
    assert build.needs == ("test",)
    assert build.retries == 2
    assert build.timeout_seconds == 600.0
    login, push = build.steps
    assert login.name == "step-1"
    assert login.uses == "docker/login"
    assert login.env["REGISTRY_TOKEN"] == SecretRef("REGISTRY_TOKEN")
    assert login.env["APP"] == LiteralValue("web")
    assert push.command == ("docker", "push", "registry.example.com/web:latest")

    (apply,) = pipeline.stage("deploy").steps
    assert apply.env["KUBECONFIG"] == SecretFileRef("KUBE_CONFIG")
    assert apply.working_directory == "deploy"
    assert apply.timeout_seconds == 90.0
    assert pipeline.stage("deploy").secret_names() == ("KUBE_CONFIG",)


@pytest.mark.unit
def test_trigger_branches_come_from_the_document(tmp_path: Path) -> None:
    document = load_pipeline_document(_write(tmp_path, _CI_PIPELINE))

    assert trigger_branches(document) == ("main", "release/*")
    assert trigger_branches({"on": {"push": {"branches": "main"}}}) == ("main",)
    assert trigger_branches({"jobs": {}}) == ()
    with pytest.raises(DefinitionError) as excinfo:
        trigger_branches({"on": {"push": {"branches": ["main", ""]}}})
    assert excinfo.value.path == "on.push.branches[1]"


@pytest.mark.unit
def test_name_defaults_to_file_stem_and_stages_alias(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "stages:\n  only:\n    steps:\n      - run: 'true'\n",
        name="nightly.yaml",
    )

    pipeline = load_pipeline(path)

    assert pipeline.name == "nightly"
    assert pipeline.stage_names == ("only",)


@pytest.mark.unit
def test_default_retries_apply_when_stage_is_silent() -> None:
    pipeline = _parse(
        """
        name: p
        jobs:
          a:
            steps: [{run: 'true'}]
          b:
            retries: 0
            steps: [{run: 'true'}]
        """,
        default_retries=3,
    )

    assert pipeline.stage("a").retries == 3  # type: ignore[attr-defined]
    assert pipeline.stage("b").retries == 0  # type: ignore[attr-defined]


@pytest.mark.unit
def test_cycles_are_rejected_at_load_time() -> None:
    with pytest.raises(CycleError) as excinfo:
        _parse(
            """
            name: loop
            jobs:
              a: {needs: b, steps: [{run: 'true'}]}
              b: {needs: a, steps: [{run: 'true'}]}
            """
        )

    assert excinfo.value.path == "jobs"


@pytest.mark.unit
def test_unknown_needs_are_rejected_at_load_time() -> None:
    with pytest.raises(UnknownDependencyError) as excinfo:
        _parse(
            """
            name: p
            jobs:
              deploy: {needs: build, steps: [{run: 'true'}]}
            """
        )

    assert excinfo.value.missing == "build"


@pytest.mark.unit
def test_uses_is_checked_against_the_action_registry() -> None:
    document = """
        name: p
        jobs:
          build:
            steps:
              - uses: docker/login
    """
    registry = ActionRegistry({"docker/build": ["docker", "build", "."]})

    with pytest.raises(DefinitionError) as excinfo:
        _parse(document, actions=registry)
    assert excinfo.value.path == "jobs.build.steps[0].uses"

    registry.register("docker/login", ["docker", "login"])
    assert _parse(document, actions=registry).stage("build").steps[0].uses == "docker/login"  # type: ignore[attr-defined]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("document", "path"),
    [
        ("name: p\njobs: {}\n", "jobs"),
        ("name: p\n", "jobs"),
        ("name: p\njobs: {a: {steps: [{run: x}]}}\nstages: {b: {steps: [{run: x}]}}\n", "jobs"),
        ("name: p\nextra: 1\njobs: {a: {steps: [{run: x}]}}\n", "extra"),
        ("name: ''\njobs: {a: {steps: [{run: x}]}}\n", "name"),
        ("name: p\njobs: {a: {steps: []}}\n", "jobs.a.steps"),
        ("name: p\njobs: {a: {steps: run}}\n", "jobs.a.steps"),
        ("name: p\njobs: {a: {image: x, steps: [{run: x}]}}\n", "jobs.a.image"),
        ("name: p\njobs: {a: {retries: -1, steps: [{run: x}]}}\n", "jobs.a.retries"),
        ("name: p\njobs: {a: {retries: true, steps: [{run: x}]}}\n", "jobs.a.retries"),
        ("name: p\njobs: {a: {steps: [{run: x, uses: y}]}}\n", "jobs.a.steps[0]"),
        ("name: p\njobs: {a: {steps: [{name: s}]}}\n", "jobs.a.steps[0]"),
        ("name: p\njobs: {a: {steps: [{run: x, shell: bash}]}}\n", "jobs.a.steps[0].shell"),
        ("name: p\njobs: {a: {steps: [{command: 'echo hi'}]}}\n", "jobs.a.steps[0].command"),
        ("name: p\njobs: {a: {steps: [{run: [x]}]}}\n", "jobs.a.steps[0].run"),
        ("name: p\njobs: {a: {steps: [{run: x, timeout-minutes: 0}]}}\n", "jobs.a.steps[0].timeout-minutes"),
        (
            "name: p\njobs: {a: {steps: [{run: x, timeout-minutes: 1, timeout-seconds: 5}]}}\n",
            "jobs.a.steps[0]",
        ),
        ("name: p\njobs: {a: {needs: [''], steps: [{run: x}]}}\n", "jobs.a.needs[0]"),
        ("name: p\njobs: {a: {env: [X], steps: [{run: x}]}}\n", "jobs.a.env"),
        ("name: p\njobs: {a: {steps: [{run: x, env: {X: [1]}}]}}\n", "jobs.a.steps[0].env.X"),
        (
            "name: p\njobs: {a: {steps: [{run: x, working-directory: ../up}]}}\n",
            "jobs.a.steps[0]",
        ),
        ("name: p\njobs: {a: {steps: [{run: x}, {name: step-1, run: y}]}}\n", "jobs.a"),
    ],
)
def test_invalid_documents_carry_the_offending_path(document: str, path: str) -> None:
    with pytest.raises(DefinitionError) as excinfo:
        parse_pipeline(yaml.safe_load(document))

    assert excinfo.value.path == path


@pytest.mark.unit
@pytest.mark.parametrize(
    "value",
    [
        "${{ vars.REGION }}",
        "prefix-${{ secrets.TOKEN }}",
        "${{ secrets.TOKEN | base64 }}",
    ],
)
def test_only_whole_value_secret_expressions_are_supported(value: str) -> None:
    document = {"name": "p", "jobs": {"a": {"steps": [{"run": "x", "env": {"X": value}}]}}}

    with pytest.raises(DefinitionError, match="unsupported expression") as excinfo:
        parse_pipeline(document)

    assert excinfo.value.path == "jobs.a.steps[0].env.X"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("step", "path"),
    [
        (
            {"run": 'echo "${{ secrets.DOCKER_PASSWORD }}" | docker login -u ci --password-stdin'},
            "jobs.build.steps[0].run",
        ),
        ({"command": ["deploy", "--token", "${{ secrets.TOKEN }}"]}, "jobs.build.steps[0].command[2]"),
    ],
)
def test_secret_expressions_inside_commands_are_rejected(tmp_path: Path, step: dict[str, object], path: str) -> None:
    pipeline_file = _write(tmp_path, yaml.safe_dump({"name": "p", "jobs": {"build": {"steps": [step]}}}))

    with pytest.raises(DefinitionError, match="bind the secret under 'env:'") as excinfo:
        load_pipeline(pipeline_file)

    assert excinfo.value.path == path


@pytest.mark.unit
def test_scalar_env_values_are_stringified() -> None:
    document = {
        "name": "p",
        "jobs": {"a": {"steps": [{"run": "x", "env": {"DEBUG": True, "PORT": 8080, "RATIO": 0.5}}]}},
    }

    (step,) = parse_pipeline(document).stage("a").steps

    assert step.env == {
        "DEBUG": LiteralValue("true"),
        "PORT": LiteralValue("8080"),
        "RATIO": LiteralValue("0.5"),
    }


@pytest.mark.unit
def test_unreadable_and_malformed_files_raise_definition_errors(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError, match="unable to read"):
        load_pipeline(tmp_path / "absent.yml")
    with pytest.raises(DefinitionError, match="invalid YAML"):
        load_pipeline(_write(tmp_path, "jobs: [unclosed\n"))
    with pytest.raises(DefinitionError, match="must be a mapping"):
        load_pipeline(_write(tmp_path, "- just\n- a list\n"))

"""Tests for workflow parsing and static validation."""

from __future__ import annotations

import pytest

from conveyor.engine.dag import (
    RetryConfig,
    ensure_valid,
    parse,
    parse_dict,
    parse_yaml_string,
    validate,
)
from conveyor.engine.errors import InvalidWorkflowError

SIMPLE_YAML = """
name: "example"
description: "Two chained python steps"
variables:
  greeting: hello
steps:
  - id: a
    tool: execute_code
    input:
      language: python
      code: "print({{input.x}} + 1)"
  - id: b
    tool: execute_code
    on_error: retry
    retry:
      max_attempts: 4
      delay_ms: 50
      backoff: exponential
    timeout_ms: 5000
    input:
      language: python
      code: "print({{a.stdout}})"
"""


class TestParsing:
    def test_parse_simple(self):
        wf = parse_yaml_string(SIMPLE_YAML)
        assert wf.name == "example"
        assert wf.id == "example"
        assert wf.description == "Two chained python steps"
        assert wf.variables == {"greeting": "hello"}
        assert wf.step_ids == ["a", "b"]

    def test_step_defaults(self):
        wf = parse_yaml_string(SIMPLE_YAML)
        a = wf.get_step("a")
        assert a.on_error == "stop"
        assert a.retry is None
        assert a.timeout_ms is None
        assert a.max_attempts == 1

    def test_retry_parsed(self):
        b = parse_yaml_string(SIMPLE_YAML).get_step("b")
        assert b.retry == RetryConfig(max_attempts=4, delay_ms=50, backoff="exponential")
        assert b.max_attempts == 4
        assert b.timeout_ms == 5000

    def test_retry_defaults_when_block_missing(self):
        wf = parse_dict({
            "name": "r",
            "steps": [{"id": "s", "tool": "t", "on_error": "retry"}],
        })
        step = wf.steps[0]
        assert step.max_attempts == 3
        assert step.effective_retry.delay_ms == 1000

    def test_retry_int_shorthand(self):
        wf = parse_dict({
            "name": "r",
            "steps": [{"id": "s", "tool": "t", "on_error": "retry", "retry": 5}],
        })
        assert wf.steps[0].max_attempts == 5

    def test_retry_ignored_unless_on_error_retry(self):
        wf = parse_dict({
            "name": "r",
            "steps": [{"id": "s", "tool": "t", "retry": {"max_attempts": 5}}],
        })
        assert wf.steps[0].max_attempts == 1

    def test_explicit_id(self):
        wf = parse_dict({"id": "wf-1", "name": "n", "steps": [{"id": "s", "tool": "t"}]})
        assert wf.id == "wf-1"

    def test_env_var_substitution_in_variables(self, monkeypatch):
        monkeypatch.setenv("CONVEYOR_TEST_TOKEN", "secret")
        wf = parse_dict({
            "name": "n",
            "variables": {"token": "${CONVEYOR_TEST_TOKEN}", "other": "${UNSET_VAR_XYZ}"},
            "steps": [{"id": "s", "tool": "t"}],
        })
        assert wf.variables == {"token": "secret", "other": "${UNSET_VAR_XYZ}"}

    def test_get_step_missing(self):
        wf = parse_yaml_string(SIMPLE_YAML)
        with pytest.raises(KeyError):
            wf.get_step("zzz")

    def test_parse_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text(SIMPLE_YAML)
        assert parse(str(path)).name == "example"


class TestStructuralErrors:
    def test_not_a_mapping(self):
        with pytest.raises(InvalidWorkflowError):
            parse_yaml_string("- just\n- a list\n")

    def test_invalid_yaml(self):
        with pytest.raises(InvalidWorkflowError, match="Invalid YAML"):
            parse_yaml_string("name: [unclosed")

    def test_collects_all_errors(self):
        with pytest.raises(InvalidWorkflowError) as exc:
            parse_dict({
                "name": "bad",
                "steps": [
                    {"tool": "t"},
                    {"id": "x", "tool": "t", "on_error": "explode"},
                    {"id": "y", "tool": "t", "on_error": "retry", "retry": {"max_attempts": 0}},
                ],
            })
        errors = exc.value.errors
        assert len(errors) == 3
        assert any("'id' is required" in e for e in errors)
        assert any("on_error" in e for e in errors)
        assert any("max_attempts" in e for e in errors)

    def test_bad_backoff(self):
        with pytest.raises(InvalidWorkflowError, match="backoff"):
            parse_dict({
                "name": "n",
                "steps": [{"id": "s", "tool": "t", "on_error": "retry",
                           "retry": {"backoff": "random"}}],
            })

    def test_bad_timeout(self):
        with pytest.raises(InvalidWorkflowError, match="timeout_ms"):
            parse_dict({"name": "n", "steps": [{"id": "s", "tool": "t", "timeout_ms": -1}]})


class TestValidation:
    def test_valid(self):
        assert validate(parse_yaml_string(SIMPLE_YAML)) == []

    def test_no_steps(self):
        errors = validate(parse_dict({"name": "empty", "steps": []}))
        assert "Workflow must have at least one step" in errors

    def test_missing_name(self):
        errors = validate(parse_dict({"steps": [{"id": "s", "tool": "t"}]}))
        assert "Workflow name is required" in errors

    def test_duplicate_ids(self):
        wf = parse_dict({"name": "n", "steps": [{"id": "s", "tool": "t"}, {"id": "s", "tool": "t"}]})
        assert any("Duplicate step ID" in e for e in validate(wf))

    def test_reserved_input_id(self):
        wf = parse_dict({"name": "n", "steps": [{"id": "input", "tool": "t"}]})
        assert any("reserved" in e for e in validate(wf))

    def test_forward_reference_rejected(self):
        wf = parse_dict({
            "name": "n",
            "steps": [
                {"id": "a", "tool": "t", "input": {"v": "{{b.out}}"}},
                {"id": "b", "tool": "t"},
            ],
        })
        errors = validate(wf)
        assert len(errors) == 1
        assert "later step 'b'" in errors[0]

    def test_self_reference_rejected(self):
        wf = parse_dict({"name": "n", "steps": [{"id": "a", "tool": "t", "input": "{{a.x}}"}]})
        assert any("references itself" in e for e in validate(wf))

    def test_unknown_reference_rejected(self):
        wf = parse_dict({"name": "n", "steps": [{"id": "a", "tool": "t", "input": ["{{ghost.x}}"]}]})
        assert any("unknown step 'ghost'" in e for e in validate(wf))

    def test_when_references_checked(self):
        wf = parse_dict({
            "name": "n",
            "steps": [
                {"id": "a", "tool": "t", "when": "{{b.ok}}"},
                {"id": "b", "tool": "t"},
            ],
        })
        assert any("later step 'b'" in e for e in validate(wf))

    def test_ensure_valid_raises(self):
        wf = parse_dict({"name": "n", "steps": [{"id": "a", "tool": "t", "input": "{{a.x}}"}]})
        with pytest.raises(InvalidWorkflowError) as exc:
            ensure_valid(wf)
        assert exc.value.kind == "invalid_workflow"

"""
Tests for identifier types, results, templates and contracts.
"""

import pytest
from pydantic import ValidationError

from recovery_lattice.core.builtin import default_plugins
from recovery_lattice.core.contracts import RunOutput, RunRequest
from recovery_lattice.core.models import PluginDefinition, is_empty_output
from recovery_lattice.core.result import (
    EngineError,
    EngineFailure,
    ErrorCode,
    ErrorKind,
    Result,
    fail,
)
from recovery_lattice.core.signals import CancellationSignal
from recovery_lattice.core.templates import RECOVERY, SYNTHETIC, get_template
from recovery_lattice.core.types import PluginId, RunId


class TestIdentifiers:
    """Test validated string identifiers."""

    @pytest.mark.parametrize("value", ["a", "run:acme:ops:000001-ab", "team@host/path_1.x"])
    def test_valid(self, value):
        assert PluginId(value) == value

    @pytest.mark.parametrize("value", ["", " lead", "-dash", "has space", "semi;colon"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            PluginId(value)

    def test_non_string(self):
        with pytest.raises(TypeError):
            RunId(42)

    def test_kinds_are_distinct(self):
        plugin_id = PluginId("x")

        assert PluginId(plugin_id) is plugin_id
        assert not isinstance(plugin_id, RunId)
        assert repr(plugin_id) == "PluginId('x')"
        assert {plugin_id: 1}["x"] == 1


class TestResult:
    """Test result values and error classification."""

    def test_success(self):
        result = Result.success(3)

        assert result.ok and bool(result)
        assert result.unwrap() == 3

    def test_failure_carries_partial(self):
        result = fail(ErrorCode.PLUGIN_TIMEOUT, "too slow", partial=[1], stage="ingest")

        assert not result
        assert result.partial == [1]
        assert result.error.kind is ErrorKind.EXECUTION
        with pytest.raises(EngineFailure) as exc:
            result.unwrap()
        assert exc.value.error is result.error

    @pytest.mark.parametrize(
        ("code", "kind"),
        [
            (ErrorCode.DUPLICATE_PLUGIN, ErrorKind.CONFIGURATION),
            (ErrorCode.INVALID_REQUEST, ErrorKind.CONFIGURATION),
            (ErrorCode.RUN_CANCELLED, ErrorKind.EXECUTION),
            (ErrorCode.RUN_NOT_FOUND, ErrorKind.STORE),
        ],
    )
    def test_every_code_has_a_kind(self, code, kind):
        assert code.kind is kind
        assert all(isinstance(c.kind, ErrorKind) for c in ErrorCode)

    def test_error_text(self):
        error = EngineError(ErrorCode.PLUGIN_ERROR, "boom", stage="ingest", plugin_id="p1")

        assert str(error) == "PLUGIN_ERROR: stage=ingest plugin=p1 boom"
        assert not error.is_configuration


class TestTemplates:
    """Test stage templates."""

    def test_route_keeps_template_order(self):
        assert RECOVERY.route(["close", "sense"]) == ("sense", "close")
        assert SYNTHETIC.route(None) == SYNTHETIC.stages
        assert "simulate" in SYNTHETIC and "approve" not in SYNTHETIC

    def test_get_template(self):
        assert get_template("recovery").value is RECOVERY
        assert get_template("nope").error.code is ErrorCode.UNKNOWN_TEMPLATE


class TestModels:
    """Test model validation helpers."""

    @pytest.mark.parametrize("value", [None, "", "   ", [], {}, ()])
    def test_empty_outputs(self, value):
        assert is_empty_output(value)

    @pytest.mark.parametrize("value", [0, False, "x", [None], {"k": None}])
    def test_signal_outputs(self, value):
        assert not is_empty_output(value)

    def test_plugin_definition_validation(self):
        with pytest.raises(ValueError):
            PluginDefinition(id="p", name="p", stages=(), execute=lambda *a: None)
        with pytest.raises(ValueError):
            PluginDefinition(id="p", name="p", stages=("ingest",), execute=lambda *a: None, timeout_ms=0)

    def test_default_plugins_share_a_timeout(self):
        plugins = default_plugins(SYNTHETIC, fail_stage="simulate", timeout_ms=250)

        assert [p.metadata["kind"] for p in plugins] == ["echo", "echo", "failing", "echo"]
        assert {p.timeout_ms for p in plugins} == {250}

    async def test_cancellation_signal(self):
        signal = CancellationSignal()
        signal.cancel_after(5, "deadline")

        assert await signal.wait() == "deadline"
        signal.cancel("later")
        assert signal.reason == "deadline"
        assert "cancelled" in repr(signal)


class TestContracts:
    """Test wire models."""

    def test_request_validation(self):
        with pytest.raises(ValidationError):
            RunRequest(tenant_id="", workspace_id="ops")
        with pytest.raises(ValidationError):
            RunRequest(tenant_id="a", workspace_id="b", mode="later")

    def test_output_serializes_camel_case(self):
        output = RunOutput.model_validate(
            {
                "runId": "r1",
                "status": "failed",
                "report": {"elapsedMs": 3, "stageCount": 1, "pluginCount": 2, "planId": "p"},
                "error": "PLUGIN_ERROR",
            }
        )

        dumped = output.model_dump(by_alias=True)
        assert dumped["runId"] == "r1"
        assert dumped["report"]["pluginCount"] == 2

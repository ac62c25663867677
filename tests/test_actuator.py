"""Tests for running a policy's action list."""

from unittest.mock import MagicMock

import pytest

from docflow.core.actions import ActionHandler, ActionResult, FileState
from docflow.core.actuator import Actuator
from docflow.core.schemas_ingestions import Trace
from docflow.core.schemas_policies import ExtractField, PolicyAction


class _Recorder(ActionHandler):
    def __init__(self, outcome: ActionResult | Exception):
        self.outcome = outcome
        self.seen: list[FileState] = []

    async def execute(self, context):
        self.seen.append(context.file)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _actions(*types: str) -> list[PolicyAction]:
    return [PolicyAction(type=t) for t in types]


async def _run(actuator: Actuator, actions: list[PolicyAction], trace: Trace | None = None, **kwargs):
    return await actuator.execute(
        ingestion_id="ing-1",
        user_id="user-1",
        file_path="/inbox/scan.pdf",
        actions=actions,
        data=kwargs.get("data", {}),
        fields=kwargs.get("fields", []),
        trace=trace if trace is not None else Trace(),
    )


class TestActuator:
    @pytest.mark.asyncio
    async def test_unknown_action_recorded_and_skipped(self):
        ok = _Recorder(ActionResult(success=True, logs=["done"]))
        actuator = Actuator(handlers={"ok": ok})
        trace = Trace()

        result = await _run(actuator, _actions("teleport", "ok"), trace)

        assert result.success is False
        assert result.errors == ["teleport: Unknown action type 'teleport'"]
        assert result.actions_executed == ["done"]
        assert any(s.step == "Action failed" for s in trace.steps)

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_later_actions(self):
        handlers = {
            "raises": _Recorder(RuntimeError("disk full")),
            "fails": _Recorder(ActionResult.failed("Nope", "bad config")),
            "ok": _Recorder(ActionResult(success=True, logs=["fine"])),
        }

        result = await _run(Actuator(handlers=handlers), _actions("raises", "fails", "ok"))

        assert result.errors == ["raises: disk full", "fails: bad config"]
        assert result.actions_executed == ["fine"]

    @pytest.mark.asyncio
    async def test_file_state_threads_through(self):
        renamed = FileState(path="/inbox/acme.pdf", name="acme.pdf")
        rename = _Recorder(ActionResult(success=True, logs=["renamed"], new_file_state=renamed))
        move = _Recorder(ActionResult(success=True, logs=["moved"]))

        result = await _run(Actuator(handlers={"rename": rename, "move": move}), _actions("rename", "move"))

        assert move.seen == [renamed]
        assert result.file_state == renamed
        assert result.success

    @pytest.mark.asyncio
    async def test_variables_include_transformers(self):
        captured = {}

        class _Capture(ActionHandler):
            async def execute(self, context):
                captured.update(context.variables)
                return ActionResult(success=True)

        fields = [ExtractField.model_validate({"key": "date", "transformers": [{"name": "get_year", "as": "year"}]})]

        await _run(Actuator(handlers={"capture": _Capture()}), _actions("capture"), data={"date": "2023-07-04"}, fields=fields)

        assert captured["year"] == "2023"

    @pytest.mark.asyncio
    async def test_events_emitted(self):
        event_log = MagicMock()
        actuator = Actuator(event_log=event_log, handlers={"ok": _Recorder(ActionResult(success=True))})

        await _run(actuator, _actions("ok", "missing"))

        kinds = [c.args[2] for c in event_log.log_event.call_args_list]
        statuses = [c.args[4]["status"] for c in event_log.log_event.call_args_list]
        assert kinds == ["action", "action", "error"]
        assert statuses == ["started", "succeeded", "failed"]

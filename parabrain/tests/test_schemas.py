"""Tests for classifier output coercion and result envelopes."""

from parabrain.common.schemas import (
    ActionType,
    CaptureLogRecord,
    CaptureRequest,
    CaptureResult,
    CaptureSource,
    ClassifierOutput,
    DedupMethod,
    DedupVerdict,
    Intent,
    MatchedRecordRef,
    Operation,
    ParaType,
)


class TestClassifierOutput:
    def test_camel_case_input(self):
        out = ClassifierOutput.model_validate({
            "intent": "task_capture",
            "confidence": "0.91",
            "isActionable": "true",
            "operation": "create",
            "chatResponse": "ok",
            "type": "tasks",
            "relatedProjectTitle": "  Podcast  ",
            "suggestedTags": ["a", "", "b"],
        })
        assert out.intent is Intent.TASK_CAPTURE
        assert out.confidence == 0.91
        assert out.is_actionable is True
        assert out.operation is Operation.CREATE
        assert out.type is ParaType.TASKS
        assert out.related_project_title == "Podcast"
        assert out.suggested_tags == ["a", "b"]

    def test_unknown_enums_fall_back(self):
        out = ClassifierOutput.model_validate({"intent": "SING", "operation": "DELETE", "type": "Notes"})
        assert out.intent is Intent.CHITCHAT
        assert out.operation is Operation.CHAT
        assert out.type is None

    def test_planning_lists_capped(self):
        out = ClassifierOutput.model_validate({
            "nextActions": [str(i) for i in range(10)],
            "starterTasks": [{"title": ""}, {"title": "First"}, "junk"],
            "moduleDataRaw": [{"key": "weight", "value": "72.5"}, {"key": ""}],
        })
        assert len(out.next_actions) == 6
        assert [t.title for t in out.starter_tasks] == ["First"]
        assert out.module_data[0].key == "weight"
        assert len(out.module_data) == 1

    def test_fallback(self):
        out = ClassifierOutput.fallback()
        assert out.operation is Operation.CHAT
        assert out.confidence == 0.4
        assert out.chat_response


class TestEnvelopes:
    def test_request_source_coercion(self):
        assert CaptureRequest(message="x", source="telegram").source is CaptureSource.TELEGRAM
        assert CaptureRequest(message="x", source="pager").source is CaptureSource.WEB

    def test_result_payload(self):
        result = CaptureResult(
            action_type=ActionType.CREATE_PARA,
            operation=Operation.CREATE,
            created_item={"id": "t1"},
            dedup=DedupVerdict(
                is_duplicate=True,
                reason="Found matching URL in resources",
                method=DedupMethod.URL_MATCH,
                matched=MatchedRecordRef(table="resources", id="r1", link="https://a.test"),
            ),
        )
        payload = result.to_payload()
        assert payload["actionType"] == "CREATE_PARA"
        assert payload["createdItem"] == {"id": "t1"}
        assert payload["dedup"]["matchedItemId"] == "r1"
        assert payload["dedup"]["method"] == "URL_MATCH"
        assert result.write_executed

    def test_failed_write_is_not_executed(self):
        result = CaptureResult(success=False, action_type=ActionType.CREATE_TX)
        assert not result.write_executed


class TestCaptureLogRecord:
    def test_payload_decoding(self):
        record = CaptureLogRecord(
            id="l1",
            event_source=CaptureSource.WEB,
            user_message="hi",
            ai_response='{"chatResponse": "hello"}',
        )
        assert record.payload == {"chatResponse": "hello"}

    def test_payload_garbage(self):
        record = CaptureLogRecord(id="l1", event_source=CaptureSource.WEB, user_message="hi", ai_response="nope")
        assert record.payload is None

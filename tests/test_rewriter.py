import json

from lmstudio_router.services.request_service.lifecycle import RequestContext
from lmstudio_router.services.request_service.rewriter import RewriteOutcome

from conftest import loaded


class TestModelRewriter:
    def test_rewrites_model_and_acquires(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1", "m2"))
        context = RequestContext(url="/v1/chat/completions")
        body = json.dumps({"model": "whatever", "messages": [{"role": "user"}]}).encode()

        result = rewriter.rewrite(body, context)

        assert result.rewritten
        assert result.requested_model == "whatever"
        assert result.selected_model == "m1"
        assert json.loads(result.body) == {"model": "m1", "messages": [{"role": "user"}]}
        assert context.assigned_model == "m1"
        assert tracker.counts_by_model() == {"m1": 1}

    def test_consecutive_rewrites_spread_across_models(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1", "m2"))

        first = rewriter.rewrite(b'{"model": "a"}', RequestContext())
        second = rewriter.rewrite(b'{"model": "a"}', RequestContext())
        third = rewriter.rewrite(b'{"model": "a"}', RequestContext())

        assert [first.selected_model, second.selected_model, third.selected_model] == [
            "m1",
            "m2",
            "m1",
        ]
        assert tracker.counts_by_model() == {"m1": 2, "m2": 1}

    def test_accepts_already_parsed_mapping(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))
        body = {"model": "anything", "stream": True}

        result = rewriter.rewrite(body, RequestContext())

        assert result.outcome is RewriteOutcome.REWRITTEN
        assert json.loads(result.body) == {"model": "m1", "stream": True}
        # the caller's mapping is not mutated
        assert body["model"] == "anything"

    def test_body_without_model_passes_through(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))
        body = b'{"prompt": "hi"}'
        context = RequestContext()

        result = rewriter.rewrite(body, context)

        assert result.outcome is RewriteOutcome.NO_MODEL_FIELD
        assert result.body == body
        assert context.assigned_model is None
        assert tracker.counts_by_model() == {}

    def test_empty_model_value_passes_through(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))

        result = rewriter.rewrite(b'{"model": ""}', RequestContext())

        assert result.outcome is RewriteOutcome.NO_MODEL_FIELD
        assert tracker.counts_by_model() == {}

    def test_malformed_json_passes_through_unchanged(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))
        body = b'{"model": "x"'

        result = rewriter.rewrite(body, RequestContext())

        assert result.outcome is RewriteOutcome.MALFORMED_BODY
        assert result.body == body
        assert tracker.counts_by_model() == {}

    def test_non_object_json_passes_through(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))

        result = rewriter.rewrite(b'["model"]', RequestContext())

        assert result.outcome is RewriteOutcome.NO_MODEL_FIELD
        assert result.body == b'["model"]'

    def test_empty_body(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))

        assert rewriter.rewrite(b"", RequestContext()).outcome is RewriteOutcome.EMPTY_BODY
        assert rewriter.rewrite(None, RequestContext()).body == b""
        assert tracker.counts_by_model() == {}

    def test_empty_registry_does_not_acquire(self, rewriter, tracker):
        context = RequestContext()
        body = b'{"model": "x"}'

        result = rewriter.rewrite(body, context)

        assert result.outcome is RewriteOutcome.NO_MODELS_AVAILABLE
        assert result.requested_model == "x"
        assert result.body == body
        assert context.assigned_model is None
        assert tracker.counts_by_model() == {}

    def test_unserializable_mapping_fails_without_acquire(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))
        context = RequestContext()

        result = rewriter.rewrite({"model": "x", "bad": object()}, context)

        assert result.outcome is RewriteOutcome.FAILED
        assert result.body == b""
        assert context.assigned_model is None
        assert tracker.counts_by_model() == {}

    def test_already_assigned_context_is_not_double_counted(self, rewriter, registry, tracker):
        registry.update_snapshot(loaded("m1"))
        context = RequestContext()
        rewriter.rewrite(b'{"model": "x"}', context)

        result = rewriter.rewrite(b'{"model": "x"}', context)

        assert result.outcome is RewriteOutcome.FAILED
        assert context.assigned_model == "m1"
        assert tracker.counts_by_model() == {"m1": 1}

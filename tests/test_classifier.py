"""
Unit tests for intent classification.

Tests the fast path, gateway parsing, the fallback path and tolerant
JSON extraction.
"""

import json
from unittest.mock import Mock

import pytest

from ai_request_router.core.classifier import (
    FALLBACK_CONFIDENCE,
    ConversationTurn,
    IntentClassifier,
    Interpretation,
    TierContext,
    estimate_complexity,
    is_simple_message,
    parse_interpretation,
)
from ai_request_router.core.json_extract import decode_first_object
from ai_request_router.core.pricing import PRICING_TABLE, Complexity
from ai_request_router.core.tiers import Tier
from ai_request_router.sdk.gateways import GatewayError, InterpretationGateway
from ai_request_router.storage.models import ConversationContext, TaskType


def _gateway(reply) -> Mock:
    gateway = Mock(spec=InterpretationGateway)
    if isinstance(reply, Exception):
        gateway.interpret.side_effect = reply
    else:
        gateway.interpret.return_value = reply
    return gateway


class TestDecodeFirstObject:
    """Test JSON extraction from model prose."""

    def test_plain_object(self):
        assert decode_first_object('{"intent": "image"}') == {"intent": "image"}

    def test_fenced_with_prose(self):
        raw = 'Sure! Here you go:\n```json\n{"intent": "video", "confidence": 0.9}\n```'
        assert decode_first_object(raw) == {"intent": "video", "confidence": 0.9}

    def test_trailing_commas(self):
        raw = '{"intent": "chat", "warnings": ["a", "b",],}'
        assert decode_first_object(raw) == {"intent": "chat", "warnings": ["a", "b"]}

    def test_braces_inside_strings(self):
        raw = '{"enhanced_prompt": "a sign that says {open}", "intent": "image"}'
        assert decode_first_object(raw)["enhanced_prompt"] == "a sign that says {open}"

    def test_skips_broken_block(self):
        raw = '{not json} and then {"intent": "tts"}'
        assert decode_first_object(raw) == {"intent": "tts"}

    def test_unclosed_brace_before_object(self):
        raw = 'Routing :{ here you go {"intent": "image", "complexity": "complex"}'
        assert decode_first_object(raw) == {"intent": "image", "complexity": "complex"}

    def test_invalid_outer_block_with_valid_inner_object(self):
        raw = '{ answer: {"intent": "music"} }'
        assert decode_first_object(raw) == {"intent": "music"}

    @pytest.mark.parametrize("raw", ["", "no json here", "[1, 2, 3]", "{unclosed", None, 42])
    def test_nothing_decodable(self, raw):
        assert decode_first_object(raw) is None


class TestHeuristics:
    @pytest.mark.parametrize("message", ["hi", "Hello!", "thanks", "what's my name?", "ok cool", ""])
    def test_simple_messages(self, message):
        assert is_simple_message(message)

    @pytest.mark.parametrize("message", [
        "make a logo",
        "generate image",
        "write me a short story about dragons",
    ])
    def test_not_simple(self, message):
        assert not is_simple_message(message)

    def test_media_complexity(self):
        assert estimate_complexity("a cat", TaskType.IMAGE) == Complexity.SIMPLE
        assert estimate_complexity("a professional poster", TaskType.IMAGE) == Complexity.COMPLEX
        assert estimate_complexity("a cinematic promo", TaskType.VIDEO) == Complexity.COMPLEX

    def test_chat_complexity(self):
        assert estimate_complexity("tell me a joke", TaskType.CHAT) == Complexity.SIMPLE
        assert estimate_complexity(
            "can you help me with a plan for my bakery next week", TaskType.CHAT
        ) == Complexity.MEDIUM
        assert estimate_complexity(
            "please compare these two pricing approaches for me", TaskType.CHAT
        ) == Complexity.COMPLEX


class TestParseInterpretation:
    def test_full_reply(self):
        raw = json.dumps({
            "intent": "image",
            "complexity": "complex",
            "confidence": 0.92,
            "enhanced_prompt": "A vector logo for Acme Bakery",
            "suggested_model": "nano-banana-pro",
            "assumptions": [{"key": "style", "value": "flat", "editable": False}],
            "warnings": ["Text rendering may be imperfect"],
            "clarifying_questions": ["Which colors?", {"question": "Any slogan?", "required": False}],
            "media_params": {"aspect_ratio": "1:1"},
            "context_updates": {"long_term": {"businessName": "Acme"}, "short_term": {}},
        })
        result = parse_interpretation(raw, "make a logo")

        assert result.intent == TaskType.IMAGE
        assert result.complexity == Complexity.COMPLEX
        assert result.confidence == 0.92
        assert result.assumptions[0].editable is False
        assert [q.id for q in result.clarifying_questions] == ["q_0", "q_1"]
        assert result.clarifying_questions[1].required is False
        assert result.media_params == {"aspect_ratio": "1:1"}
        assert result.context_updates.long_term == {"businessName": "Acme"}

    def test_missing_fields_get_defaults(self):
        result = parse_interpretation('{"intent": "hologram"}', "do a thing")
        assert result.intent == TaskType.CHAT
        assert result.complexity == Complexity.MEDIUM
        assert result.confidence == 0.8
        assert result.enhanced_prompt == "do a thing"
        assert result.context_updates.is_empty

    @pytest.mark.parametrize("raw_value,expected", [
        (1.7, 1.0),
        (-2, 0.0),
        ("0.4", 0.4),
        ("high", 0.8),
        (True, 0.8),
    ])
    def test_confidence_clamped(self, raw_value, expected):
        raw = json.dumps({"intent": "chat", "confidence": raw_value})
        assert parse_interpretation(raw, "x").confidence == expected

    def test_wrong_shapes_ignored(self):
        raw = json.dumps({
            "intent": "video",
            "assumptions": "none",
            "warnings": {"a": 1},
            "media_params": [1, 2],
            "context_updates": "nope",
        })
        result = parse_interpretation(raw, "a clip of waves")
        assert result.assumptions == ()
        assert result.warnings == ()
        assert result.media_params == {}

    def test_undecodable_is_none(self):
        assert parse_interpretation("I think it's an image", "x") is None

    def test_confidence_out_of_range_rejected_on_construction(self):
        with pytest.raises(ValueError):
            Interpretation(
                intent=TaskType.CHAT,
                complexity=Complexity.SIMPLE,
                confidence=1.5,
                enhanced_prompt="x",
            )


class TestIntentClassifier:
    """Test the classification flow end to end."""

    def test_fast_path_skips_gateway(self):
        gateway = _gateway("{}")
        result = IntentClassifier(gateway).classify("hello", tier_context=TierContext(Tier.PRO))

        assert result.fast_path
        assert result.intent == TaskType.CHAT
        assert result.complexity == Complexity.SIMPLE
        assert result.confidence == 1.0
        assert result.suggested_model == PRICING_TABLE.preferred_model(
            TaskType.CHAT, Complexity.SIMPLE, Tier.PRO
        )
        gateway.interpret.assert_not_called()

    def test_gateway_reply_is_used(self):
        gateway = _gateway('```json\n{"intent": "image", "complexity": "simple", "confidence": 0.95}\n```')
        result = IntentClassifier(gateway).classify("draw a fox in the snow")

        assert result.intent == TaskType.IMAGE
        assert result.confidence == 0.95
        assert not result.fallback

    def test_forced_type_overrides_gateway(self):
        gateway = _gateway('{"intent": "chat", "confidence": 0.9}')
        result = IntentClassifier(gateway).classify(
            "waves on a beach at dusk", force_task_type=TaskType.VIDEO
        )

        assert result.intent == TaskType.VIDEO
        request = gateway.interpret.call_args[0][0]
        assert "explicitly selected task type: video" in request.new_message

    def test_forced_type_disables_fast_path(self):
        result = IntentClassifier().classify("hi", force_task_type=TaskType.IMAGE)
        assert not result.fast_path
        assert result.intent == TaskType.IMAGE

    def test_gateway_error_falls_back(self):
        gateway = _gateway(GatewayError("rate limited"))
        message = "draw a red fox in the snow please " * 5
        result = IntentClassifier(gateway).classify(message)

        assert result.fallback
        assert result.intent == TaskType.CHAT
        assert result.confidence == FALLBACK_CONFIDENCE
        assert result.enhanced_prompt == message
        assert result.context_updates.short_term["currentTask"] == message[:100]

    def test_unparseable_reply_falls_back(self):
        result = IntentClassifier(_gateway("Sorry, I can't help.")).classify(
            "write an essay about rivers and their history"
        )
        assert result.fallback
        assert result.complexity == Complexity.COMPLEX

    def test_no_gateway_falls_back(self):
        result = IntentClassifier().classify("summarize this paragraph for me please")
        assert result.fallback

    def test_request_carries_recent_turns_only(self):
        gateway = _gateway('{"intent": "chat"}')
        history = [ConversationTurn("user", f"turn {i}") for i in range(15)]
        IntentClassifier(gateway, history_turns=10).classify(
            "and what about the other one?", history=history
        )

        request = gateway.interpret.call_args[0][0]
        assert len(request.recent_turns) == 10
        assert request.recent_turns[0] == "user: turn 5"

    @pytest.mark.parametrize("turns", [0, -3])
    def test_history_turns_must_be_positive(self, turns):
        with pytest.raises(ValueError, match="history_turns"):
            IntentClassifier(history_turns=turns)

    def test_context_summary(self):
        context = ConversationContext(
            project_id="p1",
            owner="alice",
            long_term={"businessName": "Acme"},
            short_term={"currentTask": "logo", "recentTopics": ["image"]},
        )
        history = [
            ConversationTurn("assistant", "Here is your logo", "https://cdn/logo.png", "image"),
            ConversationTurn("user", "nice"),
        ]
        summary = IntentClassifier().build_context_summary(
            history, TierContext(Tier.STARTER, "Images: 25/day"), context
        )

        assert "- businessName: Acme" in summary
        assert "- Current Task: logo" in summary
        assert "[IMAGE] Here is your logo (URL: https://cdn/logo.png)" in summary
        assert "## Plan: starter" in summary
        assert "Images: 25/day" in summary

    def test_empty_context_summary(self):
        summary = IntentClassifier().build_context_summary([], TierContext())
        assert "No stored facts" in summary
        assert "Current Task: None" in summary

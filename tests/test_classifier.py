"""Tests for agents/frameworks.py and agents/classifier.py -- framework selection."""

import pytest

from agents.classifier import classify_framework, parse_classifier_output
from agents.frameworks import (
    DEFAULT_FRAMEWORK,
    DEFAULT_TEMPLATE,
    FRAMEWORK_PROFILES,
    Framework,
    get_profile,
    parse_framework,
)
from agents.llm import MockLLMClient, make_text_response

from tests.conftest import RoutingMockLLMClient, failing_response

# =========================================================================
# Framework profiles
# =========================================================================


class TestFrameworkProfiles:
    def test_every_framework_has_profile(self) -> None:
        assert set(FRAMEWORK_PROFILES) == set(Framework)

    def test_default_is_nextjs_on_default_template(self) -> None:
        assert DEFAULT_FRAMEWORK == Framework.NEXTJS
        assert get_profile(Framework.NEXTJS).template == DEFAULT_TEMPLATE

    def test_non_default_templates_differ(self) -> None:
        templates = {profile.template for profile in FRAMEWORK_PROFILES.values()}
        assert len(templates) == len(FRAMEWORK_PROFILES)

    def test_ports(self) -> None:
        assert get_profile(Framework.NEXTJS).port == 3000
        assert get_profile(Framework.ANGULAR).port == 4200
        assert get_profile(Framework.VUE).port == 5173

    def test_unknown_profile_defaults_to_nextjs(self) -> None:
        assert get_profile("cobol").framework == Framework.NEXTJS


class TestParseFramework:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("nextjs", Framework.NEXTJS),
            ("  Vue  ", Framework.VUE),
            ("Next.js", Framework.NEXTJS),
            ("sveltekit", Framework.SVELTE),
            ("react.js", Framework.REACT),
            (Framework.ANGULAR, Framework.ANGULAR),
        ],
    )
    def test_known_values(self, raw: str, expected: Framework) -> None:
        assert parse_framework(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "ember"])
    def test_unknown_values(self, raw: str | None) -> None:
        assert parse_framework(raw) is None


class TestParseClassifierOutput:
    def test_exact_answer(self) -> None:
        assert parse_classifier_output("svelte") == Framework.SVELTE

    def test_punctuated_answer(self) -> None:
        assert parse_classifier_output("vue.") == Framework.VUE

    def test_first_recognized_word_wins(self) -> None:
        assert parse_classifier_output("Answer: angular, not react") == Framework.ANGULAR

    def test_garbage(self) -> None:
        assert parse_classifier_output("I would pick something modern") is None


# =========================================================================
# classify_framework
# =========================================================================


class TestClassifyFramework:
    async def test_existing_framework_skips_llm(self) -> None:
        llm = MockLLMClient()
        selection = await classify_framework("Build a blog", "vue", llm)

        assert selection.framework == Framework.VUE
        assert selection.source == "project"
        assert not selection.is_new
        assert llm.call_history == []

    async def test_classifier_answer_is_used(self) -> None:
        llm = MockLLMClient(responses=[make_text_response("angular")])
        selection = await classify_framework("Build an Angular dashboard", None, llm)

        assert selection.framework == Framework.ANGULAR
        assert selection.source == "classifier"
        assert selection.is_new
        assert llm.call_history[0]["agent_id"] == "framework_selector"
        assert llm.call_history[0]["temperature"] == 0.0

    async def test_unrecognized_answer_falls_back(self) -> None:
        llm = MockLLMClient(responses=[make_text_response("jquery")])
        selection = await classify_framework("Build a page", None, llm)

        assert selection.framework == DEFAULT_FRAMEWORK
        assert selection.source == "fallback"
        assert selection.is_new

    async def test_llm_failure_falls_back(self) -> None:
        llm = RoutingMockLLMClient({"default": failing_response})
        selection = await classify_framework("Build a page", None, llm)

        assert selection.framework == DEFAULT_FRAMEWORK
        assert selection.source == "fallback"

    async def test_invalid_stored_framework_is_reclassified(self) -> None:
        llm = MockLLMClient(responses=[make_text_response("react")])
        selection = await classify_framework("Build a page", "ember", llm)

        assert selection.framework == Framework.REACT
        assert selection.source == "classifier"

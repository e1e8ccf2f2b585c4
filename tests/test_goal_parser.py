from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from goal_orchestrator.planning.goal_parser import (
    FALLBACK_CONFIDENCE,
    TEMPLATE_CONFIDENCE,
    GoalParser,
    GoalTemplate,
    estimate_complexity,
    infer_capabilities,
    load_goal_templates,
    normalize_goal,
)
from goal_orchestrator.planning.models import AgentType, Capability, GoalComplexity

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Goal Parsing"),
]


def test_api_template_extracts_resource_and_capabilities() -> None:
    parsed = GoalParser().parse_goal("Build API for users")

    assert parsed.template_id == "api-for-resource"
    assert parsed.intent == "build"
    assert parsed.confidence == TEMPLATE_CONFIDENCE
    assert parsed.capabilities == [
        Capability.API,
        Capability.CRUD,
        Capability.VALIDATION,
        Capability.DATABASE,
        Capability.TESTING,
    ]
    assert parsed.estimated_complexity == GoalComplexity.MODERATE
    resources = [entity for entity in parsed.entities if entity.type == "resource"]
    assert [entity.name for entity in resources] == ["users"]
    assert resources[0].confidence == 0.95
    assert parsed.metadata.requires_database is True
    assert parsed.metadata.requires_testing is True


def test_authentication_template_marks_auth_requirement() -> None:
    parsed = GoalParser().parse_goal("  Add   authentication!! ")

    assert parsed.normalized_goal == "add authentication"
    assert parsed.template_id == "add-authentication"
    assert parsed.intent == "add"
    assert Capability.AUTHENTICATION in parsed.capabilities
    assert Capability.SECURITY in parsed.capabilities
    assert parsed.metadata.requires_auth is True
    assert AgentType.AUTH in parsed.suggested_agents
    assert any(entity.name == "authentication" for entity in parsed.entities)


def test_integration_template_captures_system_entity() -> None:
    parsed = GoalParser().parse_goal("Integrate with Slack")

    assert parsed.template_id == "integrate-with-system"
    integrations = [entity for entity in parsed.entities if entity.type == "integration"]
    assert [entity.name for entity in integrations] == ["slack"]
    assert parsed.metadata.is_integration is True


def test_unmatched_goal_falls_back_to_keyword_inference() -> None:
    parsed = GoalParser().parse_goal("Improve caching in the dashboard")

    assert parsed.template_id is None
    assert parsed.confidence == FALLBACK_CONFIDENCE
    assert parsed.intent == "improve"
    assert parsed.capabilities == [Capability.UI]
    assert parsed.suggested_agents == [AgentType.UI]


def test_goal_without_keywords_defaults_to_api_crud() -> None:
    parsed = GoalParser().parse_goal("something vague")

    assert parsed.intent == "build"
    assert parsed.capabilities == [Capability.API, Capability.CRUD]
    assert AgentType.TEST in parsed.suggested_agents


def test_parser_never_raises_on_empty_goal() -> None:
    parsed = GoalParser().parse_goal("")

    assert parsed.normalized_goal == ""
    assert parsed.capabilities


def test_infer_capabilities_deduplicates_in_rule_order() -> None:
    capabilities = infer_capabilities("add login and role permissions with tests")

    assert capabilities == [
        Capability.AUTHENTICATION,
        Capability.SECURITY,
        Capability.AUTHORIZATION,
        Capability.TESTING,
    ]


def test_estimate_complexity_grows_with_security_capabilities() -> None:
    simple = estimate_complexity("fix typo", [Capability.API])
    heavy = estimate_complexity(
        "add login rbac realtime sync and integration with external billing system",
        [
            Capability.AUTHENTICATION,
            Capability.AUTHORIZATION,
            Capability.REAL_TIME,
            Capability.INTEGRATION,
            Capability.SECURITY,
        ],
    )

    assert simple == GoalComplexity.SIMPLE
    assert heavy == GoalComplexity.VERY_COMPLEX


def test_normalize_goal_strips_punctuation_and_whitespace() -> None:
    assert normalize_goal("  Build\tREST-ful API, now! ") == "build rest-ful api now"


def test_custom_template_added_at_runtime_is_used() -> None:
    parser = GoalParser(templates=())
    parser.add_template(
        GoalTemplate(
            id="cache-layer",
            name="Add Cache",
            pattern=r"add\s+cache",
            description="Add a caching layer",
            required_capabilities=(Capability.CACHING, Capability.TESTING),
            suggested_agents=(AgentType.API, AgentType.TEST),
            estimated_duration=60,
            complexity=GoalComplexity.SIMPLE,
        ),
    )

    parsed = parser.parse_goal("Add cache for products")

    assert parsed.template_id == "cache-layer"
    assert parsed.capabilities == [Capability.CACHING, Capability.TESTING]
    assert [template.id for template in parser.get_templates()] == ["cache-layer"]


def test_load_goal_templates_from_json(tmp_path: Path) -> None:
    path = tmp_path / "templates.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "docs",
                    "pattern": r"write\s+docs",
                    "required_capabilities": ["documentation"],
                    "suggested_agents": ["agent-documentation"],
                },
            ],
        ),
        encoding="utf-8",
    )

    templates = load_goal_templates(path)

    assert len(templates) == 1
    assert templates[0].complexity == GoalComplexity.MODERATE
    parsed = GoalParser(templates).parse_goal("Write docs for the API")
    assert parsed.template_id == "docs"


def test_load_goal_templates_rejects_unknown_capability(tmp_path: Path) -> None:
    path = tmp_path / "templates.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "bad",
                    "pattern": "x",
                    "required_capabilities": ["teleportation"],
                    "suggested_agents": [],
                },
            ],
        ),
        encoding="utf-8",
    )

    with pytest.raises(ValueError, match="Invalid goal template"):
        load_goal_templates(path)
